"""
ledger.py – append-only decision audit trail
============================================

decision:<id>          STR   JSON DecisionRecord
bot:decisions:<user>   LIST  decision ids, oldest → newest
decision:seq           INT   id counter

A record is immutable once written except for `execution`, which is
written exactly twice: the open side (`record_execution`) and the close
side (`record_result`).  A result is refused unless the open side is
already stored, so readers always see the trail in causal order.
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Dict, List, Optional

import redis

from shared.config import BACKTEST_WINDOW
from shared.constants import KEY_BOT_DECISIONS, KEY_DECISION, KEY_DECISION_SEQ
from shared.errors import StateConsistencyError
from shared.logging import get_logger
from shared.models import Decision, DecisionRecord, Execution, ExitType, TradeResult
from shared.redis_client import rds, transact
from shared.utils import from_iso, now_utc

log = get_logger("decision.ledger")

_SCAN_CHUNK = 100


def close_execution(rec: DecisionRecord, result: TradeResult, exit_price: float,
                    profit: float, exit_type: ExitType, now: datetime) -> None:
    """Fill the close side of `rec.execution` in place (ordering checked)."""
    ex = rec.execution
    if ex is None:
        raise StateConsistencyError(
            f"decision {rec.id} has no open execution – cannot record result")
    if ex.result is not None:
        raise StateConsistencyError(f"decision {rec.id} already has a result ({ex.result})")

    opened = from_iso(ex.executed_at) or now
    move = (exit_price - ex.entry_price) / ex.entry_price * 100 if ex.entry_price else 0.0
    ex.result = TradeResult(result).value
    ex.exit_price = exit_price
    ex.exit_time = now.isoformat()
    ex.profit = profit
    ex.profit_percent = -move if rec.signal.get("action") == "SHORT" else move
    ex.duration_min = max(0, int((now - opened).total_seconds() // 60))
    ex.exit_type = ExitType(exit_type).value


class DecisionLedger:
    def __init__(self, client: Optional[redis.Redis] = None) -> None:
        self.rds = client if client is not None else rds

    @staticmethod
    def key(decision_id: str) -> str:
        return KEY_DECISION.format(decision_id)

    def next_id(self) -> str:
        return str(self.rds.incr(KEY_DECISION_SEQ))

    # ───── writes ─────────────────────────────────────────────────────
    def queue_append(self, pipe: Any, rec: DecisionRecord) -> None:
        """Queue the record on a pipe already in MULTI (caller owns EXEC)."""
        pipe.set(self.key(rec.id), json.dumps(rec.to_dict()), nx=True)
        pipe.rpush(KEY_BOT_DECISIONS.format(rec.user_id), rec.id)

    def append(self, rec: DecisionRecord) -> DecisionRecord:
        pipe = self.rds.pipeline(transaction=True)
        self.queue_append(pipe, rec)
        pipe.execute()
        return rec

    def load(self, pipe: Any, decision_id: str) -> DecisionRecord:
        raw = pipe.get(self.key(decision_id))
        if raw is None:
            raise StateConsistencyError(f"unknown decision {decision_id}")
        return DecisionRecord.from_dict(json.loads(raw))

    def queue_save(self, pipe: Any, rec: DecisionRecord) -> None:
        pipe.set(self.key(rec.id), json.dumps(rec.to_dict()))

    def record_execution(self, decision_id: str, position_id: str, entry_price: float,
                         size: float = 0.0, leverage: float = 1.0, margin_used: float = 0.0,
                         now: Optional[datetime] = None) -> DecisionRecord:
        now = now or now_utc()

        def _open(pipe: Any) -> DecisionRecord:
            rec = self.load(pipe, decision_id)
            if rec.decision != Decision.EXECUTE.value:
                raise StateConsistencyError(f"decision {decision_id} was SKIP – nothing to execute")
            if rec.execution is not None:
                raise StateConsistencyError(
                    f"decision {decision_id} already executed as {rec.execution.position_id}")
            rec.execution = Execution(
                executed_at=now.isoformat(),
                position_id=position_id,
                entry_price=entry_price,
                size=size,
                leverage=leverage,
                margin_used=margin_used,
            )
            pipe.multi()
            self.queue_save(pipe, rec)
            return rec

        rec = transact(self.rds, _open, self.key(decision_id))
        log.info("decision %s → position %s @ %.4f", decision_id, position_id, entry_price,
                 extra={"user": rec.user_id, "position": position_id})
        return rec

    def record_result(self, decision_id: str, result: TradeResult, exit_price: float,
                      profit: float, exit_type: ExitType,
                      now: Optional[datetime] = None) -> DecisionRecord:
        now = now or now_utc()

        def _close(pipe: Any) -> DecisionRecord:
            rec = self.load(pipe, decision_id)
            close_execution(rec, result, exit_price, profit, exit_type, now)
            pipe.multi()
            self.queue_save(pipe, rec)
            return rec

        return transact(self.rds, _close, self.key(decision_id))

    # ───── reads ──────────────────────────────────────────────────────
    def get(self, decision_id: str) -> Optional[DecisionRecord]:
        raw = self.rds.get(self.key(decision_id))
        return DecisionRecord.from_dict(json.loads(raw)) if raw else None

    def count(self, user_id: str) -> int:
        return int(self.rds.llen(KEY_BOT_DECISIONS.format(user_id)))

    def _iter_newest(self, user_id: str):
        """Yield records newest → oldest, fetched in chunks."""
        key = KEY_BOT_DECISIONS.format(user_id)
        end = -1
        while True:
            ids = self.rds.lrange(key, end - _SCAN_CHUNK + 1, end)
            if not ids:
                return
            for raw in reversed(self.rds.mget([self.key(i) for i in ids])):
                if raw:
                    yield DecisionRecord.from_dict(json.loads(raw))
            if len(ids) < _SCAN_CHUNK:
                return
            end -= _SCAN_CHUNK

    def for_user(self, user_id: str, limit: int = 50,
                 decision: Optional[Decision] = None) -> List[DecisionRecord]:
        out: List[DecisionRecord] = []
        for rec in self._iter_newest(user_id):
            if decision is not None and rec.decision != Decision(decision).value:
                continue
            out.append(rec)
            if len(out) >= limit:
                break
        return out

    def recent_results(self, user_id: str, limit: int = BACKTEST_WINDOW) -> List[DecisionRecord]:
        out: List[DecisionRecord] = []
        for rec in self._iter_newest(user_id):
            if rec.has_result:
                out.append(rec)
                if len(out) >= limit:
                    break
        return out

    def find_by_position(self, user_id: str, position_id: str) -> Optional[DecisionRecord]:
        for rec in self._iter_newest(user_id):
            if rec.execution is not None and rec.execution.position_id == position_id:
                return rec
        return None

    def stats(self, user_id: str) -> Dict[str, Any]:
        total = executed = wins = losses = 0
        cost = 0.0
        for rec in self._iter_newest(user_id):
            total += 1
            cost += rec.ai_cost
            if rec.decision == Decision.EXECUTE.value:
                executed += 1
            if rec.has_result:
                if rec.execution.result == TradeResult.WIN.value:
                    wins += 1
                else:
                    losses += 1
        closed = wins + losses
        return {
            "total": total,
            "executed": executed,
            "skipped": total - executed,
            "execution_rate": executed / total if total else 0.0,
            "wins": wins,
            "losses": losses,
            "win_rate": wins / closed if closed else 0.0,
            "total_ai_cost": cost,
        }
