#!/usr/bin/env python3
"""
manager.py – per-user bot runners + ops REST API
-----------------------------------------------
A `BotRunner` owns one user's trading loop:

    on_signal           evaluate → (EXECUTE) ceiling check → open → monitor
    on_position_closed  stop monitor → commission → result → stats
    stop                pause/stop the bot, final ceiling check on every
                        open position

`Manager` keeps one runner per user and backs the REST API; the
supervisor thread pings the heartbeat and resets the daily trade
counters at the UTC day rollover.

Environment
-----------
REDIS_URL          redis://host:port/db       (default: redis://redis:6379/0)
MONITOR_INTERVAL   seconds between polls      (default: 5)
API_PORT           expose REST API (0=off)    (default: 8000)
"""

from __future__ import annotations

import threading
import time
from dataclasses import asdict
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

import redis
import uvicorn
from fastapi import FastAPI, HTTPException

from commission_service.engine import CommissionEngine
from decision_service.decision_service import DecisionEngine
from shared.config import API_PORT, MONITOR_INTERVAL
from shared.errors import ConfigurationError, InsufficientBalanceError, StateConsistencyError
from shared.logging import get_logger
from shared.models import (
    BalanceSnapshot, BotStatus, Decision, DecisionRecord, ExitType, Signal, TradeResult,
)
from shared.redis_client import heartbeat, rds, set_paused, trading_paused
from shared.utils import now_utc
from trade_executor.exchange import ExchangeClient, PaperExchange, TradeSpec

from .bot_store import BotStore
from .monitor import PositionMonitor
from .risk import effective_daily_cap, quota_mode, state_of

log = get_logger("trade_manager")

SUPERVISOR_INTERVAL = 30


# ───── RUNNER ─────────────────────────────────────────────────────────
class BotRunner:
    def __init__(self, user_id: str, exchange: ExchangeClient, *,
                 engine: Optional[DecisionEngine] = None,
                 commission: Optional[CommissionEngine] = None,
                 client: Optional[redis.Redis] = None,
                 interval: float = MONITOR_INTERVAL) -> None:
        self.user_id = user_id
        self.exchange = exchange
        self.engine = engine or DecisionEngine(client)
        self.commission = commission or CommissionEngine(self.engine.balances)
        self.store = self.engine.store
        self.interval = interval
        self._lock = threading.Lock()
        self._monitors: Dict[str, PositionMonitor] = {}
        self._decisions: Dict[str, str] = {}        # position_id → decision_id
        self._closed: set = set()

    @property
    def open_positions(self) -> List[str]:
        with self._lock:
            return list(self._monitors)

    def on_signal(self, payload: Union[Signal, Mapping[str, Any]],
                  snapshot: Optional[BalanceSnapshot] = None,
                  now: Optional[datetime] = None) -> DecisionRecord:
        rec = self.engine.evaluate(self.user_id, payload, snapshot, now)
        if rec.decision == Decision.EXECUTE.value:
            self._open(rec, snapshot or BalanceSnapshot(), now)
        return rec

    def _open(self, rec: DecisionRecord, snapshot: BalanceSnapshot,
              now: Optional[datetime]) -> None:
        extra = {"user": self.user_id, "decision": rec.id}
        eligible = self.commission.can_trade(self.user_id)
        if not eligible.allowed:
            log.error("EXECUTE %s not opened – %s", rec.id, eligible.reason, extra=extra)
            return
        try:
            ceiling = self.commission.compute_safe_profit_ceiling(self.user_id)
        except (ConfigurationError, redis.RedisError) as exc:
            log.error("EXECUTE %s not opened – no profit ceiling (%s)", rec.id, exc, extra=extra)
            return

        bot = self.store.get(self.user_id)
        sig = rec.signal
        stop_dist = abs(sig["entry_price"] - sig["stop_loss"])
        qty = snapshot.exchange_balance * bot.trading_config.risk_percent / stop_dist \
            if stop_dist else 0.0
        if qty <= 0:
            log.error("EXECUTE %s not opened – position size is zero", rec.id, extra=extra)
            return

        spec = TradeSpec(
            symbol=sig["symbol"],
            direction=sig["action"],
            quantity=qty,
            price=sig["entry_price"],
            sl=sig["stop_loss"],
            tp=sig["take_profit"],
            leverage=bot.trading_config.max_leverage,
            comment=rec.id,
        )
        try:
            pos = self.exchange.open_trade(spec)
        except Exception as exc:                                 # noqa: BLE001
            log.error("open order failed – %s", exc, extra=extra)
            return

        self.engine.record_execution(rec.id, pos.id, spec.price, spec.quantity,
                                     spec.leverage, pos.margin_used, now)
        monitor = PositionMonitor(self.user_id, pos.id, self.exchange, self.commission,
                                  self.on_position_closed, self.interval)
        with self._lock:
            self._decisions[pos.id] = rec.id
            self._monitors[pos.id] = monitor
        monitor.start()
        log.info("position %s opened – auto-close at $%.2f profit", pos.id,
                 ceiling.auto_close_threshold, extra={**extra, "position": pos.id})

    def on_position_closed(self, position_id: str, exit_price: float, profit: float,
                           exit_type: ExitType,
                           now: Optional[datetime] = None) -> Optional[DecisionRecord]:
        """Close path for every exit; a second call for the same position is a no-op."""
        extra = {"user": self.user_id, "position": position_id}
        with self._lock:
            if position_id in self._closed:
                log.warning("close for %s already handled", position_id, extra=extra)
                return None
            self._closed.add(position_id)
            monitor = self._monitors.pop(position_id, None)
            decision_id = self._decisions.pop(position_id, None)
        if monitor is not None:
            monitor.stop(final_check=False)
        try:
            return self._settle(position_id, decision_id, exit_price, profit, exit_type, now)
        finally:
            # a later duplicate replays against the ledgers and records nothing
            with self._lock:
                self._closed.discard(position_id)

    def _settle(self, position_id: str, decision_id: Optional[str], exit_price: float,
                profit: float, exit_type: ExitType,
                now: Optional[datetime]) -> Optional[DecisionRecord]:
        extra = {"user": self.user_id, "position": position_id}
        if profit > 0:
            try:
                self.commission.deduct_commission(self.user_id, profit, position_id)
            except InsufficientBalanceError as exc:
                log.warning("closed without commission – %s", exc, extra=extra)
            except ConfigurationError as exc:
                log.error("commission not charged – %s", exc, extra=extra)

        if decision_id is None:
            found = self.engine.ledger.find_by_position(self.user_id, position_id)
            if found is None:
                log.error("no decision for closed position %s", position_id, extra=extra)
                return None
            decision_id = found.id

        result = TradeResult.WIN if profit > 0 else TradeResult.LOSS
        try:
            rec, _ = self.engine.record_result(decision_id, result, exit_price, profit,
                                               ExitType(exit_type), now)
        except StateConsistencyError as exc:
            log.warning("result not recorded – %s", exc, extra=extra)
            return None
        return rec

    def stop(self, status: BotStatus = BotStatus.STOPPED) -> None:
        try:
            self.store.set_status(self.user_id, status)
        except ConfigurationError as exc:
            log.error("status not persisted – %s", exc, extra={"user": self.user_id})
        with self._lock:
            monitors = list(self._monitors.values())
        for monitor in monitors:
            monitor.stop(final_check=True)
        log.info("runner halted (%s), %d position(s) still open",
                 BotStatus(status).value, len(self.open_positions),
                 extra={"user": self.user_id})


# ───── MANAGER ────────────────────────────────────────────────────────
class Manager:
    def __init__(self, client: Optional[redis.Redis] = None,
                 exchange_factory: Callable[[str], ExchangeClient] = lambda _uid: PaperExchange(),
                 interval: float = MONITOR_INTERVAL) -> None:
        self.rds = client if client is not None else rds
        self.exchange_factory = exchange_factory
        self.interval = interval
        self.store = BotStore(self.rds)
        self.commission = CommissionEngine(client=self.rds)
        self._engine: Optional[DecisionEngine] = None
        self._runners: Dict[str, BotRunner] = {}
        self._lock = threading.Lock()

    @property
    def engine(self) -> DecisionEngine:
        if self._engine is None:
            self._engine = DecisionEngine(self.rds, store=self.store,
                                          balances=self.commission.ledger)
        return self._engine

    def runner(self, user_id: str) -> BotRunner:
        with self._lock:
            if user_id not in self._runners:
                self._runners[user_id] = BotRunner(
                    user_id, self.exchange_factory(user_id), engine=self.engine,
                    commission=self.commission, interval=self.interval)
            return self._runners[user_id]

    def pause(self, user_id: str) -> None:
        runner = self._runners.get(user_id)
        if runner is not None:
            runner.stop(BotStatus.PAUSED)
        else:
            self.store.set_status(user_id, BotStatus.PAUSED)

    def resume(self, user_id: str) -> None:
        self.store.set_status(user_id, BotStatus.ACTIVE)

    def status(self, user_id: str) -> Dict[str, Any]:
        bot = self.store.get(user_id)
        try:
            balance: Optional[float] = self.commission.ledger.balance(user_id)
        except ConfigurationError:
            balance = None
        runner = self._runners.get(user_id)
        return {
            "user_id": user_id,
            "status": bot.status,
            "risk_state": state_of(bot).value,
            "quota_mode": quota_mode(bot).value,
            "daily_trade_count": bot.daily_trade_count,
            "daily_cap": effective_daily_cap(bot),
            "cooldown": {
                "active": bot.risk_management.is_in_cooldown,
                "since": bot.risk_management.cooldown_start_time,
                "reason": bot.risk_management.cooldown_reason,
            },
            "gas_fee_balance": balance,
            "execution_rate": bot.execution_rate,
            "stats": asdict(bot.stats),
            "open_positions": runner.open_positions if runner else [],
            "trading_paused": trading_paused(self.rds),
        }

    def tick(self, last_day: Optional[date] = None) -> date:
        """One supervisor pass; returns the UTC day it ran for."""
        heartbeat("trade_manager", self.rds)
        today = now_utc().date()
        if last_day is not None and today != last_day:
            self.store.reset_daily_counters()
        return today


def supervisor_loop(manager: Manager, interval: int = SUPERVISOR_INTERVAL) -> None:
    log.info("trade_manager running (interval %d s)", interval)
    day: Optional[date] = None
    while True:
        try:
            day = manager.tick(day)
        except Exception as exc:  # noqa: BLE001
            log.error("supervisor error – %s", exc)
        time.sleep(interval)


# ───── REST API ───────────────────────────────────────────────────────
def create_app(manager: Manager) -> FastAPI:
    app = FastAPI(title="Trade Manager", docs_url=None, redoc_url=None)

    def _known(user_id: str) -> None:
        try:
            manager.store.get(user_id)
        except ConfigurationError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc

    @app.get("/bots/{user_id}/status")
    def bot_status(user_id: str):
        _known(user_id)
        return manager.status(user_id)

    @app.post("/bots/{user_id}/pause")
    def bot_pause(user_id: str):
        _known(user_id)
        manager.pause(user_id)
        return {"user_id": user_id, "status": BotStatus.PAUSED.value}

    @app.post("/bots/{user_id}/resume")
    def bot_resume(user_id: str):
        _known(user_id)
        manager.resume(user_id)
        return {"user_id": user_id, "status": BotStatus.ACTIVE.value}

    @app.get("/bots/{user_id}/commission")
    def commission(user_id: str):
        _known(user_id)
        return asdict(manager.commission.get_commission_summary(user_id))

    @app.get("/bots/{user_id}/decisions")
    def decisions(user_id: str, limit: int = 50, decision: Optional[Decision] = None):
        _known(user_id)
        recs = manager.engine.ledger.for_user(user_id, limit, decision)
        return [r.to_dict() for r in recs]

    @app.post("/pause")
    def pause():
        set_paused(True, "manual REST call", manager.rds)
        return {"paused": True}

    @app.post("/resume")
    def resume():
        set_paused(False, client=manager.rds)
        return {"paused": False}

    return app


manager = Manager()
app = create_app(manager)


def main() -> None:
    if API_PORT:
        # REST API + supervisor in one process
        th = threading.Thread(target=supervisor_loop, args=(manager,), daemon=True)
        th.start()
        uvicorn.run(app, host="0.0.0.0", port=API_PORT, log_level="warning")
    else:
        supervisor_loop(manager)


if __name__ == "__main__":
    main()
