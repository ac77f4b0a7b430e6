"""
decision_service.py – signal → EXECUTE / SKIP
=============================================

For every inbound signal:

1. Validate the payload (malformed signals never reach scoring).
2. Ask the risk gate (trade_manager.risk) and the symbol filters.
3. Gather news / backtest / learning context in parallel, each under
   PROVIDER_TIMEOUT; a failing provider only zeroes its own adjustment.
4. Score with rules.py and decide against ai_config.confidence_threshold.
5. Write the decision record *and* the bot bookkeeping in one MULTI.

Blocked signals are still recorded (as SKIP) so that
stats.total_signals_received always equals the number of records.

On close, `record_result` writes the execution result and folds it into
the bot stats in one transaction, then feeds matched learning patterns.

Redis keys
----------
decision:<id>           STR    JSON decision record
bot:decisions:<user>    LIST   decision ids (oldest → newest)
bot:state:<user>        STR    JSON bot document (stats, risk state)
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeout
from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, Mapping, Optional, Tuple, Union

import redis

from commission_service.ledger import BalanceLedger
from shared.config import PROVIDER_TIMEOUT
from shared.errors import ConfigurationError
from shared.logging import get_logger
from shared.models import (
    BalanceSnapshot, BotState, ConfidenceBreakdown, Decision, DecisionRecord,
    ExitType, Signal, TradeResult,
)
from shared.redis_client import rds, transact
from shared.utils import now_utc, pct
from trade_manager.bot_store import BotStore
from trade_manager.risk import RiskController, apply_trade_result, effective_daily_cap

from . import rules as R
from .ledger import DecisionLedger, close_execution
from .patterns import PatternBook
from .providers import BacktestProvider, LearningProvider, NewsProvider

log = get_logger("decision_service")

Context = Optional[Dict[str, Any]]


class DecisionEngine:
    def __init__(self, client: Optional[redis.Redis] = None, *,
                 ledger: Optional[DecisionLedger] = None,
                 store: Optional[BotStore] = None,
                 balances: Optional[BalanceLedger] = None,
                 risk: Optional[RiskController] = None,
                 news: Optional[NewsProvider] = None,
                 backtest: Optional[BacktestProvider] = None,
                 learning: Optional[LearningProvider] = None,
                 patterns: Optional[PatternBook] = None,
                 timeout: float = PROVIDER_TIMEOUT) -> None:
        self.rds = client if client is not None else rds
        self.ledger = ledger or DecisionLedger(self.rds)
        self.store = store or BotStore(self.rds)
        self.balances = balances or BalanceLedger(self.rds)
        self.risk = risk or RiskController(self.store, self.balances)
        self.patterns = patterns or PatternBook(self.rds)
        self.news = news or NewsProvider(self.rds)
        self.backtest = backtest or BacktestProvider(self.ledger)
        self.learning = learning or LearningProvider(self.patterns)
        self.timeout = timeout
        self._pool = ThreadPoolExecutor(max_workers=3, thread_name_prefix="ctx")

    def close(self) -> None:
        self._pool.shutdown(wait=False)

    # ───── evaluation ─────────────────────────────────────────────────
    def evaluate(self, user_id: str, payload: Union[Signal, Mapping[str, Any]],
                 exchange: Optional[BalanceSnapshot] = None,
                 now: Optional[datetime] = None) -> DecisionRecord:
        """Score one signal; always returns (and persists) a decision record."""
        signal = payload if isinstance(payload, Signal) else Signal.from_dict(payload)
        now = now or now_utc()
        bot = self.store.get(user_id)                      # no bot → ConfigurationError

        gate = self.risk.can_trade(user_id, now)
        blocked = gate.reason if not gate.allowed else self._symbol_block(bot, signal)
        snapshot = self._snapshot(user_id, gate.balance, exchange)

        if blocked:
            breakdown = ConfidenceBreakdown(technical=signal.confidence,
                                            total=signal.confidence)
            rec = self._record(user_id, signal, breakdown, Decision.SKIP,
                               f"Trading blocked: {blocked}", snapshot, now)
        else:
            rec = self._score(bot, signal, snapshot, now)

        rec = self._persist(rec)
        log.info("%s %s %s → %s (%s)", signal.id, signal.symbol, signal.action,
                 rec.decision, pct(rec.confidence.total),
                 extra={"user": user_id, "decision": rec.id, "symbol": signal.symbol})
        return rec

    def _score(self, bot: BotState, signal: Signal, snapshot: BalanceSnapshot,
               now: datetime) -> DecisionRecord:
        cfg, uid = bot.ai_config, bot.user_id
        if cfg.enabled:
            futures = {
                "news": self._pool.submit(self.news.fetch, signal.symbol, now),
                "backtest": self._pool.submit(self.backtest.fetch, uid),
                "learning": self._pool.submit(self.learning.fetch, uid, signal, now),
            }
            ctx = {name: self._collect(name, fut, uid) for name, fut in futures.items()}
        else:
            ctx = {name: (None, "AI layer disabled") for name in ("news", "backtest", "learning")}

        (news, news_note), (bt, bt_note), (learn, learn_note) = (
            ctx["news"], ctx["backtest"], ctx["learning"])
        components = [
            R.Component("News sentiment",
                        R.news_adjustment(news["sentiment"], cfg.news_weight) if news else None,
                        news_note or "no recent news"),
            R.Component("Recent performance",
                        R.backtest_adjustment(bt["recent_win_rate"], cfg.backtest_weight) if bt else None,
                        bt_note or "no closed trades yet"),
            R.Component("Pattern learning",
                        R.learning_adjustment(learn["matches"], cfg.learning_weight) if learn else None,
                        learn_note or "no matching patterns"),
        ]
        total = R.total_confidence(signal.confidence, components)
        decision = R.decide(total, cfg.confidence_threshold)
        breakdown = ConfidenceBreakdown(
            technical=signal.confidence,
            news=components[0].contribution,
            backtest=components[1].contribution,
            learning=components[2].contribution,
            total=total,
        )
        reason = R.build_reason(signal.confidence, components, total,
                                cfg.confidence_threshold, decision)
        return self._record(uid, signal, breakdown, decision, reason, snapshot, now,
                            news_context=news, backtest_context=bt, learning_context=learn)

    def _collect(self, name: str, fut: Any, user_id: str) -> Tuple[Context, Optional[str]]:
        try:
            return fut.result(timeout=self.timeout), None
        except FuturesTimeout:
            fut.cancel()
            log.warning("%s provider timed out after %.1fs – adjustment zeroed",
                        name, self.timeout, extra={"user": user_id})
            return None, f"provider degraded: timeout after {self.timeout:g}s"
        except Exception as exc:                                 # noqa: BLE001
            log.warning("%s provider failed – %s – adjustment zeroed", name, exc,
                        extra={"user": user_id})
            return None, f"provider degraded: {exc.__class__.__name__}"

    def _persist(self, rec: DecisionRecord) -> DecisionRecord:
        """Decision write + stats bookkeeping in one MULTI."""
        def _tx(pipe: Any) -> DecisionRecord:
            bot = self.store.load(pipe, rec.user_id)
            final = rec
            if rec.decision == Decision.EXECUTE.value and \
                    bot.daily_trade_count >= effective_daily_cap(bot):
                final = replace(rec, decision=Decision.SKIP.value,
                                reason=f"{rec.reason} | SKIP - daily cap reached concurrently")
            s = bot.stats
            s.total_signals_received += 1
            if final.decision == Decision.EXECUTE.value:
                s.signals_executed += 1
                bot.daily_trade_count += 1
            else:
                s.signals_rejected += 1
            bot.last_active = final.timestamp
            pipe.multi()
            self.store.queue_save(pipe, bot)
            self.ledger.queue_append(pipe, final)
            return final

        return transact(self.rds, _tx, self.store.key(rec.user_id))

    # ───── execution lifecycle ────────────────────────────────────────
    def record_execution(self, decision_id: str, position_id: str, entry_price: float,
                         size: float = 0.0, leverage: float = 1.0, margin_used: float = 0.0,
                         now: Optional[datetime] = None) -> DecisionRecord:
        return self.ledger.record_execution(decision_id, position_id, entry_price,
                                            size, leverage, margin_used, now)

    def record_result(self, decision_id: str, result: TradeResult, exit_price: float,
                      profit: float, exit_type: ExitType,
                      now: Optional[datetime] = None) -> Tuple[DecisionRecord, BotState]:
        """Close side of the audit trail + cumulative stats, atomically."""
        now = now or now_utc()
        result = TradeResult(result)
        owner = self.ledger.get(decision_id)
        if owner is None:
            raise ConfigurationError(f"unknown decision {decision_id}")
        bot_key = self.store.key(owner.user_id)

        def _tx(pipe: Any) -> Tuple[DecisionRecord, BotState, bool]:
            rec = self.ledger.load(pipe, decision_id)
            close_execution(rec, result, exit_price, profit, exit_type, now)
            bot = self.store.load(pipe, rec.user_id)
            triggered = apply_trade_result(bot, result, profit, now)
            pipe.multi()
            self.ledger.queue_save(pipe, rec)
            self.store.queue_save(pipe, bot)
            return rec, bot, triggered

        rec, bot, triggered = transact(self.rds, _tx, self.ledger.key(decision_id), bot_key)
        if triggered:
            log.warning("COOLDOWN TRIGGERED – %s", bot.risk_management.cooldown_reason,
                        extra={"user": bot.user_id})
        if rec.learning_context:
            self.patterns.record_outcome(bot.user_id,
                                         rec.learning_context.get("patterns_matched", []),
                                         result)
        log.info("decision %s closed %s %.2f (%s)", decision_id, result.value, profit,
                 rec.execution.exit_type, extra={"user": bot.user_id, "decision": decision_id})
        return rec, bot

    # ───── helpers ────────────────────────────────────────────────────
    @staticmethod
    def _symbol_block(bot: BotState, signal: Signal) -> Optional[str]:
        tc = bot.trading_config
        if signal.symbol in tc.blacklist_pairs:
            return f"{signal.symbol} is blacklisted"
        if tc.allowed_pairs and signal.symbol not in tc.allowed_pairs:
            return f"{signal.symbol} is not in allowed pairs"
        return None

    def _snapshot(self, user_id: str, gas: Optional[float],
                  exchange: Optional[BalanceSnapshot]) -> BalanceSnapshot:
        if gas is None:
            try:
                gas = self.balances.balance(user_id)
            except (ConfigurationError, redis.RedisError):
                gas = 0.0
        ex = exchange or BalanceSnapshot()
        return BalanceSnapshot(gas_fee_balance=gas, exchange_balance=ex.exchange_balance,
                               available_margin=ex.available_margin)

    def _record(self, user_id: str, signal: Signal, breakdown: ConfidenceBreakdown,
                decision: Decision, reason: str, snapshot: BalanceSnapshot, now: datetime,
                **contexts: Context) -> DecisionRecord:
        return DecisionRecord(
            id=self.ledger.next_id(),
            user_id=user_id,
            signal_id=signal.id,
            signal={
                "symbol": signal.symbol,
                "action": signal.action,
                "technical_confidence": signal.confidence,
                "entry_price": signal.entry_price,
                "stop_loss": signal.stop_loss,
                "take_profit": signal.take_profit,
                "indicators": dict(signal.indicators),
            },
            confidence=breakdown,
            decision=decision.value,
            reason=reason,
            balance_snapshot=snapshot,
            timestamp=now.isoformat(),
            **contexts,
        )
