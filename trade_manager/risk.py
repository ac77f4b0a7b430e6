"""
risk.py – per-bot risk guard-rail (NORMAL ⇄ COOLDOWN)
====================================================

States
------
NORMAL    trades allowed, subject to balance + adaptive daily quota
COOLDOWN  entered the moment a loss makes consecutive_losses reach
          max_consecutive_losses; left *lazily* – the next can_trade()
          after cooldown_period_hours clears it and zeroes the streak.

There is no timer: cooldown expiry is only ever decided inside
can_trade(), so the bot document is the single source of truth.

can_trade() order (first failure wins)
--------------------------------------
1. bot status active (and platform kill-switch off)
2. gas-fee balance ≥ ai_config.min_gas_fee_balance   (live ledger read)
3. cooldown inactive or expired                      (lazy reset)
4. daily_trade_count < adaptive cap                  (legacy cap after)
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

import redis

from commission_service.ledger import BalanceLedger
from shared.errors import ConfigurationError
from shared.logging import get_logger
from shared.models import BotState, BotStatus, TradeResult
from shared.redis_client import trading_paused
from shared.utils import from_iso, now_utc, pct

from .bot_store import BotStore

log = get_logger("trade_manager.risk")


class RiskState(str, Enum):
    NORMAL = "NORMAL"
    COOLDOWN = "COOLDOWN"


class QuotaMode(str, Enum):
    HIGH_WIN_RATE = "High Win Rate"
    LOW_WIN_RATE = "Low Win Rate"


@dataclass
class GateResult:
    allowed: bool
    state: RiskState
    reason: Optional[str] = None
    quota_mode: Optional[QuotaMode] = None
    win_rate: float = 0.0
    daily_cap: int = 0
    balance: Optional[float] = None


# ───── pure helpers ───────────────────────────────────────────────────
def state_of(bot: BotState) -> RiskState:
    return RiskState.COOLDOWN if bot.risk_management.is_in_cooldown else RiskState.NORMAL


def quota_mode(bot: BotState) -> QuotaMode:
    if (bot.stats.win_rate or 0.0) >= bot.risk_management.win_rate_threshold:
        return QuotaMode.HIGH_WIN_RATE
    return QuotaMode.LOW_WIN_RATE


def effective_daily_cap(bot: BotState) -> int:
    rm = bot.risk_management
    if quota_mode(bot) is QuotaMode.HIGH_WIN_RATE:
        return rm.max_daily_trades_high_win_rate
    return rm.max_daily_trades_low_win_rate


def cooldown_end(bot: BotState) -> Optional[datetime]:
    start = from_iso(bot.risk_management.cooldown_start_time)
    if start is None:
        return None
    return start + timedelta(hours=bot.risk_management.cooldown_period_hours)


def apply_trade_result(bot: BotState, result: TradeResult, profit: float,
                       now: datetime) -> bool:
    """
    Fold one closed trade into the cumulative stats (in place).
    Returns True when this result moved the bot into COOLDOWN.
    """
    s, rm = bot.stats, bot.risk_management
    s.total_trades += 1
    triggered = False

    if result is TradeResult.WIN:
        s.winning_trades += 1
        s.total_profit += profit
        bot.consecutive_wins += 1
        bot.consecutive_losses = 0
        s.best_trade = max(s.best_trade, profit)
    else:
        loss = abs(profit)
        s.losing_trades += 1
        s.total_loss += loss
        bot.consecutive_losses += 1
        bot.consecutive_wins = 0
        s.worst_trade = min(s.worst_trade, -loss)
        if bot.consecutive_losses >= rm.max_consecutive_losses and not rm.is_in_cooldown:
            rm.is_in_cooldown = True
            rm.cooldown_start_time = now.isoformat()
            rm.cooldown_reason = f"{bot.consecutive_losses}x consecutive losses detected"
            triggered = True

    s.win_rate = s.winning_trades / s.total_trades
    s.net_profit = s.total_profit - s.total_loss
    s.avg_profit = s.total_profit / (s.winning_trades or 1)
    s.avg_loss = s.total_loss / (s.losing_trades or 1)

    bot.weekly_profit_loss += profit if result is TradeResult.WIN else -abs(profit)
    bot.last_trade_time = now.isoformat()
    bot.last_active = now.isoformat()
    return triggered


# ───── controller ─────────────────────────────────────────────────────
class RiskController:
    def __init__(self, store: Optional[BotStore] = None,
                 ledger: Optional[BalanceLedger] = None,
                 client: Optional[redis.Redis] = None) -> None:
        self.store = store or BotStore(client)
        self.ledger = ledger or BalanceLedger(client)

    def can_trade(self, user_id: str, now: Optional[datetime] = None) -> GateResult:
        now = now or now_utc()
        try:
            bot = self.store.get(user_id)
        except ConfigurationError as exc:
            return GateResult(False, RiskState.NORMAL, f"Bot not found: {exc}")
        except redis.RedisError as exc:
            log.error("bot lookup failed – %s", exc, extra={"user": user_id})
            return GateResult(False, RiskState.NORMAL, "Unable to load bot state")

        # 1️⃣  status
        if bot.status != BotStatus.ACTIVE.value:
            return GateResult(False, state_of(bot), f"Bot is not active (status: {bot.status})")
        if trading_paused(self.store.rds):
            return GateResult(False, state_of(bot), "Trading paused platform-wide")

        # 2️⃣  gas-fee balance
        floor = bot.ai_config.min_gas_fee_balance
        try:
            balance = self.ledger.balance(user_id)
        except (ConfigurationError, redis.RedisError) as exc:
            log.error("balance unverifiable – %s", exc, extra={"user": user_id})
            return GateResult(False, state_of(bot), f"Unable to verify gas fee balance: {exc}")
        if balance < floor:
            return GateResult(False, state_of(bot),
                              f"Gas fee balance below minimum (${floor:.2f})", balance=balance)

        # 3️⃣  cooldown (lazy exit)
        if bot.risk_management.is_in_cooldown:
            end = cooldown_end(bot)
            if end is None:
                return GateResult(False, RiskState.COOLDOWN,
                                  "COOLDOWN MODE: start time missing – cannot verify expiry",
                                  balance=balance)
            if now < end:
                remaining = math.ceil((end - now).total_seconds() / 3600)
                return GateResult(
                    False, RiskState.COOLDOWN,
                    f"COOLDOWN MODE: {bot.risk_management.cooldown_reason} | "
                    f"Remaining: {remaining}h",
                    balance=balance,
                )
            bot = self._end_cooldown(user_id, bot.risk_management.cooldown_start_time)
            if bot.risk_management.is_in_cooldown:          # re-entered meanwhile
                return GateResult(False, RiskState.COOLDOWN,
                                  f"COOLDOWN MODE: {bot.risk_management.cooldown_reason}",
                                  balance=balance)

        # 4️⃣  adaptive daily quota
        mode, cap, wr = quota_mode(bot), effective_daily_cap(bot), bot.stats.win_rate or 0.0
        if bot.daily_trade_count >= cap:
            return GateResult(
                False, RiskState.NORMAL,
                f"Daily trade limit reached ({cap} trades) | {mode.value} Mode "
                f"({pct(wr)} win rate)",
                quota_mode=mode, win_rate=wr, daily_cap=cap, balance=balance,
            )
        legacy = bot.trading_config.max_daily_trades
        if bot.daily_trade_count >= legacy:
            return GateResult(False, RiskState.NORMAL,
                              f"Daily trade limit reached (hard cap {legacy} trades)",
                              quota_mode=mode, win_rate=wr, daily_cap=cap, balance=balance)

        return GateResult(True, RiskState.NORMAL, quota_mode=mode, win_rate=wr,
                          daily_cap=cap, balance=balance)

    def record_trade_result(self, user_id: str, result: TradeResult, profit: float,
                            now: Optional[datetime] = None) -> BotState:
        now = now or now_utc()
        result = TradeResult(result)
        bot, triggered = self.store.mutate(
            user_id, lambda b: apply_trade_result(b, result, profit, now))
        if triggered:
            log.warning("COOLDOWN TRIGGERED – %s (for %gh)",
                        bot.risk_management.cooldown_reason,
                        bot.risk_management.cooldown_period_hours,
                        extra={"user": user_id})
        log.info("%s %.2f → %d/%d trades won, streak L%d",
                 result.value, profit, bot.stats.winning_trades, bot.stats.total_trades,
                 bot.consecutive_losses, extra={"user": user_id})
        return bot

    # ───── internals ──────────────────────────────────────────────────
    def _end_cooldown(self, user_id: str, started: Optional[str]) -> BotState:
        """Clear an expired cooldown; no-op if another caller already did."""
        def _reset(b: BotState) -> bool:
            rm = b.risk_management
            if not rm.is_in_cooldown or rm.cooldown_start_time != started:
                return False
            rm.is_in_cooldown = False
            rm.cooldown_start_time = None
            rm.cooldown_reason = ""
            b.consecutive_losses = 0
            return True

        bot, cleared = self.store.mutate(user_id, _reset)
        if cleared:
            log.info("cooldown expired – back to NORMAL", extra={"user": user_id})
        return bot
