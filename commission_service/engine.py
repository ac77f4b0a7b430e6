"""
engine.py – commission & safety engine
======================================

Keeps the gas-fee balance of every user ≥ 0:

    max_profit          = balance / (rate / 100)
    auto_close_threshold = AUTO_CLOSE_MARGIN × max_profit      (90 %)

A position is force-closed once its running profit reaches the threshold,
and `deduct_commission` refuses any debit the balance cannot cover.

Default-safe everywhere: when the balance or the rate cannot be resolved
the answer is *cannot trade* / *do not close* / *do not deduct*.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

import redis

from shared.constants import AUTO_CLOSE_MARGIN
from shared.errors import ConfigurationError, InsufficientBalanceError
from shared.logging import get_logger

from .ledger import BalanceLedger, PlatformConfig

log = get_logger("commission.engine")


# ───── result types ───────────────────────────────────────────────────
@dataclass
class TradeEligibility:
    allowed: bool
    balance: float
    reason: Optional[str] = None


@dataclass
class ProfitCeiling:
    max_profit: float
    auto_close_threshold: float
    balance: float
    rate: float


@dataclass
class AutoCloseCheck:
    close: bool
    max_profit: float
    threshold: float
    reason: Optional[str] = None


@dataclass
class CommissionReceipt:
    commission: float
    remaining_balance: float
    transaction_id: str
    replayed: bool = False


@dataclass
class CommissionSummary:
    total_commission_paid: float
    total_profits: float
    average_commission_rate: float
    transaction_count: int
    transactions: List[Dict[str, Any]] = field(default_factory=list)


# ───── engine ─────────────────────────────────────────────────────────
class CommissionEngine:
    def __init__(self, ledger: Optional[BalanceLedger] = None,
                 client: Optional[redis.Redis] = None) -> None:
        self.ledger = ledger or BalanceLedger(client)

    def can_trade(self, user_id: str,
                  config: Optional[PlatformConfig] = None) -> TradeEligibility:
        """Balance floor check.  Pure read."""
        try:
            balance = self.ledger.balance(user_id)
            floor = (config or self._floor_only()).minimum_gas_fee
        except ConfigurationError as exc:
            return TradeEligibility(False, 0.0, str(exc))
        except redis.RedisError as exc:
            log.error("balance lookup failed – %s", exc, extra={"user": user_id})
            return TradeEligibility(False, 0.0, "Unable to verify gas fee balance")

        if balance < floor:
            return TradeEligibility(
                False, balance,
                f"Insufficient gas fee balance. Minimum {floor:g} USDT required.",
            )
        return TradeEligibility(True, balance)

    def compute_safe_profit_ceiling(self, user_id: str,
                                    config: Optional[PlatformConfig] = None) -> ProfitCeiling:
        """Raises ConfigurationError on unknown user or zero / unset rate."""
        cfg = config or self.ledger.load_config()
        if not cfg.commission_rate or cfg.commission_rate <= 0:
            raise ConfigurationError("commission rate must be > 0 to compute a profit ceiling")
        balance = self.ledger.balance(user_id)
        max_profit = balance / (cfg.commission_rate / 100)
        return ProfitCeiling(
            max_profit=max_profit,
            auto_close_threshold=AUTO_CLOSE_MARGIN * max_profit,
            balance=balance,
            rate=cfg.commission_rate,
        )

    def should_auto_close(self, user_id: str, current_profit: float,
                          config: Optional[PlatformConfig] = None) -> AutoCloseCheck:
        """Polled while a position is open; never raises."""
        try:
            ceiling = self.compute_safe_profit_ceiling(user_id, config)
        except ConfigurationError as exc:
            log.error("auto-close check unresolved – %s", exc, extra={"user": user_id})
            return AutoCloseCheck(False, 0.0, 0.0, f"Error calculating auto-close: {exc}")
        except redis.RedisError as exc:
            log.error("auto-close check unresolved – %s", exc, extra={"user": user_id})
            return AutoCloseCheck(False, 0.0, 0.0, "Error calculating auto-close: store unavailable")

        if current_profit >= ceiling.auto_close_threshold:
            return AutoCloseCheck(
                True, ceiling.max_profit, ceiling.auto_close_threshold,
                f"Profit (${current_profit:.2f}) reached auto-close threshold "
                f"(${ceiling.auto_close_threshold:.2f})",
            )
        return AutoCloseCheck(False, ceiling.max_profit, ceiling.auto_close_threshold)

    def deduct_commission(self, user_id: str, profit: float, position_id: str,
                          config: Optional[PlatformConfig] = None) -> CommissionReceipt:
        """
        Debit `profit × rate / 100` for a profitable close.

        Idempotent per `position_id`.  On InsufficientBalanceError the
        profit and position are still written to the failure audit list
        and the balance is left untouched.
        """
        if profit <= 0:
            raise ValueError("commission is only charged on positive profit")
        if not position_id:
            raise ValueError("position_id is required for an idempotent deduction")
        cfg = config or self.ledger.load_config()

        try:
            tx, replayed = self.ledger.conditional_debit(user_id, position_id, profit, cfg)
        except InsufficientBalanceError as exc:
            self.ledger.record_failure(user_id, position_id, profit, exc.required, exc.available)
            log.error("commission refused – %s", exc,
                      extra={"user": user_id, "position": position_id})
            raise

        if replayed:
            log.warning("commission already charged for %s – replay ignored", position_id,
                        extra={"user": user_id, "position": position_id})
        else:
            log.info("commission %.4f (%.1f%% of %.2f) → balance %.4f",
                     tx.commission, tx.commission_rate, profit, tx.balance_after,
                     extra={"user": user_id, "position": position_id})
        return CommissionReceipt(tx.commission, tx.balance_after, tx.id, replayed)

    def get_commission_summary(self, user_id: str) -> CommissionSummary:
        txs = self.ledger.transactions(user_id)
        n = len(txs)
        return CommissionSummary(
            total_commission_paid=sum(t.commission for t in txs),
            total_profits=sum(t.profit for t in txs),
            average_commission_rate=sum(t.commission_rate for t in txs) / n if n else 0.0,
            transaction_count=n,
            transactions=[asdict(t) for t in reversed(txs)],        # newest first
        )

    # ───── helpers ────────────────────────────────────────────────────
    def _floor_only(self) -> PlatformConfig:
        """Floor check must not depend on the rate being configured."""
        try:
            return self.ledger.load_config()
        except ConfigurationError:
            return PlatformConfig(commission_rate=0.0)
