"""
models.py – documents persisted by the bot core
===============================================

Plain dataclasses, stored as JSON strings in Redis.  Every class has
`to_dict()` / `from_dict()`; unknown keys are ignored on load so older
documents keep loading after a field is added.

BotState        one per user, mutated on every evaluation / close
DecisionRecord  one per evaluated signal (append-only, `execution` excepted)
Signal          validated inbound trading signal
"""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from typing import Any, Dict, List, Optional, Type, TypeVar

from .errors import InvalidSignalError

T = TypeVar("T")


def _load(cls: Type[T], data: Optional[Dict[str, Any]]) -> T:
    names = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in (data or {}).items() if k in names})


def _check(name: str, val: float, lo: float, hi: float) -> None:
    if not lo <= val <= hi:
        raise ValueError(f"{name}={val} outside [{lo}, {hi}]")


# ───── enums ──────────────────────────────────────────────────────────
class Decision(str, Enum):
    EXECUTE = "EXECUTE"
    SKIP = "SKIP"


class TradeResult(str, Enum):
    WIN = "WIN"
    LOSS = "LOSS"


class ExitType(str, Enum):
    TAKE_PROFIT = "TAKE_PROFIT"
    STOP_LOSS = "STOP_LOSS"
    TRAILING_PROFIT = "TRAILING_PROFIT"
    TRAILING_LOSS = "TRAILING_LOSS"
    EMERGENCY_EXIT = "EMERGENCY_EXIT"
    MANUAL = "MANUAL"
    AUTO_CLOSE = "AUTO_CLOSE"


class BotStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    STOPPED = "stopped"


# ───── bot state ──────────────────────────────────────────────────────
@dataclass
class AIConfig:
    enabled: bool = True
    confidence_threshold: float = 0.82
    news_weight: float = 0.10
    backtest_weight: float = 0.05
    learning_weight: float = 0.03
    min_gas_fee_balance: float = 10.0

    def __post_init__(self) -> None:
        _check("confidence_threshold", self.confidence_threshold, 0.5, 0.99)
        for name in ("news_weight", "backtest_weight", "learning_weight"):
            _check(name, getattr(self, name), 0.0, 0.5)
        if self.min_gas_fee_balance < 1:
            raise ValueError("min_gas_fee_balance must be >= 1")


@dataclass
class TradingConfig:
    risk_percent: float = 0.02
    max_leverage: int = 10
    max_daily_trades: int = 50
    allowed_pairs: List[str] = field(default_factory=lambda: ["BTCUSDT"])
    blacklist_pairs: List[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        _check("risk_percent", self.risk_percent, 0.001, 0.1)
        _check("max_leverage", self.max_leverage, 1, 20)
        _check("max_daily_trades", self.max_daily_trades, 1, 200)


@dataclass
class RiskManagement:
    max_daily_trades_high_win_rate: int = 4
    max_daily_trades_low_win_rate: int = 2
    win_rate_threshold: float = 0.85
    max_consecutive_losses: int = 2
    cooldown_period_hours: float = 24
    cooldown_start_time: Optional[str] = None
    is_in_cooldown: bool = False
    cooldown_reason: str = ""

    def __post_init__(self) -> None:
        _check("max_daily_trades_high_win_rate", self.max_daily_trades_high_win_rate, 1, 20)
        _check("max_daily_trades_low_win_rate", self.max_daily_trades_low_win_rate, 1, 10)
        _check("win_rate_threshold", self.win_rate_threshold, 0.5, 0.99)
        _check("max_consecutive_losses", self.max_consecutive_losses, 1, 10)
        _check("cooldown_period_hours", self.cooldown_period_hours, 1, 168)


@dataclass
class BotStats:
    total_signals_received: int = 0
    signals_executed: int = 0
    signals_rejected: int = 0
    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    win_rate: float = 0.0
    total_profit: float = 0.0
    total_loss: float = 0.0
    net_profit: float = 0.0
    best_trade: float = 0.0
    worst_trade: float = 0.0
    avg_profit: float = 0.0
    avg_loss: float = 0.0


@dataclass
class BotState:
    user_id: str
    status: str = BotStatus.ACTIVE.value
    ai_config: AIConfig = field(default_factory=AIConfig)
    trading_config: TradingConfig = field(default_factory=TradingConfig)
    risk_management: RiskManagement = field(default_factory=RiskManagement)
    stats: BotStats = field(default_factory=BotStats)
    consecutive_wins: int = 0
    consecutive_losses: int = 0
    daily_trade_count: int = 0
    weekly_profit_loss: float = 0.0
    last_trade_time: Optional[str] = None
    last_active: Optional[str] = None
    created_at: Optional[str] = None

    @property
    def execution_rate(self) -> float:
        s = self.stats
        return s.signals_executed / s.total_signals_received if s.total_signals_received else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BotState":
        state = _load(cls, data)
        state.ai_config = _load(AIConfig, data.get("ai_config"))
        state.trading_config = _load(TradingConfig, data.get("trading_config"))
        state.risk_management = _load(RiskManagement, data.get("risk_management"))
        state.stats = _load(BotStats, data.get("stats"))
        return state


# ───── signal ─────────────────────────────────────────────────────────
@dataclass
class Signal:
    id: str
    symbol: str
    action: str                 # LONG | SHORT
    confidence: float           # technical confidence 0-1
    entry_price: float
    stop_loss: float
    take_profit: float
    indicators: Dict[str, float] = field(default_factory=dict)
    timestamp: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Signal":
        """Validate an inbound payload; malformed signals never reach scoring."""
        missing = [k for k in ("id", "symbol", "action", "confidence",
                               "entry_price", "stop_loss", "take_profit")
                   if data.get(k) in (None, "")]
        if missing:
            raise InvalidSignalError(f"signal missing field(s): {', '.join(missing)}")

        action = str(data["action"]).upper()
        if action not in ("LONG", "SHORT"):
            raise InvalidSignalError(f"unknown action {data['action']!r}")
        try:
            conf = float(data["confidence"])
            prices = {k: float(data[k]) for k in ("entry_price", "stop_loss", "take_profit")}
            indicators = {k: float(v) for k, v in (data.get("indicators") or {}).items()
                          if v is not None}
        except (TypeError, ValueError, AttributeError) as exc:
            raise InvalidSignalError(f"non-numeric signal field – {exc}") from exc
        nonfinite = [k for k, v in {"confidence": conf, **prices, **indicators}.items()
                     if not math.isfinite(v)]
        if nonfinite:
            raise InvalidSignalError(f"non-finite signal field(s): {', '.join(nonfinite)}")
        if not 0.0 <= conf <= 1.0:
            raise InvalidSignalError(f"confidence {conf} outside [0, 1]")
        bad = [k for k, v in prices.items() if v <= 0]
        if bad:
            raise InvalidSignalError(f"non-positive price field(s): {', '.join(bad)}")

        return cls(
            id=str(data["id"]),
            symbol=str(data["symbol"]).upper(),
            action=action,
            confidence=conf,
            indicators=indicators,
            timestamp=data.get("timestamp"),
            **prices,
        )


# ───── decision record ────────────────────────────────────────────────
@dataclass
class ConfidenceBreakdown:
    technical: float
    news: float = 0.0
    backtest: float = 0.0
    learning: float = 0.0
    total: float = 0.0


@dataclass
class Execution:
    executed_at: str
    position_id: str
    entry_price: float
    size: float = 0.0
    leverage: float = 1.0
    margin_used: float = 0.0
    result: Optional[str] = None
    exit_price: Optional[float] = None
    exit_time: Optional[str] = None
    profit: Optional[float] = None
    profit_percent: Optional[float] = None
    duration_min: Optional[int] = None
    exit_type: Optional[str] = None


@dataclass
class BalanceSnapshot:
    gas_fee_balance: float = 0.0
    exchange_balance: float = 0.0
    available_margin: float = 0.0


@dataclass
class DecisionRecord:
    id: str
    user_id: str
    signal_id: str
    signal: Dict[str, Any]
    confidence: ConfidenceBreakdown
    decision: str
    reason: str
    balance_snapshot: BalanceSnapshot = field(default_factory=BalanceSnapshot)
    news_context: Optional[Dict[str, Any]] = None
    backtest_context: Optional[Dict[str, Any]] = None
    learning_context: Optional[Dict[str, Any]] = None
    execution: Optional[Execution] = None
    ai_cost: float = 0.0
    provider: str = "rule-based"
    timestamp: Optional[str] = None

    @property
    def has_result(self) -> bool:
        return self.execution is not None and self.execution.result is not None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DecisionRecord":
        rec = _load(cls, data)
        rec.confidence = _load(ConfidenceBreakdown, data.get("confidence"))
        rec.balance_snapshot = _load(BalanceSnapshot, data.get("balance_snapshot"))
        if data.get("execution"):
            rec.execution = _load(Execution, data["execution"])
        return rec
