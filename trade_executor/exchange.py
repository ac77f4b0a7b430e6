"""
exchange.py – the bot core's view of a futures exchange
-------------------------------------------------------
Keeps the runner logic clean and testable.  `ExchangeClient` is the
contract the bot runner and the position monitor depend on; a live
adapter implements it against the broker API.  `PaperExchange` keeps
positions in memory and marks them against prices pushed with
`set_price` – used in dry-run mode and by the tests.
"""
from __future__ import annotations

import itertools
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, Optional

from shared.logging import get_logger
from shared.utils import now_utc

log = get_logger("trade_executor")


@dataclass
class TradeSpec:
    symbol: str
    direction: str        # "LONG" | "SHORT"
    quantity: float
    price: float
    sl: float
    tp: float
    leverage: float = 1.0
    comment: str = ""     # decision id


@dataclass
class Position:
    id: str
    spec: TradeSpec
    opened_at: str
    is_open: bool = True
    exit_price: Optional[float] = None
    realized: Optional[float] = None
    exit_type: Optional[str] = None
    meta: Dict[str, str] = field(default_factory=dict)

    @property
    def margin_used(self) -> float:
        return self.spec.price * self.spec.quantity / max(self.spec.leverage, 1.0)


class ExchangeClient(ABC):
    """Contract only; every call may raise on a broker failure."""

    @abstractmethod
    def open_trade(self, spec: TradeSpec) -> Position: ...

    @abstractmethod
    def position(self, position_id: str) -> Position:
        """Open or closed position; closed ones carry exit price, realised P/L, exit type."""

    @abstractmethod
    def position_profit(self, position_id: str) -> float:
        """Unrealised P/L of an open position, quote currency."""

    @abstractmethod
    def is_open(self, position_id: str) -> bool: ...

    @abstractmethod
    def close_trade(self, position_id: str, exit_type: str) -> Position: ...


class PaperExchange(ExchangeClient):
    """In-memory fills at the last pushed price."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._prices: Dict[str, float] = {}
        self._positions: Dict[str, Position] = {}
        self._seq = itertools.count(1)

    # ───── market data ────────────────────────────────────────────
    def set_price(self, symbol: str, price: float) -> None:
        with self._lock:
            self._prices[symbol] = price

    def price(self, symbol: str) -> float:
        with self._lock:
            if symbol not in self._prices:
                raise KeyError(f"no price for {symbol}")
            return self._prices[symbol]

    # ───── trading actions ────────────────────────────────────────
    def open_trade(self, spec: TradeSpec) -> Position:
        log.info("OPEN %s %s %.4f  sl=%.4f tp=%.4f",
                 spec.symbol, spec.direction, spec.quantity, spec.sl, spec.tp)
        with self._lock:
            self._prices.setdefault(spec.symbol, spec.price)
            pos = Position(id=f"PAPER-{next(self._seq)}", spec=spec,
                           opened_at=now_utc().isoformat())
            self._positions[pos.id] = pos
        return pos

    def position(self, position_id: str) -> Position:
        with self._lock:
            if position_id not in self._positions:
                raise KeyError(f"unknown position {position_id}")
            return self._positions[position_id]

    def _pnl(self, pos: Position, mark: float) -> float:
        diff = mark - pos.spec.price
        if pos.spec.direction == "SHORT":
            diff = -diff
        return diff * pos.spec.quantity

    def position_profit(self, position_id: str) -> float:
        pos = self.position(position_id)
        if not pos.is_open:
            return pos.realized or 0.0
        return self._pnl(pos, self.price(pos.spec.symbol))

    def is_open(self, position_id: str) -> bool:
        return self.position(position_id).is_open

    def close_trade(self, position_id: str, exit_type: str) -> Position:
        pos = self.position(position_id)
        mark = self.price(pos.spec.symbol)
        with self._lock:
            if pos.is_open:
                pos.is_open = False
                pos.exit_price = mark
                pos.realized = self._pnl(pos, mark)
                pos.exit_type = exit_type
                log.info("CLOSE %s %s @ %.4f (%+.2f)", position_id, exit_type, mark, pos.realized)
        return pos
