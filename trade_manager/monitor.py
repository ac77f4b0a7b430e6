"""
monitor.py – watches one open position against the safe profit ceiling
======================================================================

One daemon thread per position.  Every MONITOR_INTERVAL seconds:

    profit = exchange.position_profit(pid)
    if commission.should_auto_close(user, profit).close:
        exchange.close_trade(pid, AUTO_CLOSE)  →  on_close(...)

`stop()` wakes the thread immediately (threading.Event) and, unless told
otherwise, runs one last ceiling check so a position is never left
unwatched between the final poll and the stop.

A position the exchange closed by itself (SL / TP fill, liquidation) is
reported through the same `on_close` callback with its own exit type.
"""

from __future__ import annotations

import threading
from typing import Callable, Optional

from commission_service.engine import CommissionEngine
from shared.config import MONITOR_INTERVAL
from shared.logging import get_logger
from shared.models import ExitType
from shared.redis_client import heartbeat
from trade_executor.exchange import ExchangeClient

log = get_logger("trade_manager.monitor")

# (position_id, exit_price, profit, exit_type)
CloseCallback = Callable[[str, float, float, ExitType], None]


class PositionMonitor:
    def __init__(self, user_id: str, position_id: str, exchange: ExchangeClient,
                 commission: CommissionEngine, on_close: CloseCallback,
                 interval: float = MONITOR_INTERVAL) -> None:
        self.user_id = user_id
        self.position_id = position_id
        self.exchange = exchange
        self.commission = commission
        self.on_close = on_close
        self.interval = interval
        self._stop = threading.Event()
        self._lock = threading.RLock()
        self._done = False
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> "PositionMonitor":
        self._thread = threading.Thread(target=self._loop, daemon=True,
                                        name=f"monitor-{self.position_id}")
        self._thread.start()
        log.info("monitoring %s every %gs", self.position_id, self.interval,
                 extra={"user": self.user_id, "position": self.position_id})
        return self

    def stop(self, final_check: bool = True, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if final_check:
            self.check()
        th = self._thread
        if th is not None and th is not threading.current_thread():
            th.join(timeout if timeout is not None else self.interval + 1)

    # ───── polling ────────────────────────────────────────────────────
    def _loop(self) -> None:
        while not self._stop.wait(self.interval):
            heartbeat("position_monitor", self.commission.ledger.rds)
            if self.check():
                break

    def check(self) -> bool:
        """One ceiling check.  True once the position is no longer open."""
        with self._lock:
            if self._done:
                return True
            try:
                if not self.exchange.is_open(self.position_id):
                    pos = self.exchange.position(self.position_id)
                    exit_type = _exit_type(pos.exit_type)
                    self._done = True
                    log.info("%s closed on the exchange (%s)", self.position_id, exit_type.value,
                             extra={"user": self.user_id, "position": self.position_id})
                else:
                    profit = self.exchange.position_profit(self.position_id)
                    exit_type = None
            except Exception as exc:                             # noqa: BLE001
                log.error("profit poll failed – %s", exc,
                          extra={"user": self.user_id, "position": self.position_id})
                return False

            if exit_type is None:
                verdict = self.commission.should_auto_close(self.user_id, profit)
                if not verdict.close:
                    return False

                log.warning("AUTO-CLOSE %s – %s", self.position_id, verdict.reason,
                            extra={"user": self.user_id, "position": self.position_id})
                try:
                    pos = self.exchange.close_trade(self.position_id, ExitType.AUTO_CLOSE.value)
                except Exception as exc:                         # noqa: BLE001
                    log.error("auto-close order failed – %s – retrying next poll", exc,
                              extra={"user": self.user_id, "position": self.position_id})
                    return False
                exit_type = ExitType.AUTO_CLOSE
                self._done = True

        # callback outside the lock: the runner stops (and joins) this monitor
        exit_price = pos.exit_price if pos.exit_price is not None else pos.spec.price
        self.on_close(self.position_id, exit_price, pos.realized or 0.0, exit_type)
        return True


def _exit_type(value: Optional[str]) -> ExitType:
    """Broker exit reason → ExitType; anything unrecognised counts as MANUAL."""
    if value in {e.value for e in ExitType}:
        return ExitType(value)
    return ExitType.MANUAL
