"""
errors.py – exception taxonomy of the bot core

Every safety-critical caller treats these as a *denial*: cannot trade,
do not deduct, do not override a close.
"""

from __future__ import annotations


class CoreError(Exception):
    """Base class for all bot-core failures."""


class ConfigurationError(CoreError):
    """Missing commission rate, unknown user / bot record."""


class InsufficientBalanceError(CoreError):
    def __init__(self, required: float, available: float, position_id: str = "") -> None:
        self.required = required
        self.available = available
        self.position_id = position_id
        super().__init__(
            f"Insufficient gas fee balance. Required: ${required:.2f}, "
            f"Available: ${available:.2f}"
        )


class StateConsistencyError(CoreError):
    """An audit write arrived out of order (e.g. result before open)."""


class InvalidSignalError(CoreError):
    """Signal payload rejected before scoring."""
