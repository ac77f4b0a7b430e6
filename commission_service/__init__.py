"""
commission_service
==================

Gas-fee balance ledger and the commission & safety engine.

Modules
-------
ledger.py   – balance / settings / commission book in Redis,
              conditional (WATCH/MULTI) debit
engine.py   – can_trade, safe profit ceiling, auto-close check,
              idempotent commission deduction, summary rollup
"""

from .engine import (
    AutoCloseCheck, CommissionEngine, CommissionReceipt, CommissionSummary,
    ProfitCeiling, TradeEligibility,
)
from .ledger import BalanceLedger, CommissionTx, PlatformConfig

__all__ = [
    "AutoCloseCheck", "BalanceLedger", "CommissionEngine", "CommissionReceipt",
    "CommissionSummary", "CommissionTx", "PlatformConfig", "ProfitCeiling",
    "TradeEligibility",
]
