"""
utils.py – small generic helpers reused in multiple services
"""

from __future__ import annotations
from datetime import datetime, timezone
from typing import Any, Optional

import numpy as np


def now_utc() -> datetime:
    return datetime.now(tz=timezone.utc)


def to_iso(ts: Optional[datetime]) -> Optional[str]:
    return ts.isoformat() if ts is not None else None


def from_iso(val: Any) -> Optional[datetime]:
    """ISO string → tz-aware UTC datetime (naïve input is taken as UTC)."""
    if val is None or val == "":
        return None
    ts = val if isinstance(val, datetime) else datetime.fromisoformat(str(val))
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def money(x: float) -> float:
    """Round to 8 dp so float noise never leaks into stored balances."""
    return float(np.round(x, 8))


def pct(x: float, digits: int = 1) -> str:
    """0.8812 → '88.1%'."""
    return f"{x * 100:.{digits}f}%"


def signed_pct(x: float, digits: int = 1) -> str:
    """0.05 → '+5.0%', -0.02 → '-2.0%', 0 → '+0.0%'."""
    return f"{'+' if x >= 0 else ''}{x * 100:.{digits}f}%"
