"""
rules.py  – confidence scoring helpers for the decision engine
==============================================================
Pure-function utilities only; no Redis, no side-effects.

    total = clip01(technical + news + backtest + learning)

Each adjustment is signed and clipped to ±its configured weight.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Iterable, List, Mapping, Optional

import numpy as np

from shared.models import Decision
from shared.utils import pct, signed_pct

# performance score uses a 50 % win rate as neutral
NEUTRAL_WIN_RATE = 0.5


@dataclass
class Component:
    """One line of the confidence breakdown; value None = no context."""
    label: str
    value: Optional[float]
    note: str = ""

    @property
    def contribution(self) -> float:
        return self.value if self.value is not None else 0.0


# ---------------------------------------------------------------------
def bounded(adj: float, weight: float) -> float:
    return float(np.clip(adj, -weight, weight))

def news_adjustment(sentiment: float, weight: float) -> float:
    """Sentiment −1 (bearish) … +1 (bullish) scaled by the news weight."""
    return bounded(float(np.clip(sentiment, -1.0, 1.0)) * weight, weight)

def backtest_adjustment(recent_win_rate: float, weight: float) -> float:
    performance = (recent_win_rate - NEUTRAL_WIN_RATE) * 2          # −1 … 1
    return bounded(performance * weight, weight)

def learning_adjustment(matches: Iterable[Mapping], weight: float) -> float:
    """
    Win patterns push up, loss patterns push down, each by
    strength/100 × confidence × weight; the sum is capped at ±weight.
    """
    adj = 0.0
    for m in matches:
        step = float(m["strength"]) / 100 * float(m["confidence"]) * weight
        adj += -step if m["type"] == "loss" else step
    return bounded(adj, weight)

def total_confidence(technical: float, components: Iterable[Component]) -> float:
    return float(np.clip(technical + sum(c.contribution for c in components), 0.0, 1.0))

def decide(total: float, threshold: float) -> Decision:
    # round away float noise so 0.82 vs 0.8200000000000001 cannot flip a decision
    return Decision.EXECUTE if round(total, 9) >= round(threshold, 9) else Decision.SKIP

def build_reason(technical: float, components: List[Component], total: float,
                 threshold: float, decision: Decision) -> str:
    parts = [f"Technical analysis: {pct(technical)}"]
    for c in components:
        if c.value is None:
            parts.append(f"{c.label}: n/a ({c.note or 'no context'})")
        else:
            parts.append(f"{c.label}: {signed_pct(c.value)}")
    parts.append(f"Final confidence: {pct(total)}")
    if decision is Decision.EXECUTE:
        parts.append(f"EXECUTE - confidence at or above threshold ({pct(threshold, 0)})")
    else:
        parts.append(f"SKIP - confidence below threshold ({pct(threshold, 0)})")
    return " | ".join(parts)
