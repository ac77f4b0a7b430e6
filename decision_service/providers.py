"""
providers.py – optional context behind the three confidence adjustments
=======================================================================

NewsProvider      aggregate sentiment of recent headlines for a symbol
BacktestProvider  win rate of the bot's own recently closed decisions
LearningProvider  learned win / loss patterns matching the signal

Each `fetch` returns a plain dict (stored verbatim in the decision
record) or None when there is nothing to say.  The engine runs them
under a timeout; any failure degrades that adjustment to zero.
"""

from __future__ import annotations

import json
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import numpy as np
import redis

from shared.config import BACKTEST_WINDOW, NEWS_LOOKBACK_HRS
from shared.constants import KEY_NEWS, KEY_NEWS_GLOBAL
from shared.models import Signal, TradeResult
from shared.redis_client import rds
from shared.utils import from_iso, now_utc

from .ledger import DecisionLedger
from .patterns import PatternBook

MAX_HEADLINES = 3
MAX_NEWS_ITEMS = 200      # per feed; older items are trimmed on publish


class NewsProvider:
    """
    news:events:<SYM>     LIST JSON {title, source, sentiment, impact, published_at}
    news:events:_global   LIST JSON high-impact items that move every symbol
    """

    def __init__(self, client: Optional[redis.Redis] = None,
                 lookback_hours: int = NEWS_LOOKBACK_HRS) -> None:
        self.rds = client if client is not None else rds
        self.lookback = timedelta(hours=lookback_hours)

    def publish(self, symbol: Optional[str], title: str, source: str, sentiment: float,
                impact: str = "medium", published_at: Optional[datetime] = None) -> None:
        item = {
            "title": title,
            "source": source,
            "sentiment": float(np.clip(sentiment, -1.0, 1.0)),
            "impact": impact,
            "published_at": (published_at or now_utc()).isoformat(),
        }
        key = KEY_NEWS.format(symbol.upper()) if symbol else KEY_NEWS_GLOBAL
        pipe = self.rds.pipeline()
        pipe.lpush(key, json.dumps(item))
        pipe.ltrim(key, 0, MAX_NEWS_ITEMS - 1)
        pipe.execute()

    def fetch(self, symbol: str, now: Optional[datetime] = None) -> Optional[Dict[str, Any]]:
        cutoff = (now or now_utc()) - self.lookback
        items: List[Dict[str, Any]] = []
        for key in (KEY_NEWS.format(symbol), KEY_NEWS_GLOBAL):
            for raw in self.rds.lrange(key, 0, MAX_NEWS_ITEMS - 1):
                item = json.loads(raw)
                if key == KEY_NEWS_GLOBAL and item.get("impact") != "high":
                    continue
                ts = from_iso(item.get("published_at"))
                if ts is not None and ts >= cutoff:
                    items.append(item)
        if not items:
            return None

        items.sort(key=lambda i: i["published_at"], reverse=True)
        high = sum(1 for i in items if i.get("impact") == "high")
        return {
            "sentiment": float(np.mean([i["sentiment"] for i in items])),
            "headlines": [i["title"] for i in items[:MAX_HEADLINES]],
            "sources": [i["source"] for i in items[:MAX_HEADLINES]],
            "impact_score": high / len(items),
            "count": len(items),
        }


class BacktestProvider:
    """Closes the feedback loop: outcomes in the decision ledger → confidence."""

    def __init__(self, ledger: DecisionLedger, window: int = BACKTEST_WINDOW) -> None:
        self.ledger = ledger
        self.window = window

    def fetch(self, user_id: str) -> Optional[Dict[str, Any]]:
        recent = self.ledger.recent_results(user_id, self.window)
        if not recent:
            return None
        profits = [r.execution.profit or 0.0 for r in recent
                   if r.execution.result == TradeResult.WIN.value]
        losses = [abs(r.execution.profit or 0.0) for r in recent
                  if r.execution.result == TradeResult.LOSS.value]
        win_rate = len(profits) / len(recent)
        return {
            "recent_win_rate": win_rate,
            "recent_trades": len(recent),
            "avg_profit": float(np.mean(profits)) if profits else 0.0,
            "avg_loss": float(np.mean(losses)) if losses else 0.0,
            "performance_score": (win_rate - 0.5) * 2,
        }


class LearningProvider:
    def __init__(self, book: PatternBook) -> None:
        self.book = book

    @staticmethod
    def market_conditions(signal: Signal, now: datetime) -> Dict[str, Any]:
        return {
            "rsi": signal.indicators.get("rsi"),
            "macd": signal.indicators.get("macd"),
            "adx": signal.indicators.get("adx"),
            "symbol": signal.symbol,
            "action": signal.action,
            "hour": now.hour,
            "weekday": now.weekday(),
        }

    def fetch(self, user_id: str, signal: Signal,
              now: Optional[datetime] = None) -> Optional[Dict[str, Any]]:
        matched = self.book.matching(user_id, self.market_conditions(signal, now or now_utc()))
        if not matched:
            return None
        self.book.record_match(user_id, matched)
        return {
            "patterns_matched": [p.id for p in matched],
            "patterns_avoided": [p.id for p in matched if p.type == "loss"],
            "descriptions": [p.description for p in matched],
            "matches": [
                {"id": p.id, "type": p.type, "strength": p.strength, "confidence": p.confidence}
                for p in matched
            ],
        }
