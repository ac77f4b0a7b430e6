"""
patterns.py – learned win / loss patterns per user
==================================================

learning:patterns:<user>   HASH  pattern_id → JSON LearningPattern

A pattern is a set of market conditions (indicator ranges, symbol,
action, hour-of-day, weekday) plus how trades that matched it ended.
The engine nudges confidence up for win patterns and down for loss
patterns; `record_outcome` feeds closed trades back so strength and
confidence follow reality.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional

import redis

from shared.constants import KEY_PATTERN_SEQ, KEY_PATTERNS, MIN_PATTERN_CONFIDENCE
from shared.logging import get_logger
from shared.models import TradeResult
from shared.redis_client import rds, transact

log = get_logger("decision.patterns")

# occurrences needed before a pattern is trusted at full confidence
FULL_CONFIDENCE_SAMPLES = 20
_RANGE_KEYS = ("rsi", "macd", "adx")


@dataclass
class LearningPattern:
    type: str                                   # win | loss
    description: str
    conditions: Dict[str, Any] = field(default_factory=dict)
    strength: float = 50.0                      # 0-100
    confidence: float = 0.5                     # 0-1
    is_active: bool = True
    id: str = ""
    occurrences: int = 0
    success_count: int = 0
    failure_count: int = 0
    times_matched: int = 0
    times_avoided: int = 0

    def matches(self, market: Mapping[str, Any]) -> bool:
        cond = self.conditions
        for k in _RANGE_KEYS:
            rng, val = cond.get(k), market.get(k)
            if not rng or val is None:
                continue
            if rng.get("min") is not None and val < rng["min"]:
                return False
            if rng.get("max") is not None and val > rng["max"]:
                return False
        if cond.get("symbol") and cond["symbol"] != market.get("symbol"):
            return False
        if cond.get("action") and cond["action"] != market.get("action"):
            return False
        hours = cond.get("hours") or []
        if hours and market.get("hour") is not None and market["hour"] not in hours:
            return False
        days = cond.get("days") or []
        if days and market.get("weekday") is not None and market["weekday"] not in days:
            return False
        return True

    def learn(self, result: TradeResult) -> None:
        self.occurrences += 1
        if result is TradeResult.WIN:
            self.success_count += 1
        else:
            self.failure_count += 1
        hit = self.success_count if self.type == "win" else self.failure_count
        self.strength = round(100 * hit / self.occurrences, 2)
        self.confidence = round(min(1.0, self.occurrences / FULL_CONFIDENCE_SAMPLES), 4)


class PatternBook:
    def __init__(self, client: Optional[redis.Redis] = None) -> None:
        self.rds = client if client is not None else rds

    @staticmethod
    def key(user_id: str) -> str:
        return KEY_PATTERNS.format(user_id)

    def add(self, user_id: str, pattern: LearningPattern) -> LearningPattern:
        if pattern.type not in ("win", "loss"):
            raise ValueError(f"pattern type must be win|loss, got {pattern.type!r}")
        pattern.id = pattern.id or f"p{self.rds.incr(KEY_PATTERN_SEQ)}"
        self.rds.hset(self.key(user_id), pattern.id, json.dumps(asdict(pattern)))
        return pattern

    def all(self, user_id: str) -> List[LearningPattern]:
        return [LearningPattern(**json.loads(v))
                for v in self.rds.hgetall(self.key(user_id)).values()]

    def matching(self, user_id: str, market: Mapping[str, Any]) -> List[LearningPattern]:
        return [p for p in self.all(user_id)
                if p.is_active and p.confidence >= MIN_PATTERN_CONFIDENCE and p.matches(market)]

    def record_match(self, user_id: str, patterns: Iterable[LearningPattern]) -> None:
        ids = [p.id for p in patterns]

        def _bump(pipe: Any) -> None:
            current = {pid: pipe.hget(self.key(user_id), pid) for pid in ids}
            pipe.multi()
            for pid, raw in current.items():
                if not raw:
                    continue
                p = LearningPattern(**json.loads(raw))
                p.times_matched += 1
                if p.type == "loss":
                    p.times_avoided += 1
                pipe.hset(self.key(user_id), pid, json.dumps(asdict(p)))

        transact(self.rds, _bump, self.key(user_id))

    def record_outcome(self, user_id: str, pattern_ids: Iterable[str],
                       result: TradeResult) -> int:
        """Feed a closed trade back into every pattern it matched."""
        ids = [i for i in pattern_ids if i]
        if not ids:
            return 0

        def _learn(pipe: Any) -> int:
            current = {pid: pipe.hget(self.key(user_id), pid) for pid in ids}
            pipe.multi()
            n = 0
            for pid, raw in current.items():
                if not raw:
                    continue
                p = LearningPattern(**json.loads(raw))
                p.learn(TradeResult(result))
                pipe.hset(self.key(user_id), pid, json.dumps(asdict(p)))
                n += 1
            return n

        n = transact(self.rds, _learn, self.key(user_id))
        log.info("%d pattern(s) updated with %s", n, TradeResult(result).value,
                 extra={"user": user_id})
        return n
