from datetime import datetime, timedelta, timezone

import pytest

from decision_service import rules as R
from decision_service.ledger import DecisionLedger, close_execution
from decision_service.patterns import LearningPattern, PatternBook
from shared.errors import StateConsistencyError
from shared.models import (
    ConfidenceBreakdown, Decision, DecisionRecord, Execution, ExitType, TradeResult,
)

T0 = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


def record(ledger, decision="EXECUTE", user="u1", action="LONG"):
    return ledger.append(DecisionRecord(
        id=ledger.next_id(), user_id=user, signal_id="s",
        signal={"symbol": "BTCUSDT", "action": action, "entry_price": 100.0},
        confidence=ConfidenceBreakdown(technical=0.9, total=0.9),
        decision=decision, reason="r", ai_cost=0.001, timestamp=T0.isoformat()))


def test_for_user_newest_first_and_filter(r):
    led = DecisionLedger(r)
    ids = [record(led, d).id for d in ("EXECUTE", "SKIP", "EXECUTE", "SKIP")]
    assert [x.id for x in led.for_user("u1")] == ids[::-1]
    assert [x.id for x in led.for_user("u1", limit=1)] == [ids[-1]]
    assert [x.id for x in led.for_user("u1", decision=Decision.EXECUTE)] == [ids[2], ids[0]]
    assert led.for_user("nobody") == []


def test_paging_past_one_chunk(r):
    led = DecisionLedger(r)
    for _ in range(130):
        record(led)
    assert led.count("u1") == 130
    assert len(led.for_user("u1", limit=500)) == 130


def test_stats_and_position_lookup(r):
    led = DecisionLedger(r)
    a, b = record(led), record(led)
    record(led, "SKIP")
    led.record_execution(a.id, "P-a", 100.0, now=T0)
    led.record_execution(b.id, "P-b", 100.0, now=T0)
    led.record_result(a.id, TradeResult.WIN, 110.0, 10.0, ExitType.TAKE_PROFIT, T0)
    led.record_result(b.id, TradeResult.LOSS, 95.0, -5.0, ExitType.STOP_LOSS, T0)

    stats = led.stats("u1")
    assert stats["total"] == 3
    assert stats["executed"] == 2
    assert stats["skipped"] == 1
    assert stats["wins"] == stats["losses"] == 1
    assert stats["win_rate"] == pytest.approx(0.5)
    assert stats["total_ai_cost"] == pytest.approx(0.003)
    assert led.find_by_position("u1", "P-b").id == b.id
    assert [x.id for x in led.recent_results("u1")] == [b.id, a.id]


def test_close_execution_short_and_duration(r):
    led = DecisionLedger(r)
    rec = record(led, action="SHORT")
    rec.execution = Execution(executed_at=T0.isoformat(), position_id="P", entry_price=100.0)
    close_execution(rec, TradeResult.WIN, 90.0, 20.0, ExitType.TRAILING_PROFIT,
                    T0 + timedelta(minutes=95))
    assert rec.execution.profit_percent == pytest.approx(10.0)
    assert rec.execution.duration_min == 95
    assert rec.execution.exit_type == "TRAILING_PROFIT"


def test_result_without_execution_refused(r):
    led = DecisionLedger(r)
    rec = record(led)
    with pytest.raises(StateConsistencyError):
        led.record_result(rec.id, TradeResult.WIN, 1.0, 1.0, ExitType.MANUAL)


def test_pattern_matching_rules():
    p = LearningPattern(type="loss", description="overbought longs", conditions={
        "rsi": {"min": 70}, "action": "LONG", "hours": [12, 13]})
    assert p.matches({"rsi": 75, "action": "LONG", "hour": 12})
    assert not p.matches({"rsi": 65, "action": "LONG", "hour": 12})
    assert not p.matches({"rsi": 75, "action": "SHORT", "hour": 12})
    assert not p.matches({"rsi": 75, "action": "LONG", "hour": 3})
    assert p.matches({"action": "LONG", "hour": 13})            # unknown rsi ignored


def test_pattern_book_filters_low_confidence(r):
    book = PatternBook(r)
    book.add("u1", LearningPattern(type="win", description="weak", confidence=0.2))
    strong = book.add("u1", LearningPattern(type="win", description="strong", confidence=0.6))
    assert [p.id for p in book.matching("u1", {"symbol": "BTCUSDT"})] == [strong.id]
    with pytest.raises(ValueError):
        book.add("u1", LearningPattern(type="maybe", description="?"))


def test_pattern_outcome_updates_strength(r):
    book = PatternBook(r)
    p = book.add("u1", LearningPattern(type="win", description="w"))
    for res in (TradeResult.WIN, TradeResult.WIN, TradeResult.LOSS, TradeResult.WIN):
        book.record_outcome("u1", [p.id], res)
    learned = book.all("u1")[0]
    assert learned.occurrences == 4
    assert learned.strength == pytest.approx(75.0)
    assert learned.confidence == pytest.approx(0.2)


def test_rules_components():
    assert R.news_adjustment(-0.5, 0.10) == pytest.approx(-0.05)
    assert R.backtest_adjustment(0.25, 0.05) == pytest.approx(-0.025)
    assert R.learning_adjustment(
        [{"type": "win", "strength": 80, "confidence": 1.0},
         {"type": "win", "strength": 90, "confidence": 1.0}], 0.03) == pytest.approx(0.03)
    assert R.total_confidence(0.98, [R.Component("x", 0.1)]) == 1.0
    assert R.decide(0.82, 0.82) is Decision.EXECUTE
    assert R.decide(0.8199, 0.82) is Decision.SKIP


def test_reason_shows_zero_contribution():
    comps = [R.Component("News sentiment", 0.0), R.Component("Recent performance", None, "x")]
    text = R.build_reason(0.9, comps, 0.9, 0.82, Decision.EXECUTE)
    assert "News sentiment: +0.0%" in text
    assert "Recent performance: n/a (x)" in text
