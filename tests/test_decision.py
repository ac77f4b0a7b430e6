import time

import pytest

from decision_service.decision_service import DecisionEngine
from decision_service.patterns import LearningPattern
from decision_service.providers import MAX_NEWS_ITEMS
from shared.errors import InvalidSignalError, StateConsistencyError
from shared.models import BalanceSnapshot, Decision, ExitType, Signal, TradeResult

from conftest import USER, make_signal


class BrokenNews:
    def fetch(self, symbol, now=None):
        raise RuntimeError("feed down")


class SlowNews:
    def fetch(self, symbol, now=None):
        time.sleep(0.5)
        return {"sentiment": 1.0}


def test_high_confidence_executes(engine, store):
    rec = engine.evaluate(USER, make_signal(0.88))
    assert rec.decision == Decision.EXECUTE.value
    assert rec.confidence.total == pytest.approx(0.88)
    assert rec.reason == (
        "Technical analysis: 88.0% | News sentiment: n/a (no recent news) | "
        "Recent performance: n/a (no closed trades yet) | "
        "Pattern learning: n/a (no matching patterns) | Final confidence: 88.0% | "
        "EXECUTE - confidence at or above threshold (82%)"
    )
    bot = store.get(USER)
    assert bot.stats.total_signals_received == 1
    assert bot.stats.signals_executed == 1
    assert bot.daily_trade_count == 1


def test_low_confidence_skips(engine, store):
    rec = engine.evaluate(USER, make_signal(0.65))
    assert rec.decision == Decision.SKIP.value
    assert rec.reason.endswith("SKIP - confidence below threshold (82%)")
    bot = store.get(USER)
    assert bot.stats.signals_rejected == 1
    assert bot.daily_trade_count == 0


def test_news_lifts_confidence_over_threshold(engine):
    engine.news.publish("BTCUSDT", "ETF inflows", "wire", 0.5)
    rec = engine.evaluate(USER, make_signal(0.78))
    assert rec.confidence.news == pytest.approx(0.05)
    assert rec.decision == Decision.EXECUTE.value
    assert "News sentiment: +5.0%" in rec.reason
    assert rec.news_context["headlines"] == ["ETF inflows"]


def test_news_adjustment_is_capped(engine):
    engine.news.publish("BTCUSDT", "moon", "wire", 5.0)
    rec = engine.evaluate(USER, make_signal(0.60))
    assert rec.confidence.news == pytest.approx(0.10)


def test_news_feed_is_capped(engine, r):
    for i in range(MAX_NEWS_ITEMS + 25):
        engine.news.publish("BTCUSDT", f"headline {i}", "wire", 0.1)
    assert r.llen("news:events:BTCUSDT") == MAX_NEWS_ITEMS
    newest = engine.news.fetch("BTCUSDT")
    assert newest["count"] == MAX_NEWS_ITEMS
    assert newest["headlines"][0] == f"headline {MAX_NEWS_ITEMS + 24}"


def test_invalid_signal_rejected_before_scoring(engine):
    with pytest.raises(InvalidSignalError):
        engine.evaluate(USER, make_signal(1.4))
    with pytest.raises(InvalidSignalError):
        engine.evaluate(USER, make_signal(stop_loss=0))
    with pytest.raises(InvalidSignalError):
        engine.evaluate(USER, make_signal(action="HOLD"))
    assert engine.ledger.count(USER) == 0


@pytest.mark.parametrize("field,value", [
    ("entry_price", float("nan")),
    ("take_profit", float("inf")),
    ("stop_loss", float("-inf")),
    ("confidence", float("nan")),
    ("indicators", {"rsi": float("nan")}),
    ("indicators", {"rsi": "n/a"}),
])
def test_non_finite_or_non_numeric_fields_rejected(engine, field, value):
    with pytest.raises(InvalidSignalError):
        Signal.from_dict(make_signal(**{field: value}))
    with pytest.raises(InvalidSignalError):
        engine.evaluate(USER, make_signal(**{field: value}))
    assert engine.ledger.count(USER) == 0


def test_symbol_filter_records_skip(engine, store):
    rec = engine.evaluate(USER, make_signal(0.95, symbol="ETHUSDT"))
    assert rec.decision == Decision.SKIP.value
    assert rec.reason == "Trading blocked: ETHUSDT is not in allowed pairs"
    assert store.get(USER).stats.signals_rejected == 1


def test_gate_denial_records_skip(engine, store):
    def _cap(b):
        b.daily_trade_count = 2
    store.mutate(USER, _cap)
    rec = engine.evaluate(USER, make_signal(0.95))
    assert rec.decision == Decision.SKIP.value
    assert rec.reason.startswith("Trading blocked: Daily trade limit reached (2 trades)")
    assert engine.ledger.count(USER) == store.get(USER).stats.total_signals_received == 1


def test_failing_provider_degrades_to_zero(r, store, ledger, bot):
    eng = DecisionEngine(r, store=store, balances=ledger, news=BrokenNews())
    try:
        rec = eng.evaluate(USER, make_signal(0.88))
    finally:
        eng.close()
    assert rec.decision == Decision.EXECUTE.value
    assert rec.confidence.news == 0.0
    assert "News sentiment: n/a (provider degraded: RuntimeError)" in rec.reason


def test_slow_provider_times_out(r, store, ledger, bot):
    eng = DecisionEngine(r, store=store, balances=ledger, news=SlowNews(), timeout=0.05)
    try:
        rec = eng.evaluate(USER, make_signal(0.70))
    finally:
        eng.close()
    assert rec.decision == Decision.SKIP.value
    assert "provider degraded: timeout after 0.05s" in rec.reason


def test_disabled_ai_layer_uses_technical_only(engine, store):
    def _off(b):
        b.ai_config.enabled = False
    store.mutate(USER, _off)
    engine.news.publish("BTCUSDT", "bullish", "wire", 1.0)
    rec = engine.evaluate(USER, make_signal(0.80))
    assert rec.confidence.total == pytest.approx(0.80)
    assert rec.reason.count("AI layer disabled") == 3


def test_balance_snapshot_recorded(engine):
    rec = engine.evaluate(USER, make_signal(0.88),
                          BalanceSnapshot(exchange_balance=1000.0, available_margin=800.0))
    assert rec.balance_snapshot.gas_fee_balance == pytest.approx(50.0)
    assert rec.balance_snapshot.exchange_balance == 1000.0


def test_execution_lifecycle_in_order(engine, store):
    rec = engine.evaluate(USER, make_signal(0.88))
    with pytest.raises(StateConsistencyError):
        engine.record_result(rec.id, TradeResult.WIN, 104.0, 12.0, ExitType.TAKE_PROFIT)

    engine.record_execution(rec.id, "PAPER-1", 100.0, size=3.0)
    with pytest.raises(StateConsistencyError):
        engine.record_execution(rec.id, "PAPER-2", 100.0)

    closed, bot = engine.record_result(rec.id, TradeResult.WIN, 104.0, 12.0,
                                       ExitType.TAKE_PROFIT)
    assert closed.execution.result == "WIN"
    assert closed.execution.profit_percent == pytest.approx(4.0)
    assert bot.stats.total_trades == 1
    assert bot.stats.winning_trades == 1
    assert store.get(USER).stats.total_profit == pytest.approx(12.0)

    with pytest.raises(StateConsistencyError):
        engine.record_result(rec.id, TradeResult.WIN, 104.0, 12.0, ExitType.TAKE_PROFIT)


def test_skip_cannot_be_executed(engine):
    rec = engine.evaluate(USER, make_signal(0.50))
    with pytest.raises(StateConsistencyError):
        engine.record_execution(rec.id, "PAPER-1", 100.0)


def test_results_feed_backtest_adjustment(engine):
    for sid in ("a", "b"):
        rec = engine.evaluate(USER, make_signal(0.88, sid=sid))
        engine.record_execution(rec.id, f"P-{sid}", 100.0)
        engine.record_result(rec.id, TradeResult.WIN, 105.0, 10.0, ExitType.TAKE_PROFIT)

    rec = engine.evaluate(USER, make_signal(0.78, sid="c"))
    assert rec.backtest_context["recent_win_rate"] == 1.0
    assert rec.confidence.backtest == pytest.approx(0.05)
    assert "Recent performance: +5.0%" in rec.reason
    assert rec.decision == Decision.EXECUTE.value


def test_two_losses_block_next_signal(engine):
    for sid in ("a", "b"):
        rec = engine.evaluate(USER, make_signal(0.88, sid=sid))
        engine.record_execution(rec.id, f"P-{sid}", 100.0)
        engine.record_result(rec.id, TradeResult.LOSS, 95.0, -10.0, ExitType.STOP_LOSS)

    rec = engine.evaluate(USER, make_signal(0.99, sid="c"))
    assert rec.decision == Decision.SKIP.value
    assert "COOLDOWN" in rec.reason


def test_learning_patterns_adjust_and_learn(engine):
    pattern = engine.patterns.add(USER, LearningPattern(
        type="win", description="BTC longs", conditions={"symbol": "BTCUSDT"},
        strength=100.0, confidence=1.0))
    rec = engine.evaluate(USER, make_signal(0.80))
    assert rec.confidence.learning == pytest.approx(0.03)
    assert rec.decision == Decision.EXECUTE.value
    assert rec.learning_context["patterns_matched"] == [pattern.id]

    engine.record_execution(rec.id, "P-1", 100.0)
    engine.record_result(rec.id, TradeResult.LOSS, 98.0, -6.0, ExitType.STOP_LOSS)
    learned = engine.patterns.all(USER)[0]
    assert learned.times_matched == 1
    assert learned.occurrences == 1
    assert learned.failure_count == 1
    assert learned.strength == 0.0


def test_audit_completeness(engine, store):
    for i, conf in enumerate((0.9, 0.5, 0.85, 0.3)):
        engine.evaluate(USER, make_signal(conf, sid=str(i)))
    bot = store.get(USER)
    assert engine.ledger.count(USER) == bot.stats.total_signals_received == 4
    assert bot.stats.signals_executed + bot.stats.signals_rejected == 4
