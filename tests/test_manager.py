import time
from datetime import date

import pytest
from fastapi.testclient import TestClient

from shared.models import BalanceSnapshot, BotStatus, Decision, ExitType, TradeResult
from shared.redis_client import trading_paused
from trade_executor.exchange import ExchangeClient, PaperExchange, TradeSpec
from trade_manager.manager import BotRunner, Manager, create_app
from trade_manager.monitor import PositionMonitor

from conftest import USER, make_signal

EQUITY = BalanceSnapshot(exchange_balance=1000.0, available_margin=1000.0)


def wait_for(cond, timeout=3.0):
    deadline = time.time() + timeout
    while time.time() < deadline:
        if cond():
            return True
        time.sleep(0.01)
    return False


@pytest.fixture
def exchange():
    return PaperExchange()


@pytest.fixture
def runner(engine, commission, exchange):
    run = BotRunner(USER, exchange, engine=engine, commission=commission, interval=60)
    yield run
    for pid in run.open_positions:
        run._monitors[pid].stop(final_check=False)


def test_paper_exchange_pnl_is_side_aware(exchange):
    long_ = exchange.open_trade(TradeSpec("BTCUSDT", "LONG", 2, 100.0, 95.0, 110.0))
    short = exchange.open_trade(TradeSpec("BTCUSDT", "SHORT", 2, 100.0, 105.0, 90.0))
    exchange.set_price("BTCUSDT", 103.0)
    assert exchange.position_profit(long_.id) == pytest.approx(6.0)
    assert exchange.position_profit(short.id) == pytest.approx(-6.0)
    closed = exchange.close_trade(short.id, "MANUAL")
    assert not closed.is_open
    assert closed.realized == pytest.approx(-6.0)


def test_monitor_check_forces_close_at_threshold(commission, exchange):
    closes = []
    pos = exchange.open_trade(TradeSpec("BTCUSDT", "LONG", 4, 100.0, 95.0, 200.0))
    mon = PositionMonitor(USER, pos.id, exchange, commission,
                          lambda *args: closes.append(args), interval=60)

    exchange.set_price("BTCUSDT", 156.0)                 # +224 < 225
    assert not mon.check()
    exchange.set_price("BTCUSDT", 157.0)                 # +228
    assert mon.check()
    assert closes == [(pos.id, 157.0, pytest.approx(228.0), ExitType.AUTO_CLOSE)]
    assert not exchange.is_open(pos.id)
    assert mon.check()                                   # already done, no second close
    assert len(closes) == 1


def test_monitor_reports_exchange_side_close(commission, exchange):
    closes = []
    pos = exchange.open_trade(TradeSpec("BTCUSDT", "LONG", 4, 100.0, 95.0, 105.0))
    mon = PositionMonitor(USER, pos.id, exchange, commission,
                          lambda *args: closes.append(args), interval=60)
    exchange.set_price("BTCUSDT", 95.0)
    exchange.close_trade(pos.id, "LIQUIDATED")                # unknown reason → MANUAL
    assert mon.check()
    assert closes == [(pos.id, 95.0, pytest.approx(-20.0), ExitType.MANUAL)]
    assert mon.check()
    assert len(closes) == 1


def test_exchange_client_contract_is_abstract():
    class Partial(ExchangeClient):
        def open_trade(self, spec):
            raise RuntimeError

    with pytest.raises(TypeError):
        Partial()


def test_execute_opens_position_and_records_execution(runner, engine, exchange):
    rec = runner.on_signal(make_signal(0.88), EQUITY)
    assert rec.decision == Decision.EXECUTE.value
    assert len(runner.open_positions) == 1
    pid = runner.open_positions[0]
    stored = engine.ledger.get(rec.id)
    assert stored.execution.position_id == pid
    assert stored.execution.size == pytest.approx(4.0)      # 1000 × 2 % / 5
    assert exchange.position(pid).spec.comment == rec.id


def test_skip_opens_nothing(runner):
    rec = runner.on_signal(make_signal(0.60), EQUITY)
    assert rec.decision == Decision.SKIP.value
    assert runner.open_positions == []


def test_background_monitor_auto_closes(engine, commission, exchange, ledger, store):
    run = BotRunner(USER, exchange, engine=engine, commission=commission, interval=0.01)
    rec = run.on_signal(make_signal(0.88), EQUITY)
    exchange.set_price("BTCUSDT", 160.0)                 # +240 ≥ 225

    assert wait_for(lambda: run.open_positions == [] and engine.ledger.get(rec.id).has_result)
    closed = engine.ledger.get(rec.id)
    assert closed.execution.exit_type == ExitType.AUTO_CLOSE.value
    assert closed.execution.result == TradeResult.WIN.value
    assert ledger.balance(USER) == pytest.approx(2.0)         # 50 − 20 % × 240
    assert ledger.balance(USER) >= 0
    assert store.get(USER).stats.winning_trades == 1


def test_take_profit_fill_on_exchange_is_recorded(engine, commission, exchange, ledger, store):
    run = BotRunner(USER, exchange, engine=engine, commission=commission, interval=0.01)
    rec = run.on_signal(make_signal(0.88), EQUITY)
    pid = run.open_positions[0]
    exchange.set_price("BTCUSDT", 105.0)
    exchange.close_trade(pid, ExitType.TAKE_PROFIT.value)

    assert wait_for(lambda: run.open_positions == [] and engine.ledger.get(rec.id).has_result)
    closed = engine.ledger.get(rec.id)
    assert closed.execution.exit_type == ExitType.TAKE_PROFIT.value
    assert closed.execution.result == TradeResult.WIN.value
    assert closed.execution.exit_price == pytest.approx(105.0)
    assert ledger.balance(USER) == pytest.approx(46.0)          # 50 − 20 % × 20
    assert store.get(USER).stats.winning_trades == 1


def test_manual_close_is_idempotent(runner, engine, ledger, store):
    rec = runner.on_signal(make_signal(0.88), EQUITY)
    pid = runner.open_positions[0]

    first = runner.on_position_closed(pid, 105.0, 20.0, ExitType.TAKE_PROFIT)
    again = runner.on_position_closed(pid, 105.0, 20.0, ExitType.TAKE_PROFIT)
    assert first.id == rec.id
    assert again is None
    assert ledger.balance(USER) == pytest.approx(46.0)
    assert store.get(USER).stats.total_trades == 1
    assert runner.open_positions == []
    assert runner._closed == set()


def test_losing_close_charges_nothing(runner, ledger, store):
    runner.on_signal(make_signal(0.88), EQUITY)
    pid = runner.open_positions[0]
    rec = runner.on_position_closed(pid, 95.0, -20.0, ExitType.STOP_LOSS)
    assert rec.execution.result == TradeResult.LOSS.value
    assert ledger.balance(USER) == pytest.approx(50.0)
    assert store.get(USER).consecutive_losses == 1


def test_refused_commission_still_records_result(runner, ledger, store):
    runner.on_signal(make_signal(0.88), EQUITY)
    pid = runner.open_positions[0]
    rec = runner.on_position_closed(pid, 170.0, 400.0, ExitType.TAKE_PROFIT)   # needs 80
    assert rec.execution.result == TradeResult.WIN.value
    assert ledger.balance(USER) == pytest.approx(50.0)
    assert ledger.failures(USER)[0]["position_id"] == pid


def test_stop_runs_final_ceiling_check(runner, exchange, engine, store):
    rec = runner.on_signal(make_signal(0.88), EQUITY)
    exchange.set_price("BTCUSDT", 160.0)
    runner.stop(BotStatus.PAUSED)
    assert runner.open_positions == []
    assert engine.ledger.get(rec.id).execution.exit_type == ExitType.AUTO_CLOSE.value
    assert store.get(USER).status == BotStatus.PAUSED.value


def test_no_open_without_commission_rate(r, engine, exchange, store):
    r.hdel("settings:global", "commission_rate")
    run = BotRunner(USER, exchange, engine=engine, interval=60)
    rec = run.on_signal(make_signal(0.88), EQUITY)
    assert rec.decision == Decision.EXECUTE.value
    assert run.open_positions == []


# ───── REST API ───────────────────────────────────────────────────────
@pytest.fixture
def api(r, ledger, bot):
    mgr = Manager(client=r, interval=60)
    yield mgr, TestClient(create_app(mgr))
    if mgr._engine is not None:
        mgr._engine.close()


def test_status_endpoint(api):
    _, client = api
    body = client.get(f"/bots/{USER}/status").json()
    assert body["status"] == "active"
    assert body["risk_state"] == "NORMAL"
    assert body["daily_cap"] == 2
    assert body["gas_fee_balance"] == pytest.approx(50.0)
    assert client.get("/bots/ghost/status").status_code == 404


def test_pause_and_resume_bot(api, store):
    _, client = api
    assert client.post(f"/bots/{USER}/pause").json()["status"] == "paused"
    assert store.get(USER).status == "paused"
    client.post(f"/bots/{USER}/resume")
    assert store.get(USER).status == "active"


def test_platform_pause_flag(api, r):
    _, client = api
    assert client.post("/pause").json() == {"paused": True}
    assert trading_paused(r)
    assert client.post("/resume").json() == {"paused": False}
    assert not trading_paused(r)


def test_commission_and_decisions_endpoints(api, commission):
    mgr, client = api
    commission.deduct_commission(USER, 100.0, "pos-1")
    mgr.engine.evaluate(USER, make_signal(0.88, sid="a"))
    mgr.engine.evaluate(USER, make_signal(0.40, sid="b"))

    summary = client.get(f"/bots/{USER}/commission").json()
    assert summary["transaction_count"] == 1
    assert summary["total_commission_paid"] == pytest.approx(20.0)

    skips = client.get(f"/bots/{USER}/decisions", params={"decision": "SKIP"}).json()
    assert [d["signal_id"] for d in skips] == ["b"]
    assert len(client.get(f"/bots/{USER}/decisions").json()) == 2


def test_supervisor_tick_resets_on_new_day(api, store):
    mgr, _ = api
    def _bump(b):
        b.daily_trade_count = 2
    store.mutate(USER, _bump)
    today = mgr.tick(None)
    assert store.get(USER).daily_trade_count == 2
    mgr.tick(date(2000, 1, 1))
    assert store.get(USER).daily_trade_count == 0
    assert today == mgr.tick(today)
