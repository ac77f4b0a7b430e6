import fakeredis
import pytest

from commission_service.engine import CommissionEngine
from commission_service.ledger import BalanceLedger
from decision_service.decision_service import DecisionEngine
from decision_service.ledger import DecisionLedger
from decision_service.patterns import PatternBook
from shared.models import BotState
from trade_manager.bot_store import BotStore
from trade_manager.risk import RiskController

USER = "u1"


@pytest.fixture
def r():
    client = fakeredis.FakeRedis(decode_responses=True)
    yield client
    client.flushall()


@pytest.fixture
def ledger(r):
    led = BalanceLedger(r)
    led.set_commission_rate(20)
    led.open_account(USER, 50.0)
    return led


@pytest.fixture
def commission(ledger):
    return CommissionEngine(ledger)


@pytest.fixture
def store(r):
    return BotStore(r)


@pytest.fixture
def bot(store, ledger):
    return store.create(USER, BotState(user_id=USER))


@pytest.fixture
def risk(store, ledger):
    return RiskController(store, ledger)


@pytest.fixture
def engine(r, store, ledger, bot):
    eng = DecisionEngine(r, store=store, balances=ledger,
                         ledger=DecisionLedger(r), patterns=PatternBook(r))
    yield eng
    eng.close()


def make_signal(confidence=0.88, sid="s1", symbol="BTCUSDT", action="LONG", **extra):
    payload = {
        "id": sid,
        "symbol": symbol,
        "action": action,
        "confidence": confidence,
        "entry_price": 100.0,
        "stop_loss": 95.0,
        "take_profit": 110.0,
        "indicators": {"rsi": 55.0, "macd": 0.4, "adx": 28.0},
    }
    payload.update(extra)
    return payload
