from datetime import datetime, timedelta, timezone

import pytest

from entryguard.core.errors import TransientFetchError
from entryguard.core.ttl_cache import TTLCache
from entryguard.exchange.price_gateway import PriceQuote
from entryguard.execution.dispatcher import ExecutionDispatcher
from entryguard.execution.job_queue import SqliteJobQueue
from entryguard.monitor.service import MonitorService
from entryguard.ops.locks import KeyedLocks
from entryguard.ops.tick_tracker import TickTracker
from entryguard.persistence.alert_store import AlertStore
from entryguard.persistence.audit import Audit
from entryguard.persistence.config_store import ConfigStore
from entryguard.persistence.db import DB
from entryguard.runner.models import Side, Signal, TradeMode
from entryguard.runner.scheduler import MonitorScheduler


@pytest.fixture(autouse=True)
def _test_env(monkeypatch, tmp_path):
    """
    Keep tests off the real database and the public exchange.
    """
    monkeypatch.setenv("DB_PATH", str(tmp_path / "env.db"))
    monkeypatch.setenv("AUDIT_JSONL_PATH", str(tmp_path / "audit.jsonl"))
    monkeypatch.setenv("SCHEDULER_ENABLED", "false")
    monkeypatch.setenv("SCHEDULER_TRADE_MODES", "REAL,SIMULATION")
    monkeypatch.setenv("LOG_LEVEL", "DEBUG")


class FakeClock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakePrices:
    """
    Scripted price feed. `prices[symbol]` is either a float (constant) or a
    list consumed one value per call. Symbols in `failing` raise.
    """

    def __init__(self):
        self.prices = {}
        self.failing = set()
        self.calls = []

    def set(self, symbol, *values):
        self.prices[symbol] = list(values) if len(values) > 1 else values[0]

    def get_price(self, venue, symbol):
        self.calls.append((venue, symbol))
        if symbol in self.failing:
            raise TransientFetchError(f"{symbol} feed down")
        v = self.prices.get(symbol)
        if v is None:
            return None
        if isinstance(v, list):
            if not v:
                return None
            v = v.pop(0) if len(v) > 1 else v[0]
        return PriceQuote(last=float(v), timestamp=datetime.now(timezone.utc))


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def db(tmp_path):
    return DB(str(tmp_path / "entryguard.db"))


@pytest.fixture
def audit(db, tmp_path):
    return Audit(db, str(tmp_path / "logs" / "audit.jsonl"))


@pytest.fixture
def store(db):
    return AlertStore(db)


@pytest.fixture
def configs(db):
    return ConfigStore(db, TTLCache(0))


@pytest.fixture
def prices():
    return FakePrices()


@pytest.fixture
def queue(db):
    return SqliteJobQueue(db)


@pytest.fixture
def locks():
    return KeyedLocks()


@pytest.fixture
def dispatcher(queue, store, audit):
    return ExecutionDispatcher(queue, store, audit=audit, max_retries=2, sleep=lambda s: None)


@pytest.fixture
def service(store, configs, audit, locks, clock):
    return MonitorService(store, configs, audit=audit, locks=locks, clock=clock, lock_timeout_s=0.5)


@pytest.fixture
def scheduler(store, configs, prices, dispatcher, service, db, audit, queue, locks, clock):
    s = MonitorScheduler(
        store,
        configs,
        prices,
        dispatcher,
        service,
        TickTracker(db),
        audit=audit,
        queue=queue,
        locks=locks,
        workers={"REAL": 2, "SIMULATION": 2},
        clock=clock,
    )
    yield s
    s.shutdown()


def _make_signal(
    symbol="SOLUSDT",
    side=Side.BUY,
    price=100.0,
    source_id=1,
    trade_mode=TradeMode.REAL,
    account_ids=(11,),
    owner_id=7,
):
    return Signal(
        source_id=source_id,
        symbol=symbol,
        side=side,
        trade_mode=trade_mode,
        price=price,
        account_ids=list(account_ids),
        owner_id=owner_id,
    )


@pytest.fixture
def make_signal():
    return _make_signal
