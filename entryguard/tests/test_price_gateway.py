import pytest
import requests

from entryguard.core.errors import TransientFetchError
from entryguard.core.ttl_cache import TTLCache
from entryguard.exchange.price_gateway import BinancePriceGateway, CachedPriceGateway


class _FakeResponse:
    def __init__(self, status_code=200, payload=None, headers=None, text=""):
        self.status_code = status_code
        self._payload = payload
        self.headers = headers or {}
        self.text = text

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


class _FakeSession:
    """Replays scripted responses; an Exception instance in the script is raised."""

    def __init__(self, *script):
        self.script = list(script)
        self.calls = []

    def get(self, url, params=None, timeout=None):
        self.calls.append((url, params, timeout))
        item = self.script.pop(0) if len(self.script) > 1 else self.script[0]
        if isinstance(item, Exception):
            raise item
        return item


class _FakeTime:
    def __init__(self):
        self.t = 0.0

    def __call__(self):
        return self.t


def _gateway(session, max_retries=2):
    sleeps = []
    gw = BinancePriceGateway(
        base_url="https://example.test/",
        max_retries=max_retries,
        session=session,
        sleep=sleeps.append,
    )
    return gw, sleeps


def test_get_price_reads_public_ticker():
    session = _FakeSession(_FakeResponse(payload={"symbol": "SOLUSDT", "price": "101.25"}))
    gw, sleeps = _gateway(session)

    q = gw.get_price("binance", "solusdt")
    assert q.last == pytest.approx(101.25)
    assert sleeps == []

    url, params, timeout = session.calls[0]
    assert url == "https://example.test/api/v3/ticker/price"
    assert params == {"symbol": "SOLUSDT"}
    assert timeout == 5.0


def test_server_errors_are_retried_then_raise():
    session = _FakeSession(_FakeResponse(status_code=503))
    gw, sleeps = _gateway(session, max_retries=2)

    with pytest.raises(TransientFetchError) as ei:
        gw.get_price("BINANCE", "SOLUSDT")

    assert len(session.calls) == 3
    assert sleeps == [0.2, 0.4, 0.8]
    assert ei.value.code == "TRANSIENT_FETCH_ERROR"


def test_recovers_after_timeout():
    session = _FakeSession(
        requests.Timeout("read timed out"),
        _FakeResponse(payload={"price": "99.5"}),
    )
    gw, _ = _gateway(session)
    assert gw.get_price("BINANCE", "SOLUSDT").last == pytest.approx(99.5)
    assert len(session.calls) == 2


def test_rate_limit_honours_retry_after():
    session = _FakeSession(
        _FakeResponse(status_code=429, headers={"Retry-After": "1"}),
        _FakeResponse(payload={"price": "100"}),
    )
    gw, sleeps = _gateway(session)
    gw.get_price("BINANCE", "SOLUSDT")
    assert 1.0 <= sleeps[0] <= 1.1


def test_invalid_symbol_means_no_data():
    session = _FakeSession(
        _FakeResponse(status_code=400, payload={"code": -1121, "msg": "Invalid symbol."})
    )
    gw, _ = _gateway(session)
    assert gw.get_price("BINANCE", "NOPEUSDT") is None


@pytest.mark.parametrize(
    "resp",
    [
        _FakeResponse(status_code=400, payload={"code": -1100, "msg": "Illegal characters"}),
        _FakeResponse(status_code=403),
        _FakeResponse(payload={"symbol": "SOLUSDT"}),
        _FakeResponse(payload={"price": "abc"}),
    ],
)
def test_rejected_or_malformed_reads_are_transient(resp):
    gw, _ = _gateway(_FakeSession(resp))
    with pytest.raises(TransientFetchError):
        gw.get_price("BINANCE", "SOLUSDT")


def test_non_positive_price_means_no_data():
    gw, _ = _gateway(_FakeSession(_FakeResponse(payload={"price": "0"})))
    assert gw.get_price("BINANCE", "SOLUSDT") is None


def test_unknown_venue_is_rejected_without_a_request():
    session = _FakeSession(_FakeResponse(payload={"price": "1"}))
    gw, _ = _gateway(session)
    with pytest.raises(TransientFetchError):
        gw.get_price("KRAKEN", "SOLUSDT")
    assert session.calls == []


def test_cache_serves_repeat_reads_until_ttl():
    session = _FakeSession(
        _FakeResponse(payload={"price": "100"}),
        _FakeResponse(payload={"price": "101"}),
    )
    inner, _ = _gateway(session)
    t = _FakeTime()
    gw = CachedPriceGateway(inner, TTLCache(5, clock=t))

    assert gw.get_price("BINANCE", "SOLUSDT").last == 100.0
    t.t = 4.9
    assert gw.get_price("binance", "solusdt").last == 100.0
    assert len(session.calls) == 1

    t.t = 5.0
    assert gw.get_price("BINANCE", "SOLUSDT").last == 101.0
    assert len(session.calls) == 2


def test_cache_does_not_keep_failures_or_missing_data():
    session = _FakeSession(
        _FakeResponse(status_code=400, payload={"code": -1121}),
        _FakeResponse(status_code=500),
        _FakeResponse(status_code=500),
        _FakeResponse(payload={"price": "100"}),
    )
    inner, _ = _gateway(session, max_retries=1)
    gw = CachedPriceGateway(inner, TTLCache(60, clock=_FakeTime()))

    assert gw.get_price("BINANCE", "SOLUSDT") is None
    with pytest.raises(TransientFetchError):
        gw.get_price("BINANCE", "SOLUSDT")
    assert gw.get_price("BINANCE", "SOLUSDT").last == 100.0
    assert len(session.calls) == 4


def test_cache_invalidate_forces_refetch():
    session = _FakeSession(_FakeResponse(payload={"price": "100"}))
    inner, _ = _gateway(session)
    gw = CachedPriceGateway(inner, TTLCache(60, clock=_FakeTime()))

    gw.get_price("BINANCE", "SOLUSDT")
    gw.invalidate("BINANCE", "SOLUSDT")
    gw.get_price("BINANCE", "SOLUSDT")
    assert len(session.calls) == 2
