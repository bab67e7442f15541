import pytest

from entryguard.core.config import Settings


def test_trade_modes_parse_csv_and_json():
    assert Settings(SCHEDULER_TRADE_MODES="real, simulation").SCHEDULER_TRADE_MODES == [
        "REAL",
        "SIMULATION",
    ]
    assert Settings(SCHEDULER_TRADE_MODES='["REAL"]').SCHEDULER_TRADE_MODES == ["REAL"]


def test_unknown_trade_mode_is_fatal():
    s = Settings(SCHEDULER_TRADE_MODES="REAL,PAPER")
    with pytest.raises(ValueError) as ei:
        s.validate_runtime()
    assert "PAPER" in str(ei.value)


def test_zero_workers_is_fatal():
    s = Settings(MONITOR_WORKERS_REAL=0)
    with pytest.raises(ValueError):
        s.validate_runtime()


def test_price_cache_longer_than_cadence_is_warning_not_error():
    s = Settings(PRICE_CACHE_TTL_SECONDS=45)
    warnings = s.validate_runtime(check_interval_sec=30)
    assert any("PRICE_CACHE_TTL_SECONDS" in w for w in warnings)


def test_defaults_are_clean():
    s = Settings()
    assert s.validate_runtime(check_interval_sec=30) == []
    assert s.workers_for("REAL") == s.MONITOR_WORKERS_REAL
    assert s.workers_for("SIMULATION") == s.MONITOR_WORKERS_SIMULATION
