import pytest

from entryguard.core.errors import InvalidConfigError
from entryguard.core.ttl_cache import TTLCache
from entryguard.persistence.config_store import ConfigStore
from entryguard.policy.monitor_config import MonitorConfig, parse_config
from entryguard.runner.models import Side


def test_defaults_are_valid_and_mirrored():
    cfg = parse_config({})
    buy = cfg.thresholds_for(Side.BUY)
    sell = cfg.thresholds_for(Side.SELL)

    assert buy.sign == 1 and sell.sign == -1
    assert buy.tolerance_pct == 0.3 and sell.tolerance_pct == 0.3
    assert buy.trigger_pct == 0.75 and sell.trigger_pct == 0.5
    assert buy.max_adverse_pct == 6.0 and sell.max_adverse_pct == 6.0
    assert cfg.check_interval_sec == 30


@pytest.mark.parametrize(
    "payload, field",
    [
        ({"lateral_tolerance_pct": -0.1}, "lateral_tolerance_pct"),
        ({"rise_cycles_min": 0}, "rise_cycles_min"),
        ({"sell_lateral_cycles_min": 0}, "sell_lateral_cycles_min"),
        ({"rise_trigger_pct": 0.2}, "rise_trigger_pct"),
        ({"sell_fall_trigger_pct": 0.3}, "sell_fall_trigger_pct"),
        ({"max_fall_pct": 0.25}, "max_fall_pct"),
        ({"check_interval_sec": 0}, "check_interval_sec"),
        ({"cooldown_after_execution_min": -5}, "cooldown_after_execution_min"),
        ({"max_monitoring_time_min": 0}, "max_monitoring_time_min"),
    ],
)
def test_invalid_values_rejected_with_field_named(payload, field):
    with pytest.raises(InvalidConfigError) as ei:
        parse_config(payload)
    assert ei.value.field == field
    assert ei.value.to_dict()["field"] == field


def test_type_errors_surface_as_invalid_config():
    with pytest.raises(InvalidConfigError) as ei:
        parse_config({"lateral_cycles_min": "many"})
    assert ei.value.field == "lateral_cycles_min"


def test_zero_cooldown_is_allowed():
    cfg = parse_config({"cooldown_after_execution_min": 0})
    assert cfg.thresholds_for(Side.BUY).cooldown_after_execution_min == 0


def test_store_falls_back_owner_to_global_to_defaults(configs):
    cfg, source = configs.resolve(42)
    assert source == "default"
    assert cfg == MonitorConfig()

    configs.put({"rise_trigger_pct": 1.0})
    cfg, source = configs.resolve(42)
    assert source == "global"
    assert cfg.rise_trigger_pct == 1.0

    configs.put({"rise_trigger_pct": 2.0}, owner_id=42)
    cfg, source = configs.resolve(42)
    assert source == "owner:42"
    assert cfg.rise_trigger_pct == 2.0

    # other owners keep the global set
    assert configs.get(43).rise_trigger_pct == 1.0


def test_invalid_write_leaves_stored_config_untouched(configs):
    configs.put({"lateral_cycles_min": 6})
    with pytest.raises(InvalidConfigError):
        configs.put({"lateral_cycles_min": 0})
    assert configs.get().lateral_cycles_min == 6


def test_cache_is_invalidated_on_write(db):
    now = [0.0]
    store = ConfigStore(db, TTLCache(60, clock=lambda: now[0]))

    assert store.get(5).lateral_cycles_min == 4
    store.put({"lateral_cycles_min": 8})
    # global write invalidates every owner's cached fallback
    assert store.get(5).lateral_cycles_min == 8

    store.put({"lateral_cycles_min": 9}, owner_id=5)
    assert store.get(5).lateral_cycles_min == 9

    assert store.delete_override(5) is True
    assert store.get(5).lateral_cycles_min == 8


def test_cache_serves_stale_until_ttl(db):
    now = [0.0]
    store = ConfigStore(db, TTLCache(30, clock=lambda: now[0]))
    assert store.get().enabled is True

    # write behind the store's back
    other = ConfigStore(db, TTLCache(0))
    other.put({"enabled": False})

    assert store.get().enabled is True
    now[0] = 31.0
    assert store.get().enabled is False
