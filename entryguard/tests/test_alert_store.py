from dataclasses import replace
from datetime import timedelta

import pytest

from entryguard.core.errors import AlertNotFoundError, AlreadyTerminalError, ConcurrentUpdateError
from entryguard.persistence.alert_store import clamp_limit
from entryguard.runner.models import AlertState, ExitReason, Side, TradeMode


def test_create_sets_all_extremes_to_signal_price(store, clock, make_signal):
    a = store.create(make_signal(price=101.5, account_ids=(11, 12)), clock())

    assert a.state == AlertState.MONITORING
    assert a.anchor_price == a.signal_price == a.current_price == 101.5
    assert a.price_minimum == a.price_maximum == 101.5
    assert a.target_account_ids == [11, 12]
    assert a.account_id == 11
    assert a.executed_job_ids == []
    assert a.version == 0
    assert store.get(a.id) == a


def test_get_unknown_raises_not_found(store):
    with pytest.raises(AlertNotFoundError):
        store.get(999)


def test_save_tick_bumps_version_and_rejects_stale_writer(store, clock, make_signal):
    a = store.create(make_signal(), clock())

    moved = replace(a, current_price=100.2, price_maximum=100.2, updated_at=clock())
    saved = store.save_tick(moved, expected_version=a.version)
    assert saved.version == 1
    assert saved.current_price == 100.2

    with pytest.raises(ConcurrentUpdateError):
        store.save_tick(replace(a, current_price=99.0), expected_version=0)
    assert store.get(a.id).current_price == 100.2


def test_terminal_save_appends_history_once(store, clock, make_signal):
    a = store.create(make_signal(), clock())
    done = replace(
        a,
        state=AlertState.EXECUTED,
        execution_price=100.7,
        updated_at=clock(),
        ended_at=clock(),
    )
    store.save_tick(done, expected_version=0)

    rows = store.terminal_history(a.id)
    assert len(rows) == 1
    assert rows[0]["state"] == "EXECUTED"
    assert rows[0]["execution_price"] == 100.7

    # terminal rows accept no further ticks
    with pytest.raises(ConcurrentUpdateError):
        store.save_tick(replace(done, current_price=1.0), expected_version=1)


def test_close_open_rejects_terminal_alert(store, clock, make_signal):
    a = store.create(make_signal(), clock())
    closed = store.close_open(
        a.id,
        state=AlertState.CANCELLED,
        exit_reason=ExitReason.MANUAL.value,
        exit_details="user",
        now=clock(),
    )
    assert closed.state == AlertState.CANCELLED
    assert closed.ended_at == clock()

    with pytest.raises(AlreadyTerminalError):
        store.close_open(
            a.id,
            state=AlertState.CANCELLED,
            exit_reason=ExitReason.MANUAL.value,
            exit_details="again",
            now=clock(),
        )
    assert len(store.terminal_history(a.id)) == 1


def test_recorded_jobs_merge_per_account(store, clock, make_signal):
    a = store.create(make_signal(account_ids=(1, 2)), clock())
    store.save_tick(
        replace(a, state=AlertState.EXECUTED, execution_price=100.0, ended_at=clock()), 0
    )

    first = store.record_dispatched_jobs(a.id, {1: "5"})
    assert not first.dispatch_complete
    assert [x.id for x in store.list_executed_incomplete(TradeMode.REAL)] == [a.id]

    # account 1 keeps its first job id
    after = store.record_dispatched_jobs(a.id, {1: "9", 2: "6"})
    assert after.dispatched_jobs == {1: "5", 2: "6"}
    assert after.executed_job_ids == ["5", "6"]
    assert after.dispatch_complete
    assert store.list_executed_incomplete(TradeMode.REAL) == []


def test_recording_jobs_refused_for_non_executed(store, clock, make_signal):
    a = store.create(make_signal(), clock())
    with pytest.raises(AlreadyTerminalError):
        store.record_dispatched_jobs(a.id, {1: "1"})


def test_list_open_is_partitioned_by_trade_mode(store, clock, make_signal):
    r = store.create(make_signal(symbol="BTCUSDT", trade_mode=TradeMode.REAL), clock())
    s = store.create(make_signal(symbol="ETHUSDT", trade_mode=TradeMode.SIMULATION), clock())

    assert [a.id for a in store.list_open(TradeMode.REAL)] == [r.id]
    assert [a.id for a in store.list_open(TradeMode.SIMULATION)] == [s.id]


def test_history_filters_and_pagination(store, clock, make_signal):
    ids = []
    for i, sym in enumerate(["BTCUSDT", "ETHUSDT", "BTCUSDT"]):
        clock.advance(minutes=1)
        a = store.create(make_signal(symbol=sym, source_id=i, owner_id=7 if i < 2 else 8), clock())
        store.close_open(
            a.id,
            state=AlertState.CANCELLED,
            exit_reason=ExitReason.MANUAL.value,
            exit_details=None,
            now=clock(),
        )
        ids.append(a.id)
    store.create(make_signal(symbol="BTCUSDT", source_id=99), clock())  # still open

    btc = store.history(symbol="btcusdt")
    assert [a.id for a in btc] == [ids[2], ids[0]]

    assert [a.id for a in store.history(owner_id=8)] == [ids[2]]
    assert [a.id for a in store.history(limit=1, offset=1)] == [ids[1]]
    assert store.history(state=AlertState.EXECUTED) == []

    t1 = clock.now - timedelta(minutes=1, seconds=30)
    assert [a.id for a in store.history(start=t1)] == [ids[2], ids[1]]


@pytest.mark.parametrize("given, expected", [(None, 100), (0, 1), (-3, 1), (50, 50), (5000, 1000)])
def test_clamp_limit(given, expected):
    assert clamp_limit(given) == expected


def test_find_recent_execution_respects_side_and_window(store, clock, make_signal):
    a = store.create(make_signal(), clock())
    store.save_tick(
        replace(a, state=AlertState.EXECUTED, execution_price=100.0, ended_at=clock()), 0
    )

    since = clock.now - timedelta(minutes=30)
    assert store.find_recent_execution(1, "SOLUSDT", TradeMode.REAL, Side.BUY, since).id == a.id
    assert store.find_recent_execution(1, "SOLUSDT", TradeMode.REAL, Side.SELL, since) is None
    later = clock.now + timedelta(minutes=1)
    assert store.find_recent_execution(1, "SOLUSDT", TradeMode.REAL, Side.BUY, later) is None
