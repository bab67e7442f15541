import pytest
from fastapi.testclient import TestClient

import entryguard.main as main
from entryguard.core.config import Settings


@pytest.fixture
def api(monkeypatch, tmp_path, prices, clock):
    cfg = Settings(
        DB_PATH=str(tmp_path / "api.db"),
        AUDIT_JSONL_PATH=str(tmp_path / "api_audit.jsonl"),
        CONFIG_CACHE_TTL_SECONDS=0,
        QUEUE_RETRY_BACKOFF_SECONDS=0,
        SCHEDULER_ENABLED=False,
    )
    svc = main.build_services(cfg, prices=prices, clock=clock)
    monkeypatch.setattr(main, "_services", svc)

    # no context manager: startup hooks (and the background loops) stay off
    client = TestClient(main.app)
    yield client, svc
    svc.scheduler.shutdown()


def _signal(**kw):
    body = {
        "source_id": 1,
        "symbol": "SOLUSDT",
        "side": "BUY",
        "trade_mode": "REAL",
        "price": 100.0,
        "account_ids": [11, 12],
        "owner_id": 7,
    }
    body.update(kw)
    return body


def test_health(api):
    client, _ = api
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json()["status"] == "ok"
    assert r.json()["open_alerts"] == 0


def test_create_signal_opens_alert(api):
    client, _ = api
    r = client.post("/signals", json=_signal())
    assert r.status_code == 201
    body = r.json()
    assert body["state"] == "MONITORING"
    assert body["anchor_price"] == 100.0
    assert body["target_account_ids"] == [11, 12]


def test_header_identity_must_match_body_owner(api):
    client, _ = api
    r = client.post("/signals", json=_signal(owner_id=7), headers={"X-Owner-Id": "8"})
    assert r.status_code == 403
    assert r.json()["code"] == "FORBIDDEN"

    r = client.post("/signals", json=_signal(owner_id=None), headers={"X-Owner-Id": "8"})
    assert r.status_code == 201
    assert r.json()["owner_id"] == 8


def test_invalid_signal_is_422(api):
    client, _ = api
    r = client.post("/signals", json=_signal(account_ids=[]))
    assert r.status_code == 422
    assert r.json()["code"] == "INVALID_SIGNAL"

    # schema-level rejection from FastAPI itself
    assert client.post("/signals", json=_signal(side="HOLD")).status_code == 422


def test_unknown_and_foreign_alerts(api):
    client, _ = api
    assert client.get("/alerts/999").status_code == 404
    assert client.get("/alerts/999").json()["code"] == "NOT_FOUND"

    alert_id = client.post("/signals", json=_signal()).json()["id"]
    assert client.get(f"/alerts/{alert_id}", headers={"X-Owner-Id": "8"}).status_code == 403
    assert client.get(f"/alerts/{alert_id}", headers={"X-Owner-Id": "7"}).status_code == 200


def test_cancel_then_cancel_again(api):
    client, _ = api
    alert_id = client.post("/signals", json=_signal()).json()["id"]

    r = client.post(f"/alerts/{alert_id}/cancel", json={"reason": "not today"})
    assert r.status_code == 200
    assert r.json()["state"] == "CANCELLED"
    assert r.json()["exit_reason"] == "MANUAL"
    assert r.json()["exit_details"] == "not today"

    again = client.post(f"/alerts/{alert_id}/cancel")
    assert again.status_code == 409
    assert again.json()["code"] == "ALREADY_TERMINAL"

    detail = client.get(f"/alerts/{alert_id}").json()
    assert len(detail["history"]) == 1
    assert detail["jobs"] == []


def test_manual_ticks_drive_alert_to_execution(api, prices, clock):
    client, _ = api
    alert_id = client.post("/signals", json=_signal()).json()["id"]
    prices.set("SOLUSDT", 100.1, 99.9, 100.2, 99.8, 100.6, 100.7)

    for _ in range(6):
        clock.advance(seconds=30)
        r = client.post("/scheduler/REAL/tick")
        assert r.status_code == 200
    assert r.json()["executed"] == 1

    detail = client.get(f"/alerts/{alert_id}").json()
    assert detail["state"] == "EXECUTED"
    assert detail["execution_price"] == 100.7
    assert len(detail["jobs"]) == 2
    assert sorted(detail["executed_job_ids"]) == sorted(detail["jobs"])

    # same side inside the cooldown window
    blocked = client.post("/signals", json=_signal())
    assert blocked.status_code == 409
    assert blocked.json()["code"] == "COOLDOWN_ACTIVE"

    summary = client.get("/summary").json()
    assert summary["executed_30d"] == 1
    assert summary["best_result"]["alert_id"] == alert_id

    assert client.post("/metrics/recalculate", json={"alert_ids": [alert_id]}).json() == {
        "processed": 1,
        "errors": 0,
    }

    status = client.get("/scheduler/status").json()
    assert status["modes"]["REAL"]["last_tick"]["executed"] == 1
    assert status["jobs"]


def test_unknown_tick_mode_is_rejected(api):
    client, _ = api
    assert client.post("/scheduler/PAPER/tick").status_code == 422


def test_global_config_roundtrip_and_validation(api):
    client, _ = api
    assert client.get("/config").json()["source"] == "default"

    bad = client.put("/config", json={"rise_trigger_pct": 0.1})
    assert bad.status_code == 422
    assert bad.json()["code"] == "INVALID_CONFIG"
    assert bad.json()["field"] == "rise_trigger_pct"

    ok = client.put("/config", json={"rise_trigger_pct": 1.0})
    assert ok.status_code == 200
    got = client.get("/config").json()
    assert got["source"] == "global"
    assert got["config"]["rise_trigger_pct"] == 1.0

    # owners cannot touch the global set
    assert client.put("/config", json={}, headers={"X-Owner-Id": "7"}).status_code == 403


def test_owner_config_override(api):
    client, _ = api
    r = client.put("/config/owners/7", json={"enabled": False}, headers={"X-Owner-Id": "7"})
    assert r.status_code == 200

    got = client.get("/config/owners/7").json()
    assert got["source"] == "owner:7"
    assert got["config"]["enabled"] is False
    assert client.get("/config/owners/8").json()["source"] == "default"

    assert client.get("/config/owners/7", headers={"X-Owner-Id": "8"}).status_code == 403

    disabled = client.post("/signals", json=_signal(owner_id=7))
    assert disabled.status_code == 409
    assert disabled.json()["code"] == "MONITOR_DISABLED"


def test_history_clamps_limit_and_scopes_owner(api):
    client, _ = api
    a = client.post("/signals", json=_signal(owner_id=7, source_id=1)).json()["id"]
    b = client.post("/signals", json=_signal(owner_id=8, source_id=2)).json()["id"]
    client.post(f"/alerts/{a}/cancel")
    client.post(f"/alerts/{b}/cancel")

    r = client.get("/history", params={"limit": 5000})
    assert r.json()["limit"] == 1000
    assert {x["id"] for x in r.json()["items"]} == {a, b}

    mine = client.get("/history", headers={"X-Owner-Id": "7"}).json()["items"]
    assert [x["id"] for x in mine] == [a]

    assert client.get("/history", params={"state": "EXECUTED"}).json()["items"] == []


def test_events_tail(api):
    client, _ = api
    alert_id = client.post("/signals", json=_signal()).json()["id"]
    events = client.get("/logs/events/tail", params={"alert_id": alert_id}).json()["events"]
    assert events
    assert all(e["alert_id"] == alert_id for e in events)
