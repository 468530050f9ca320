import time

import pytest
from fastapi.testclient import TestClient

from core.config import ConfigManager
from main import create_app
from models.host import HostCredential, HostRecord
from services.transport import TransportRegistry

from fakes import FakeTransport


def wait_until(predicate, timeout=3.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return
        time.sleep(0.02)
    assert predicate(), "condition not met in time"


@pytest.fixture
def env(tmp_path):
    transport = FakeTransport()
    config = ConfigManager.from_dict({
        "app": {"data_dir": str(tmp_path / "data"), "debug": False},
        "scheduler": {"enabled": False},
        "logging": {"file": {"enabled": False}},
    })
    app = create_app(config=config, transports=TransportRegistry([transport]))
    app.state.inventory.register(HostRecord(
        host_id="web-1",
        credential=HostCredential(host_id="web-1", address="10.0.0.1", password="pw"),
    ))
    with TestClient(app) as client:
        yield client, transport


def _finished(client, task_id):
    body = client.get(f"/api/v1/tasks/{task_id}").json()
    return body["task"]["status"] in ("completed", "failed", "cancelled")


def test_submit_task_and_stream_output(env):
    client, _ = env
    resp = client.post("/api/v1/tasks", json={"payload": {"command": "uptime"}, "host_ids": ["web-1"]})
    assert resp.status_code == 200
    task_id = resp.json()["task_id"]

    wait_until(lambda: _finished(client, task_id))
    body = client.get(f"/api/v1/tasks/{task_id}").json()
    assert body["task"]["status"] == "completed"
    assert body["stats"]["success"] == 1
    assert body["host_runs"][0]["output_tail"] == "web-1 ok\n"

    with client.websocket_connect(f"/api/v1/tasks/{task_id}/stream") as ws:
        first = ws.receive_json()
        assert first["type"] == "output"
        assert first["data"] == "web-1 ok\n"
        last = ws.receive_json()
        assert last == {"type": "end", "status": "completed", "last_seq": {"web-1": 1}}

    listed = client.get("/api/v1/tasks").json()
    assert [t["task_id"] for t in listed["tasks"]] == [task_id]


def test_task_errors(env):
    client, _ = env
    resp = client.post("/api/v1/tasks", json={"payload": {"command": "uptime"}, "host_ids": []})
    assert resp.status_code == 422

    resp = client.get("/api/v1/tasks/task-missing")
    assert resp.status_code == 404
    assert resp.json()["kind"] == "TaskNotFound"

    resp = client.post("/api/v1/tasks/task-missing/cancel")
    assert resp.status_code == 404


def test_cancel_and_retry(env):
    client, transport = env
    transport.script("web-1", hang=True)
    task_id = client.post("/api/v1/tasks", json={
        "payload": {"command": "sleep 600"}, "host_ids": ["web-1"],
    }).json()["task_id"]
    wait_until(lambda: transport.running == 1)

    resp = client.post(f"/api/v1/tasks/{task_id}/cancel")
    assert resp.status_code == 200
    wait_until(lambda: _finished(client, task_id))
    assert client.get(f"/api/v1/tasks/{task_id}").json()["task"]["status"] == "cancelled"
    assert client.post(f"/api/v1/tasks/{task_id}/cancel").status_code == 409

    transport.script("web-1", stdout=b"done\n")
    retried = client.post(f"/api/v1/tasks/{task_id}/retry").json()
    assert retried["retry_of"] == task_id
    wait_until(lambda: _finished(client, retried["task_id"]))


def test_terminal_session_over_websocket(env):
    client, transport = env
    resp = client.post("/api/v1/terminal/sessions", json={"host_id": "web-1", "cols": 100, "rows": 30})
    session_id = resp.json()["session_id"]
    assert client.get("/api/v1/terminal/sessions").json()["stats"]["open"] == 1

    with client.websocket_connect(f"/api/v1/terminal/sessions/{session_id}/ws") as ws:
        ws.send_text('{"type": "resize", "cols": 120, "rows": 40}')
        ws.send_text("ls\n")
        pty = transport.ptys[0]
        wait_until(lambda: pty.written == [b"ls\n"])
        assert pty.resizes == [(120, 40)]
        pty.feed("你好".encode("utf-8"))
        assert ws.receive_text() == "你好"

    wait_until(lambda: client.get("/api/v1/terminal/sessions").json()["sessions"] == [])
    assert pty.closed
    assert client.delete(f"/api/v1/terminal/sessions/{session_id}").status_code == 404


def test_terminal_open_unknown_host(env):
    client, _ = env
    resp = client.post("/api/v1/terminal/sessions", json={"host_id": "ghost"})
    assert resp.status_code == 404
    assert resp.json()["kind"] == "CredentialNotFound"


def test_alert_rules_and_samples(env):
    client, _ = env
    rule = client.post("/api/v1/alerts/rules", json={
        "rule_id": "cpu-high", "metric": "cpu", "operator": "gt", "threshold": 90,
        "host_ids": ["web-1"],
    }).json()
    assert rule["sustained_duration"] == 0

    resp = client.post("/api/v1/alerts/samples", json=[
        {"host_id": "web-1", "metric": "cpu", "value": 95, "timestamp": 100},
    ])
    events = resp.json()["events"]
    assert [e["kind"] for e in events] == ["firing"]
    alert_id = events[0]["alert"]["alert_id"]

    active = client.get("/api/v1/alerts", params={"active": True}).json()
    assert [a["alert_id"] for a in active["alerts"]] == [alert_id]

    acked = client.post(f"/api/v1/alerts/{alert_id}/acknowledge", json={"user": "bob"}).json()
    assert acked["state"] == "acknowledged"
    assert acked["acknowledged_by"] == "bob"
    assert client.post(f"/api/v1/alerts/{alert_id}/acknowledge", json={"user": "bob"}).status_code == 409

    client.post("/api/v1/alerts/rules/cpu-high/disable")
    assert client.get(f"/api/v1/alerts/{alert_id}").json()["state"] == "resolved"
    assert client.delete("/api/v1/alerts/rules/cpu-high").json()["deleted"] is True
    assert client.get("/api/v1/alerts/rules").json()["total"] == 0


def test_schedules(env):
    client, _ = env
    template = {"payload": {"command": "df -h"}, "host_ids": ["web-1"]}
    resp = client.post("/api/v1/schedules", json={"cron": "not a cron", "template": template})
    assert resp.status_code == 422
    assert resp.json()["kind"] == "InvalidCronExpression"

    created = client.post("/api/v1/schedules", json={
        "name": "磁盘巡检", "cron": "0 3 * * *", "template": template,
    }).json()
    schedule_id = created["schedule_id"]
    assert created["next_fire_at"] is not None

    run = client.post(f"/api/v1/schedules/{schedule_id}/run").json()
    wait_until(lambda: _finished(client, run["task_id"]))
    task = client.get(f"/api/v1/tasks/{run['task_id']}").json()["task"]
    assert task["scheduled_task_id"] == schedule_id

    disabled = client.post(f"/api/v1/schedules/{schedule_id}/disable").json()
    assert disabled["next_fire_at"] is None
    assert client.delete(f"/api/v1/schedules/{schedule_id}").status_code == 200
    assert client.get("/api/v1/schedules").json()["total"] == 0


def test_system_status(env):
    client, _ = env
    status = client.get("/api/v1/system/status").json()
    assert status["name"] == "OpsPanel"
    assert status["active_tasks"] == 0
    assert "hosts" in client.get("/api/v1/system/pool").json()
