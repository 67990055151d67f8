import json

import httpx
import pytest
from fastapi.testclient import TestClient

from runengine.main import app
from runengine.services.backend_client import BackendClient
from runengine.services.orchestrator import orchestrator_manager


def _fake_backend(handler):
    return BackendClient("http://backend.test", transport=httpx.MockTransport(handler))


@pytest.fixture()
def client():
    with TestClient(app) as c:
        yield c


@pytest.fixture()
def use_backend(client):
    """Swap the running orchestrator's backend for a MockTransport handler."""

    def _swap(handler):
        orchestrator_manager.get().backend = _fake_backend(handler)

    return _swap


def _new_session(client, **body):
    r = client.post("/sessions", json=body)
    assert r.status_code == 200
    return r.json()["session_id"]


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json()["status"] == "ok"


def test_create_and_list_sessions(client):
    sid = _new_session(client, mode="BUILD", autopilot=True)

    state = client.get(f"/sessions/{sid}/state").json()
    assert state["mode"] == "BUILD"
    assert state["autopilot"] is True
    assert state["busy"] is False
    assert state["run"] is None

    listed = client.get("/sessions/history").json()
    assert sid in [s["session_id"] for s in listed]


def test_unknown_session_is_404(client):
    assert client.get("/sessions/nope/state").status_code == 404
    assert client.post("/sessions/nope/messages", json={"content": "hi"}).status_code == 404
    assert client.post("/sessions/nope/abort").status_code == 404
    assert client.get("/runs/run-missing").status_code == 404


def test_mode_and_queue_endpoints(client):
    sid = _new_session(client)

    r = client.put(f"/sessions/{sid}/mode", json={"mode": "BUILD", "autopilot": True})
    assert r.status_code == 200
    assert r.json()["mode"] == "BUILD"

    assert client.delete(f"/sessions/{sid}/queue/queued-missing").status_code == 404
    assert client.post(f"/sessions/{sid}/actions/format_disk").status_code == 404
    assert client.post(f"/sessions/{sid}/abort").json()["aborted"] is False


def test_reset_requires_a_terminal_run(client):
    sid = _new_session(client)
    assert client.post(f"/sessions/{sid}/run/reset").status_code == 409


def test_risk_decision_without_prompt_is_conflict(client):
    sid = _new_session(client)
    r = client.post(f"/sessions/{sid}/risk-decision", json={"requestId": "req-1", "allow": True})
    assert r.status_code == 409


def test_submit_message_starts_a_turn(client, use_backend):
    use_backend(lambda request: httpx.Response(200, json={"content": "hello"}))
    sid = _new_session(client)

    r = client.post(f"/sessions/{sid}/messages", json={"content": "hi"})
    assert r.status_code == 200
    body = r.json()
    assert body["queued"] is False
    assert body["turn_id"]


def test_ws_ping_and_channel_ingest(client):
    sid = _new_session(client)

    with client.websocket_connect(f"/ws/{sid}") as ui:
        ui.send_text("ping")
        assert ui.receive_text() == "pong"

        with client.websocket_connect(f"/ws/{sid}/channel") as chan:
            chan.send_text(json.dumps({"type": "status", "data": {"phase": "testing", "description": "Running jest"}}))
            frame = ui.receive_json()

    assert frame["type"] == "session_state"
    assert frame["state"]["current_phase"] == "testing"
    assert frame["state"]["agent_status"] == "Running jest"

    activity = client.get(f"/sessions/{sid}/activity").json()
    assert [e["type"] for e in activity["events"]] == ["status"]


def test_failed_risk_submission_is_bad_gateway(client, use_backend):
    use_backend(lambda request: httpx.Response(500, json={"message": "bridge offline"}))
    sid = _new_session(client)

    with client.websocket_connect(f"/ws/{sid}") as ui:
        ui.send_text("ping")
        assert ui.receive_text() == "pong"
        with client.websocket_connect(f"/ws/{sid}/channel") as chan:
            chan.send_text(
                json.dumps(
                    {
                        "type": "status",
                        "data": {"type": "risk_prompt", "requestId": "req-7", "description": "Force push"},
                    }
                )
            )
            ui.receive_json()

    r = client.post(f"/sessions/{sid}/risk-decision", json={"requestId": "req-7", "allow": True})
    assert r.status_code == 502

    state = client.get(f"/sessions/{sid}/state").json()
    assert state["risk_prompt"]["request_id"] == "req-7"
    assert state["notices"][-1]["level"] == "error"


def test_late_subscriber_receives_current_state(client):
    sid = _new_session(client)
    client.put(f"/sessions/{sid}/mode", json={"mode": "BUILD"})

    with client.websocket_connect(f"/ws/{sid}") as ui:
        frame = ui.receive_json()

    assert frame["type"] == "session_state"
    assert frame["state"]["mode"] == "BUILD"
