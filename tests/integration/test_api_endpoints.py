"""Integration tests for the HTTP and WebSocket boundary."""

import logging
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from agent_bridge.errors import BackendUnavailable, LaunchFailure
from agent_bridge.server import RequestTimingMiddleware, create_app


@pytest.fixture
def mock_registry():
    """Create a mock SessionRegistry for error-mapping tests."""
    mock = MagicMock()
    mock.list_sessions.return_value = []
    return mock


@pytest.fixture
def mock_client(mock_registry):
    """TestClient backed by the mock registry."""
    return TestClient(create_app(registry=mock_registry, config={}))


def _create(client, **body):
    body.setdefault("command", "claude")
    response = client.post("/sessions", json=body)
    assert response.status_code == 200, response.text
    return response.json()


class TestHealthEndpoints:
    """Tests for health check endpoints."""

    def test_health_endpoint(self, test_client):
        """GET /health returns healthy status."""
        response = test_client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_no_registry_returns_503(self):
        """Session routes fail cleanly when no registry is wired in."""
        client = TestClient(create_app(registry=None))
        assert client.get("/sessions").status_code == 503


class TestSessionEndpoints:
    """Tests for /sessions routes."""

    def test_create_session(self, test_client):
        """POST /sessions returns the camelCase summary."""
        data = _create(test_client, arguments=["--verbose"], workingDirectory="/tmp/proj")
        assert data["command"] == "claude"
        assert data["arguments"] == ["--verbose"]
        assert data["state"] == "running"
        assert data["exitCode"] is None
        assert data["isExternal"] is False
        assert data["workingDirectory"] == "/tmp/proj"
        assert data["backend"] == "ptyDirect"
        assert len(data["id"]) == 8

    def test_create_with_tmux_backend(self, test_client):
        data = _create(test_client, backend="tmux")
        assert data["backend"] == "multiplexerManaged"

    def test_create_invalid_backend(self, test_client):
        response = test_client.post("/sessions", json={"command": "claude", "backend": "screen"})
        assert response.status_code == 400

    def test_create_missing_command(self, test_client):
        response = test_client.post("/sessions", json={"arguments": []})
        assert response.status_code == 422

    def test_launch_failure_is_400(self, mock_client, mock_registry):
        mock_registry.create_session.side_effect = LaunchFailure("nope", "command not found")
        response = mock_client.post("/sessions", json={"command": "nope"})
        assert response.status_code == 400
        assert "command not found" in response.json()["detail"]

    def test_backend_unavailable_is_503(self, mock_client, mock_registry):
        mock_registry.create_session.side_effect = BackendUnavailable("tmux is not installed")
        response = mock_client.post("/sessions", json={"command": "claude", "backend": "tmux"})
        assert response.status_code == 503

    def test_list_newest_first(self, test_client):
        first = _create(test_client)
        second = _create(test_client)
        sessions = test_client.get("/sessions").json()["sessions"]
        assert [s["id"] for s in sessions] == [second["id"], first["id"]]

    def test_get_session(self, test_client):
        created = _create(test_client)
        response = test_client.get(f"/sessions/{created['id']}")
        assert response.status_code == 200
        assert response.json()["id"] == created["id"]

    def test_get_unknown_session(self, test_client):
        assert test_client.get("/sessions/missing1").status_code == 404

    def test_history(self, test_client, fake_backends):
        session_id = _create(test_client)["id"]
        for i in range(4):
            fake_backends[session_id].emit(f"line {i}\n".encode())

        response = test_client.get(f"/sessions/{session_id}/history", params={"limit": 2, "offset": 1})
        assert response.status_code == 200
        chunks = response.json()["chunks"]
        assert [c["content"] for c in chunks] == ["line 1\n", "line 2\n"]
        assert set(chunks[0]) == {"timestamp", "content", "channel"}

    def test_history_unknown_session_is_empty(self, test_client):
        response = test_client.get("/sessions/missing1/history")
        assert response.status_code == 200
        assert response.json()["chunks"] == []

    def test_history_offset_past_end(self, test_client):
        session_id = _create(test_client)["id"]
        response = test_client.get(f"/sessions/{session_id}/history", params={"offset": 100})
        assert response.json()["chunks"] == []

    def test_send_input(self, test_client, fake_backends):
        session_id = _create(test_client)["id"]
        response = test_client.post(f"/sessions/{session_id}/input", json={"input": "y"})
        assert response.status_code == 200
        assert fake_backends[session_id].inputs == ["y"]

    def test_send_input_unknown_session(self, test_client):
        response = test_client.post("/sessions/missing1/input", json={"input": "y"})
        assert response.status_code == 404

    def test_input_clears_waiting_state(self, test_client, fake_backends):
        session_id = _create(test_client)["id"]
        fake_backends[session_id].emit(b"Proceed? [y/N] ")
        data = test_client.get(f"/sessions/{session_id}").json()
        assert data["state"] == "waitingForInput"
        assert data["promptType"] == "yesNo"

        test_client.post(f"/sessions/{session_id}/input", json={"input": "y"})
        assert test_client.get(f"/sessions/{session_id}").json()["state"] == "running"

    def test_resize_and_interrupt(self, test_client, fake_backends):
        session_id = _create(test_client)["id"]
        assert test_client.post(
            f"/sessions/{session_id}/resize", json={"cols": 100, "rows": 30}
        ).status_code == 200
        assert test_client.post(f"/sessions/{session_id}/interrupt").status_code == 200
        assert fake_backends[session_id].resizes == [(100, 30)]
        assert fake_backends[session_id].interrupts == 1

    def test_resize_rejects_zero(self, test_client):
        session_id = _create(test_client)["id"]
        response = test_client.post(f"/sessions/{session_id}/resize", json={"cols": 0, "rows": 30})
        assert response.status_code == 422

    def test_delete_session(self, test_client):
        session_id = _create(test_client)["id"]
        assert test_client.delete(f"/sessions/{session_id}").status_code == 200
        assert test_client.get(f"/sessions/{session_id}").status_code == 404

    def test_delete_is_idempotent(self, test_client):
        assert test_client.delete("/sessions/missing1").status_code == 200
        assert test_client.delete("/sessions/missing1").status_code == 200


class TestWebSocket:
    """Tests for the /ws event socket."""

    def test_subscribe_then_receive_output(self, test_client, fake_backends):
        session_id = _create(test_client)["id"]
        with test_client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "subscribe", "sessionId": session_id})
            assert ws.receive_json() == {"type": "subscribed", "sessionId": session_id}

            fake_backends[session_id].emit(b"hello\n")
            message = ws.receive_json()
            assert message["type"] == "output"
            assert message["sessionId"] == session_id
            assert message["chunk"]["content"] == "hello\n"
            assert message["chunk"]["channel"] == "stdout"

    def test_state_events(self, test_client, fake_backends):
        session_id = _create(test_client)["id"]
        with test_client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "subscribe", "sessionId": session_id})
            ws.receive_json()

            fake_backends[session_id].finish(0)
            message = ws.receive_json()
            assert message == {"type": "state", "sessionId": session_id, "state": "exited", "exitCode": 0}

    def test_subscribe_unknown_session(self, test_client):
        with test_client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "subscribe", "sessionId": "missing1"})
            message = ws.receive_json()
            assert message["type"] == "error"
            assert message["sessionId"] == "missing1"

    def test_input_over_socket(self, test_client, fake_backends, wait_for):
        session_id = _create(test_client)["id"]
        with test_client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "input", "sessionId": session_id, "input": "y"})
            ws.send_json({"type": "ping"})
            assert ws.receive_json() == {"type": "pong"}
        assert wait_for(lambda: fake_backends[session_id].inputs == ["y"])

    def test_unsubscribe(self, test_client, registry):
        session_id = _create(test_client)["id"]
        with test_client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "subscribe", "sessionId": session_id})
            ws.receive_json()
            ws.send_json({"type": "unsubscribe", "sessionId": session_id})
            assert ws.receive_json() == {"type": "unsubscribed", "sessionId": session_id}
        assert registry._subscriptions.get(session_id) == []

    def test_disconnect_drops_only_own_subscriptions(self, test_client, registry, wait_for):
        session_id = _create(test_client)["id"]
        other = registry.subscribe_output(session_id, lambda event: None)

        with test_client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "subscribe", "sessionId": session_id})
            ws.receive_json()
            assert len(registry._subscriptions[session_id]) == 3

        assert wait_for(lambda: registry._subscriptions[session_id] == [other])

    def test_invalid_json(self, test_client):
        with test_client.websocket_connect("/ws") as ws:
            ws.send_text("not json")
            assert ws.receive_json()["type"] == "error"


class TestRequestTiming:
    """Tests for slow-request logging."""

    def test_slow_request_logged(self, registry, caplog):
        config = {"timeouts": {"server": {"slow_request_threshold_seconds": 0.0}}}
        client = TestClient(create_app(registry=registry, config=config))
        with caplog.at_level(logging.WARNING, logger="agent_bridge.server"):
            client.get("/health")
        assert any("Slow request: GET /health" in r.getMessage() for r in caplog.records)

    def test_delete_gets_teardown_allowance(self, registry, caplog):
        config = {"timeouts": {"server": {"slow_request_threshold_seconds": 0.0}}}
        client = TestClient(create_app(registry=registry, config=config))
        session_id = _create(client)["id"]
        with caplog.at_level(logging.WARNING, logger="agent_bridge.server"):
            client.delete(f"/sessions/{session_id}")
        assert not any("Slow request" in r.getMessage() for r in caplog.records)

    def test_teardown_allowance_follows_backend_timeouts(self):
        middleware = RequestTimingMiddleware(
            None, {"pty": {"terminate_wait_seconds": 4.0, "join_timeout_seconds": 3.0}}
        )
        assert middleware.teardown_threshold == 7.0
