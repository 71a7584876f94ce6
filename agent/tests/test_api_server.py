from typing import Any, Dict, List

import pytest
from fastapi.testclient import TestClient

from application.api.api_server import create_app
from domain.models.errors import GenerationFailed
from domain.orchestration.core.main_agent import AgentConfig
from domain.orchestration.core.runtime import AssistantRuntime
from infrastructure.config.settings import AssistantSettings

from conftest import ScriptedProvider, text, tool_call


def receive_until(websocket, event_type: str) -> List[Dict[str, Any]]:
    """Collect events up to and including the first one of event_type"""
    events = []
    while True:
        event = websocket.receive_json()
        events.append(event)
        if event["type"] == event_type:
            return events


def make_runtime(*script) -> AssistantRuntime:
    config = AgentConfig(max_iterations=4, max_retries=1, base_retry_delay=0.0, tool_timeout=1.0)
    return AssistantRuntime(AssistantSettings(agent=config), providers=[ScriptedProvider(list(script))])


@pytest.fixture
def client():
    runtime = make_runtime(
        text("Hello", " there"),
        tool_call("calculator", {"expression": "2 + 2"}, call_id="c1"),
        text("It is 4."),
    )
    with TestClient(create_app(runtime)) as client:
        yield client


class TestHttpRoutes:
    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["provider"] == "fake"
        assert body["provider_status"] == "Fake fake"
        assert body["active_connections"] == 0

    def test_chains(self, client):
        chains = client.get("/chains").json()
        assert {"travel_prep", "daily_digest"} <= {c["id"] for c in chains}

    def test_context_stats(self, client):
        stats = client.get("/context/stats").json()

        assert stats["current_tokens"] == 0
        assert stats["max_tokens"] > 0
        assert stats["thinking"] == ""

    def test_sessions_empty_before_first_message(self, client):
        assert client.get("/sessions").json() == []
        assert client.get("/sessions/favorites").json() == []
        assert client.get("/sessions/current/pinned").json() == []
        assert client.get("/tags").json() == []

    def test_chains_report_availability(self, client):
        chains = {c["id"]: c for c in client.get("/chains").json()}
        assert chains["travel_prep"]["available"] is False


class TestAssistantWebSocket:
    def test_connect_then_status(self, client):
        with client.websocket_connect("/ws/assistant/c1") as websocket:
            connection = websocket.receive_json()
            status = websocket.receive_json()
            assert client.get("/health").json()["active_connections"] == 1

        assert connection["type"] == "connection"
        assert connection["status"] == "connected"
        assert status["type"] == "status"
        assert status["provider"] == "fake"
        assert status["session_id"] is None

    def test_user_message_streams_in_order(self, client):
        with client.websocket_connect("/ws/assistant/c1") as websocket:
            receive_until(websocket, "status")

            websocket.send_json({"type": "user_message", "content": "Hi"})
            events = receive_until(websocket, "status")

        assert [e["type"] for e in events] == ["thinking", "stream_chunk", "stream_chunk", "response", "status"]
        assert [e["text"] for e in events if e["type"] == "stream_chunk"] == ["Hello", " there"]
        assert events[3]["content"] == "Hello there"
        assert events[3]["session_id"] is not None
        assert events[-1]["context"]["message_count"] >= 2

        sessions = client.get("/sessions").json()
        assert len(sessions) == 1
        assert sessions[0]["current"]
        assert sessions[0]["title"] == "Hi"

    def test_tool_round_trip(self, client):
        with client.websocket_connect("/ws/assistant/c1") as websocket:
            receive_until(websocket, "status")
            websocket.send_json({"type": "user_message", "content": "Hi"})
            receive_until(websocket, "status")

            websocket.send_json({"type": "user_message", "content": "What is 2 + 2?"})
            events = receive_until(websocket, "status")

        types = [e["type"] for e in events]
        assert types[:3] == ["thinking", "tool_call", "tool_result"]
        assert events[1]["tool_name"] == "calculator"
        assert events[2]["success"]
        assert types[-2:] == ["response", "status"]
        assert events[-2]["content"] == "It is 4."

    def test_invalid_command(self, client):
        with client.websocket_connect("/ws/assistant/c1") as websocket:
            receive_until(websocket, "status")

            websocket.send_json({"type": "dance"})
            error = websocket.receive_json()

        assert error["type"] == "error"
        assert error["message"].startswith("Invalid command")

    def test_empty_user_message_rejected(self, client):
        with client.websocket_connect("/ws/assistant/c1") as websocket:
            receive_until(websocket, "status")

            websocket.send_json({"type": "user_message", "content": "  "})
            error = websocket.receive_json()

        assert error["type"] == "error"
        assert "non-empty" in error["message"]

    def test_new_session_and_unknown_switch(self, client):
        with client.websocket_connect("/ws/assistant/c1") as websocket:
            receive_until(websocket, "status")

            websocket.send_json({"type": "new_session"})
            session_event, status = receive_until(websocket, "status")

            websocket.send_json({"type": "switch_session", "session_id": "nope"})
            error = websocket.receive_json()

        assert session_event["type"] == "session"
        assert session_event["action"] == "started"
        assert status["session_id"] == session_event["session_id"]
        assert error["type"] == "error"
        assert error["message"] == "Session not found: nope"
        assert error["session_id"] == session_event["session_id"]

    def test_unknown_chain(self, client):
        with client.websocket_connect("/ws/assistant/c1") as websocket:
            receive_until(websocket, "status")

            websocket.send_json({"type": "run_chain", "chain_id": "missing"})
            error = websocket.receive_json()

        assert error["type"] == "error"
        assert error["message"] == "Unknown tool chain: missing"


class TestProviderFailure:
    def test_typed_error_is_forwarded(self):
        runtime = make_runtime(GenerationFailed("backend down"))

        with TestClient(create_app(runtime)) as client:
            with client.websocket_connect("/ws/assistant/c1") as websocket:
                receive_until(websocket, "status")

                websocket.send_json({"type": "user_message", "content": "Hi"})
                events = receive_until(websocket, "status")

        error = next(e for e in events if e["type"] == "error")
        assert error["kind"] == "generation_failed"
        assert "backend down" in error["message"]
