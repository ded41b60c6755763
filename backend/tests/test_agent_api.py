"""
Integration tests for the HTTP surface: chat, streaming chat, admin and health.

The orchestration service and credential pool are replaced through FastAPI
dependency overrides; the oracle is the in-memory scripted stub.
"""
import json
import uuid

import pytest
from fastapi.testclient import TestClient

from gradpilot.main import app
from gradpilot.services.orchestration.credentials import (
    CredentialRotationManager,
    FailureSignal,
    get_credential_manager,
)
from gradpilot.services.orchestration.errors import CredentialPoolConfigurationError
from gradpilot.services.orchestration.service import (
    OrchestrationService,
    get_orchestration_service,
)

GREETING = {"intent": "greeting", "task_types": ["greeting"], "complexity": "simple"}


@pytest.fixture
def oracle(make_oracle):
    return make_oracle(classification=GREETING, script={"greeting": [("text", "Hello there!")]})


@pytest.fixture
def credentials():
    return CredentialRotationManager(
        [("ORACLE_API_KEY_1", "secret-1"), ("ORACLE_API_KEY_2", "secret-2")],
        daily_cap=10,
    )


@pytest.fixture
def client(oracle, credentials):
    service = OrchestrationService.from_oracle(oracle)
    app.dependency_overrides[get_orchestration_service] = lambda: service
    app.dependency_overrides[get_credential_manager] = lambda: credentials
    yield TestClient(app)
    app.dependency_overrides.clear()


def sse_events(body: str):
    events = []
    for block in body.strip().split("\n\n"):
        data = block[len("data: "):]
        events.append(data if data == "[DONE]" else json.loads(data))
    return events


class TestChat:
    def test_chat(self, client, oracle):
        response = client.post(
            "/agent/chat",
            json={"message": "hi"},
            headers={"X-User-ID": "user-42", "Authorization": "Bearer tok-42"},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["response"] == "Hello there!"
        assert data["success"] is True
        assert data["status"] == "all_succeeded"
        assert data["used_fallback"] is False
        assert data["strategy"] == "sequential"
        assert data["primary_agent"] == "PostgradApplicationAgent"
        assert data["steps"][0]["agent"] == "PostgradApplicationAgent"
        assert data["steps"][0]["task_type"] == "greeting"
        assert data["tokens_used"] == 15

    def test_user_id_in_body(self, client):
        response = client.post("/agent/chat", json={"message": "hi", "user_id": "user-7"})
        assert response.status_code == 200

    def test_missing_user_is_rejected(self, client):
        response = client.post("/agent/chat", json={"message": "hi"})

        assert response.status_code == 400
        assert response.json()["detail"] == "user_id is required"

    def test_empty_message_is_rejected(self, client):
        response = client.post("/agent/chat", json={"message": "  "}, headers={"X-User-ID": "u"})
        assert response.status_code == 400

    def test_history_reaches_classifier(self, client, oracle):
        client.post(
            "/agent/chat",
            json={
                "message": "hi again",
                "history": [{"role": "user", "content": "I like robotics"}],
            },
            headers={"X-User-ID": "u"},
        )

        prompt = oracle.classify_requests[0].messages[0]["content"]
        assert "I like robotics" in prompt


class TestChatStream:
    def test_stream_sends_progress_then_result(self, client):
        response = client.post(
            "/agent/chat/stream", json={"message": "hi"}, headers={"X-User-ID": "u"}
        )

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        events = sse_events(response.text)
        assert events[0] == {"type": "start"}
        assert events[-1] == "[DONE]"
        result = events[-2]
        assert result["type"] == "result"
        assert result["response"] == "Hello there!"
        progress = [event["message"] for event in events[1:-2]]
        assert progress[0] == "Getting started..."
        assert "Synthesizing results..." in progress


class TestAdmin:
    def test_stats(self, client, credentials):
        credentials.track_usage(credentials.get_available_key())

        data = client.get("/admin/credentials/stats").json()

        assert data["total_keys"] == 2
        assert data["total_daily_used"] == 1
        assert data["remaining_quota"] == 19
        assert "secret-1" not in json.dumps(data)

    def test_reset_all(self, client, credentials):
        credentials.track_failure(credentials.get_available_key(), FailureSignal.QUOTA)

        data = client.post("/admin/credentials/reset").json()

        assert data["total_daily_used"] == 0

    def test_reset_one(self, client, credentials):
        credentials.track_failure(credentials.get_available_key(), FailureSignal.INVALID)

        data = client.post("/admin/credentials/0/reset").json()

        assert data["invalid_keys"] == 0
        assert data["keys"][0]["is_active"] is True

    def test_reset_unknown_index(self, client):
        response = client.post("/admin/credentials/9/reset")

        assert response.status_code == 404
        assert response.json()["status_code"] == 404


class TestHealth:
    def test_basic_health_check(self, client):
        response = client.get("/health/")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_credentials_health(self, client, credentials, monkeypatch):
        monkeypatch.setattr("gradpilot.routes.health.get_credential_manager", lambda: credentials)

        data = client.get("/health/credentials").json()

        assert data["status"] == "ok"
        assert data["available_keys"] == 2

    def test_credentials_health_degraded(self, client, credentials, monkeypatch):
        for key in credentials.keys:
            credentials.track_failure(credentials.get_available_key(), FailureSignal.QUOTA)
        monkeypatch.setattr("gradpilot.routes.health.get_credential_manager", lambda: credentials)

        assert client.get("/health/credentials").json()["status"] == "degraded"

    def test_credentials_health_unconfigured(self, client, monkeypatch):
        def unconfigured():
            raise CredentialPoolConfigurationError("No oracle API keys configured")

        monkeypatch.setattr("gradpilot.routes.health.get_credential_manager", unconfigured)

        data = client.get("/health/credentials").json()
        assert data["status"] == "unavailable"


class TestTraceIDPropagation:
    def test_trace_id_generated_when_missing(self, client):
        response = client.get("/health/")

        trace_id = response.headers["X-Trace-ID"]
        uuid.UUID(trace_id)
        assert "X-Request-ID" in response.headers

    def test_trace_id_extracted_from_header(self, client):
        custom_trace_id = str(uuid.uuid4())

        response = client.get("/health/", headers={"X-Trace-ID": custom_trace_id})

        assert response.headers["X-Trace-ID"] == custom_trace_id

    def test_trace_id_continues_w3c_traceparent(self, client):
        traceparent = "00-4bf92f3577b34da6a3ce929d0e0e4736-00f067aa0ba902b7-01"

        response = client.get("/health/", headers={"traceparent": traceparent})

        assert response.headers["X-Trace-ID"] == "4bf92f35-77b3-4da6-a3ce-929d0e0e4736"

    def test_explicit_trace_header_wins_over_traceparent(self, client):
        custom_trace_id = str(uuid.uuid4())

        response = client.get(
            "/health/",
            headers={
                "X-Trace-ID": custom_trace_id,
                "traceparent": "00-4bf92f3577b34da6a3ce929d0e0e4736-00f067aa0ba902b7-01",
            },
        )

        assert response.headers["X-Trace-ID"] == custom_trace_id

    def test_request_ids_are_unique(self, client):
        first = client.get("/health/").headers["X-Request-ID"]
        second = client.get("/health/").headers["X-Request-ID"]
        assert first != second

    def test_error_responses_carry_trace_id(self, client):
        custom_trace_id = str(uuid.uuid4())

        response = client.post(
            "/agent/chat", json={"message": "hi"}, headers={"X-Trace-ID": custom_trace_id}
        )

        assert response.status_code == 400
        assert response.json()["trace_id"] == custom_trace_id
