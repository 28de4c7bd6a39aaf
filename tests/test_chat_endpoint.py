"""Integration tests for the streaming chat endpoint.

Tests the request pipeline end to end:
- Identity, rate limit and token quota gates
- Body and current-turn validation
- Streaming response, retry notices and headers
- Detached token tracking and activity logging
"""

import json

import httpx
import pytest
from fastapi.testclient import TestClient

from edulearn_chat import app as app_module
from edulearn_chat.api import routes as routes_module
from edulearn_chat.service.activity_log import ActivityLogger
from edulearn_chat.service.model_backend import StubBackend, UpstreamError
from edulearn_chat.service.runtime import get_runtime
from edulearn_chat.service.streaming import RETRY_NOTICE
from edulearn_chat.service.tokenizer_utils import estimate_tokens

BACKEND = "http://lms-backend.test/api"
PNG_B64 = "iVBORw0KGgo="


class ScriptedBackend:
    name = "scripted"
    model = "fake-model"

    def __init__(self, *attempts):
        self.attempts = list(attempts)
        self.calls = 0

    async def stream_completion(self, system_prompt, history, current):
        script = self.attempts[min(self.calls, len(self.attempts) - 1)]
        self.calls += 1
        for item in script:
            if isinstance(item, BaseException):
                raise item
            yield item

    async def close(self):
        return None


@pytest.fixture
def runtime():
    return get_runtime()


@pytest.fixture
def activity_requests(runtime):
    """Capture side-channel log calls instead of reaching the LMS backend."""
    captured = []

    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(201, json={"success": True})

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    runtime.activity_logger = ActivityLogger(BACKEND, client=client)
    return captured


@pytest.fixture
def client(runtime, activity_requests):
    with TestClient(app_module.app) as test_client:
        yield test_client


@pytest.fixture
def auth_headers(make_auth_header):
    return make_auth_header("student-1", role="student")


def _body(content="Explain photosynthesis", *, history=None, session_id=None, attachments=None):
    message = {"role": "user", "content": content}
    if attachments is not None:
        message["attachments"] = attachments
    body = {
        "messages": [*(history or []), message],
        "userProfile": {"role": "student", "learningStyle": "ADHD"},
    }
    if session_id:
        body["sessionId"] = session_id
    return body


def _drain(client, runtime):
    client.portal.call(runtime.tasks.drain)


class TestChatHealth:
    def test_chat_health(self, client):
        response = client.get("/api/chat/health")
        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["message"] == "Chatbot service is running"
        assert "timestamp" in data

    def test_healthz_reports_store_and_backend(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["checks"]["quota_store"]["type"] == "memory"
        assert data["checks"]["backend"]["name"] == "stub"


class TestChatGates:
    """Gates short-circuit before any generation call."""

    def test_missing_credentials_is_401(self, client):
        response = client.post("/api/chat", json=_body())
        assert response.status_code == 401
        assert response.json() == {"error": "Unauthorized. Please log in.", "code": "unauthorized"}

    def test_invalid_token_is_401(self, client):
        response = client.post(
            "/api/chat", json=_body(), headers={"Authorization": "Bearer forged.token.value"}
        )
        assert response.status_code == 401

    def test_unauthenticated_requests_do_not_consume_rate_limit(self, client, runtime, auth_headers):
        for _ in range(12):
            client.post("/api/chat", json=_body())
        response = client.post("/api/chat", json=_body(), headers=auth_headers)
        assert response.status_code == 200
        assert response.headers["X-RateLimit-Remaining"] == "9"

    def test_eleventh_request_is_rate_limited(self, client, runtime, auth_headers):
        backend = ScriptedBackend(["ok"])
        runtime.backend = backend
        for _ in range(10):
            # Malformed bodies still count: the gate runs before parsing
            assert client.post("/api/chat", json={}, headers=auth_headers).status_code == 400

        response = client.post("/api/chat", json=_body(), headers=auth_headers)

        assert response.status_code == 429
        data = response.json()
        assert data["code"] == "rate_limited"
        assert data["error"].startswith("Rate limit exceeded")
        assert data["resetTime"].endswith("Z")
        assert response.headers["X-RateLimit-Limit"] == "10"
        assert response.headers["X-RateLimit-Remaining"] == "0"
        assert response.headers["X-RateLimit-Reset"] == data["resetTime"]
        assert backend.calls == 0

    def test_exhausted_token_quota_is_429(self, client, runtime, auth_headers):
        backend = ScriptedBackend(["ok"])
        runtime.backend = backend
        client.portal.call(runtime.quota.track_token_usage, "student-1", 100_000)

        response = client.post("/api/chat", json=_body(), headers=auth_headers)

        assert response.status_code == 429
        data = response.json()
        assert data["code"] == "quota_exceeded"
        assert "resetTime" not in data
        assert backend.calls == 0
        assert response.headers["X-RateLimit-Remaining"] == "9"
        assert "X-RateLimit-Reset" in response.headers

    def test_quota_is_per_user(self, client, runtime, make_auth_header):
        client.portal.call(runtime.quota.track_token_usage, "student-1", 100_000)
        response = client.post("/api/chat", json=_body(), headers=make_auth_header("student-2"))
        assert response.status_code == 200


class TestChatValidation:
    @pytest.mark.parametrize(
        "body",
        [
            {},
            {"messages": [], "userProfile": {"role": "student"}},
            {"messages": [{"role": "user", "content": "hi"}]},
            {"messages": [{"role": "robot", "content": "hi"}], "userProfile": {}},
            {"messages": "hello", "userProfile": {}},
        ],
    )
    def test_malformed_body_is_400(self, client, auth_headers, body):
        response = client.post("/api/chat", json=body, headers=auth_headers)
        assert response.status_code == 400
        assert response.json()["code"] == "validation_error"

    def test_invalid_json_is_400(self, client, auth_headers):
        response = client.post(
            "/api/chat",
            content=b"{not json",
            headers={**auth_headers, "Content-Type": "application/json"},
        )
        assert response.status_code == 400
        assert response.json()["error"] == "Request body must be valid JSON"

    def test_empty_message_is_400(self, client, runtime, auth_headers):
        backend = ScriptedBackend(["ok"])
        runtime.backend = backend
        response = client.post(
            "/api/chat",
            json=_body("", attachments=[{"type": "image/png", "name": "missing.png"}]),
            headers=auth_headers,
        )
        assert response.status_code == 400
        assert response.json()["error"] == "Message cannot be empty"
        assert backend.calls == 0
        assert response.headers["X-RateLimit-Limit"] == "10"
        assert "X-RateLimit-Remaining" in response.headers

    def test_invalid_attachment_payload_is_400(self, client, auth_headers):
        response = client.post(
            "/api/chat",
            json=_body("see file", attachments=[{"base64": "***not base64***", "type": "image/png"}]),
            headers=auth_headers,
        )
        assert response.status_code == 400


class TestChatConfiguration:
    def test_missing_engine_key_is_500(self, client, runtime, auth_headers):
        runtime.backend = None
        response = client.post("/api/chat", json=_body(), headers=auth_headers)
        assert response.status_code == 500
        assert response.json()["code"] == "configuration_error"
        assert response.headers["X-RateLimit-Remaining"] == "9"

    def test_unexpected_setup_failure_is_sanitized_500(self, client, auth_headers, monkeypatch):
        def broken_prompt(role, style):
            raise RuntimeError("template missing at /srv/prompts/tutor.txt")

        monkeypatch.setattr(routes_module, "generate_system_prompt", broken_prompt)
        response = client.post("/api/chat", json=_body(), headers=auth_headers)

        assert response.status_code == 500
        data = response.json()
        assert data["error"] == "An error occurred processing your request"
        assert "/srv/prompts" not in data["details"]
        assert "template missing" in data["details"]
        assert response.headers["X-RateLimit-Limit"] == "10"


class TestChatStreaming:
    def test_streams_plain_text_with_rate_headers(self, client, auth_headers):
        response = client.post("/api/chat", json=_body(), headers=auth_headers)

        assert response.status_code == 200
        assert response.headers["content-type"] == "text/plain; charset=utf-8"
        assert response.text == StubBackend.STUB_RESPONSE
        assert response.headers["X-RateLimit-Limit"] == "10"
        assert response.headers["X-RateLimit-Remaining"] == "9"
        assert response.headers["X-RateLimit-Reset"].endswith("Z")
        assert response.headers["X-Request-ID"]

    def test_request_id_is_echoed(self, client, auth_headers):
        response = client.post(
            "/api/chat", json=_body(), headers={**auth_headers, "X-Request-ID": "req-123"}
        )
        assert response.headers["X-Request-ID"] == "req-123"

    def test_tokens_tracked_after_completion(self, client, runtime, auth_headers):
        response = client.post("/api/chat", json=_body("Hi tutor"), headers=auth_headers)
        assert response.status_code == 200
        _drain(client, runtime)

        used = client.portal.call(runtime.quota.get_token_usage, "student-1")
        assert used == estimate_tokens("Hi tutor", StubBackend.STUB_RESPONSE)

    def test_transient_errors_retry_then_succeed(self, client, runtime, auth_headers):
        runtime.settings = runtime.settings.model_copy(update={"chat_retry_base_delay_ms": 0})
        runtime.backend = ScriptedBackend(
            [UpstreamError("network error: reset by peer")],
            [UpstreamError("overloaded", status_code=503)],
            ["Light ", "becomes ", "sugar."],
        )
        tracked = []
        original_track = runtime.quota.track_token_usage

        async def tracking(user_id, tokens):
            tracked.append((user_id, tokens))
            return await original_track(user_id, tokens)

        runtime.quota.track_token_usage = tracking

        response = client.post("/api/chat", json=_body("Why?"), headers=auth_headers)
        _drain(client, runtime)

        expected_notices = RETRY_NOTICE.format(attempt=1, max_retries=2) + RETRY_NOTICE.format(
            attempt=2, max_retries=2
        )
        assert response.status_code == 200
        assert response.text == expected_notices + "Light becomes sugar."
        assert tracked == [("student-1", estimate_tokens("Why?", "Light becomes sugar."))]

    def test_history_and_profile_reach_backend(self, client, runtime, auth_headers):
        seen = {}

        class RecordingBackend(ScriptedBackend):
            async def stream_completion(self, system_prompt, history, current):
                seen["system_prompt"] = system_prompt
                seen["history"] = history
                seen["current"] = current
                yield "ok"

        runtime.backend = RecordingBackend()
        history = [
            {"role": "assistant", "content": "Hello! How can I help?"},
            {"role": "user", "content": "I have a question"},
            {"role": "user", "content": "about plants"},
            {"role": "assistant", "content": "Sure."},
        ]
        response = client.post(
            "/api/chat", json=_body("What do leaves do?", history=history), headers=auth_headers
        )

        assert response.text == "ok"
        assert "- Learning Style: ADHD" in seen["system_prompt"]
        assert [turn.role for turn in seen["history"]] == ["user", "model"]
        assert seen["history"][0].text == "I have a questionabout plants"
        assert seen["current"].text == "What do leaves do?"


class TestChatActivityLog:
    def test_session_logs_user_and_bot_turns(self, client, runtime, auth_headers, activity_requests):
        response = client.post(
            "/api/chat", json=_body("Hi tutor", session_id="sess-9"), headers=auth_headers
        )
        assert response.status_code == 200
        _drain(client, runtime)

        payloads = [json.loads(r.content) for r in activity_requests]
        assert {p["sender"] for p in payloads} == {"user", "bot"}
        by_sender = {p["sender"]: p for p in payloads}
        assert by_sender["user"]["text"] == "Hi tutor"
        assert by_sender["user"]["sessionId"] == "sess-9"
        assert by_sender["bot"]["text"] == StubBackend.STUB_RESPONSE
        assert by_sender["bot"]["attachments"] is None
        for request in activity_requests:
            assert request.headers["Authorization"] == auth_headers["Authorization"]
            assert str(request.url) == f"{BACKEND}/chatbot/log"

    def test_attachment_only_turn_is_logged_as_sent_attachments(
        self, client, runtime, auth_headers, activity_requests
    ):
        attachment = {"base64": PNG_B64, "type": "image/png", "name": "leaf.png"}
        response = client.post(
            "/api/chat",
            json=_body("", attachments=[attachment], session_id="sess-9"),
            headers=auth_headers,
        )
        assert response.status_code == 200
        _drain(client, runtime)

        user_logs = [json.loads(r.content) for r in activity_requests]
        user_logs = [p for p in user_logs if p["sender"] == "user"]
        assert user_logs[0]["text"] == "Sent attachments"
        assert user_logs[0]["attachments"] == [attachment]

    def test_no_session_means_no_logging(self, client, runtime, auth_headers, activity_requests):
        client.post("/api/chat", json=_body(), headers=auth_headers)
        _drain(client, runtime)
        assert activity_requests == []

    def test_logging_failure_does_not_affect_response(self, client, runtime, auth_headers):
        def handler(request):
            raise httpx.ConnectError("backend down", request=request)

        runtime.activity_logger = ActivityLogger(
            BACKEND, client=httpx.AsyncClient(transport=httpx.MockTransport(handler))
        )
        response = client.post(
            "/api/chat", json=_body(session_id="sess-1"), headers=auth_headers
        )
        _drain(client, runtime)
        assert response.status_code == 200
        assert response.text == StubBackend.STUB_RESPONSE
