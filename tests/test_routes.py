import base64
import json
import logging
from contextlib import contextmanager
from typing import Any, Dict, List

from fastapi.testclient import TestClient

from chatrelay.relay.exceptions import UpstreamRateLimited, UpstreamUnauthorized
from chatrelay.routes import create_app
from chatrelay.transcription import SIMULATED_PHRASES

from conftest import FakeUpstream, instant_transcriber, make_settings, sse_chunk

AUDIO = base64.b64encode(b"RIFF....WAVEfmt ").decode("ascii")


@contextmanager
def _client_for(upstream=None, **setting_overrides):
    app = create_app(
        make_settings(**setting_overrides),
        upstream=upstream or FakeUpstream(),
        transcriber=instant_transcriber(),
    )
    with TestClient(app) as client:
        yield client


def _parse_sse(body: str) -> List[Dict[str, Any]]:
    events = []
    for block in body.strip().split("\n\n"):
        lines = dict(line.split(": ", 1) for line in block.splitlines() if ": " in line)
        events.append({"event": lines["event"], "data": json.loads(lines["data"])})
    return events


# ----------------------------------------------------------------------
# Service endpoints
# ----------------------------------------------------------------------


def test_health(client):
    resp = client.get("/health")

    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "OK"
    assert data["environment"] == "test"
    assert data["uptime"] >= 0


def test_root_lists_endpoints(client):
    data = client.get("/").json()

    assert data["endpoints"]["chat"] == "/api/v1/chat/message"
    assert data["endpoints"]["websocket"] == "/ws"


def test_api_info_and_models(client):
    info = client.get("/api/info").json()
    models = client.get("/api/v1/models").json()

    assert info["success"] is True
    assert info["data"]["model"] == "test-model"
    assert models["data"][0]["id"] == "test-model"


def test_unknown_route_uses_error_envelope(client):
    resp = client.get("/api/v1/nope")

    assert resp.status_code == 404
    assert resp.json()["success"] is False


# ----------------------------------------------------------------------
# Chat
# ----------------------------------------------------------------------


def test_chat_message_returns_reply_and_conversation_id(client, fake_upstream):
    resp = client.post("/api/v1/chat/message", json={"message": "Hello"})

    assert resp.status_code == 200
    payload = resp.json()
    assert payload["success"] is True
    data = payload["data"]
    assert data["response"] == "Hello from the model"
    assert data["conversationId"].startswith("conv_")
    assert data["usage"]["total_tokens"] == 7
    assert data["timestamp"]

    follow_up = client.post(
        "/api/v1/chat/message",
        json={"message": "And again", "conversationId": data["conversationId"]},
    )
    assert follow_up.json()["data"]["conversationId"] == data["conversationId"]
    assert [m["content"] for m in fake_upstream.calls[-1][1:]] == [
        "Hello",
        "Hello from the model",
        "And again",
    ]


def test_chat_message_uses_system_prompt(client, fake_upstream):
    client.post(
        "/api/v1/chat/message",
        json={"message": "Hi", "systemPrompt": "Answer like a pirate."},
    )

    assert fake_upstream.calls[-1][0] == {"role": "system", "content": "Answer like a pirate."}


def test_chat_message_validation_errors(client):
    missing = client.post("/api/v1/chat/message", json={})
    empty = client.post("/api/v1/chat/message", json={"message": "   "})
    too_long = client.post("/api/v1/chat/message", json={"message": "x" * 4001})

    assert missing.status_code == 400
    assert missing.json()["code"] == "VALIDATION_ERROR"
    assert empty.status_code == 400
    assert empty.json()["code"] == "INVALID_REQUEST"
    assert too_long.status_code == 400
    assert too_long.json()["details"]["maxLength"] == 4000


def test_upstream_rate_limit_maps_to_429_with_retry_after():
    upstream = FakeUpstream(complete_error=UpstreamRateLimited("slow down", retry_after=5))
    with _client_for(upstream) as client:
        resp = client.post("/api/v1/chat/message", json={"message": "hi"})

    assert resp.status_code == 429
    assert resp.headers["Retry-After"] == "5"
    assert resp.json()["code"] == "UPSTREAM_RATE_LIMITED"


def test_upstream_unauthorized_maps_to_401():
    upstream = FakeUpstream(complete_error=UpstreamUnauthorized("bad key"))
    with _client_for(upstream) as client:
        resp = client.post("/api/v1/chat/message", json={"message": "hi"})

    assert resp.status_code == 401
    assert resp.json() == {
        "success": False,
        "error": "bad key",
        "code": "UPSTREAM_UNAUTHORIZED",
    }


def test_failed_chat_leaves_history_unchanged():
    upstream = FakeUpstream(complete_error=UpstreamRateLimited("slow down"))
    with _client_for(upstream) as client:
        client.post("/api/v1/chat/message", json={"message": "hi", "conversationId": "c1"})
        resp = client.get("/api/v1/sessions/c1")

    assert resp.status_code == 404


def test_chat_stream_emits_sse_events(client):
    resp = client.post(
        "/api/v1/chat/stream", json={"message": "Hi", "conversationId": "stream-1"}
    )

    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/event-stream")
    assert resp.headers["X-Conversation-Id"] == "stream-1"
    events = _parse_sse(resp.text)
    assert [e["event"] for e in events] == ["fragment", "fragment", "complete"]
    assert [e["data"].get("text") for e in events] == ["Hello ", "world", "Hello world"]
    assert events[-1]["data"]["conversationId"] == "stream-1"

    session = client.get("/api/v1/sessions/stream-1").json()
    assert [m["content"] for m in session["messages"]] == ["Hi", "Hello world"]


def test_chat_stream_failure_arrives_as_error_event():
    upstream = FakeUpstream(
        stream_script=[sse_chunk("par"), b'data: {"error": {"message": "overloaded"}}\n\n']
    )
    with _client_for(upstream) as client:
        resp = client.post("/api/v1/chat/stream", json={"message": "Hi"})

    events = _parse_sse(resp.text)
    assert [e["event"] for e in events] == ["fragment", "error"]
    assert events[-1]["data"]["code"] == "STREAM_TRANSPORT_ERROR"
    assert "overloaded" in events[-1]["data"]["reason"]


def test_chat_stream_rejects_invalid_request_before_streaming(client):
    resp = client.post("/api/v1/chat/stream", json={"message": ""})

    assert resp.status_code == 400
    assert resp.headers["content-type"].startswith("application/json")
    assert resp.json()["code"] == "INVALID_REQUEST"


# ----------------------------------------------------------------------
# Audio
# ----------------------------------------------------------------------


def test_audio_process(client):
    resp = client.post(
        "/api/v1/audio/process",
        json={"audioData": AUDIO, "sessionId": "voice-1", "format": "wav"},
    )

    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["conversationId"] == "voice-1"
    assert data["transcribedText"] in SIMULATED_PHRASES
    assert data["response"] == "Hello from the model"


def test_audio_process_rejects_bad_payloads(client):
    bad_base64 = client.post("/api/v1/audio/process", json={"audioData": "%%%"})
    bad_format = client.post(
        "/api/v1/audio/process", json={"audioData": AUDIO, "format": "flac"}
    )
    missing = client.post("/api/v1/audio/process", json={"sessionId": "x"})

    assert bad_base64.status_code == 400
    assert bad_format.status_code == 400
    assert bad_format.json()["details"]["supported"] == ["mp3", "wav", "m4a", "ogg"]
    assert missing.json()["code"] == "VALIDATION_ERROR"


def test_audio_health(client):
    data = client.get("/api/v1/audio/health").json()["data"]

    assert data["status"] == "healthy"
    assert data["supportedFormats"] == ["mp3", "wav", "m4a", "ogg"]


# ----------------------------------------------------------------------
# Sessions
# ----------------------------------------------------------------------


def test_session_admin_endpoints(client):
    client.post("/api/v1/chat/message", json={"message": "one", "conversationId": "a"})
    client.post("/api/v1/chat/message", json={"message": "two", "conversationId": "b"})

    stats = client.get("/api/v1/sessions/stats").json()["data"]
    listing = client.get("/api/v1/sessions", params={"preview": 1}).json()["data"]
    detail = client.get("/api/v1/sessions/a").json()

    assert stats == {"totalConversations": 2, "totalMessages": 4, "inFlight": 0}
    assert {item["session_id"] for item in listing} == {"a", "b"}
    assert all(len(item["recent_messages"]) == 1 for item in listing)
    assert detail["session_id"] == "a"
    assert [m["role"] for m in detail["messages"]] == ["user", "assistant"]

    assert client.delete("/api/v1/sessions/a").status_code == 204
    assert client.get("/api/v1/sessions/a").status_code == 404
    missing = client.delete("/api/v1/sessions/a")
    assert missing.status_code == 404
    assert missing.json()["code"] == "NOT_FOUND"


def test_cancel_without_stream_reports_false(client):
    resp = client.post("/api/v1/sessions/idle/cancel")

    assert resp.status_code == 200
    assert resp.json()["data"] == {"conversationId": "idle", "cancelled": False}


def test_expired_session_is_not_returned(app, client, clock):
    client.post("/api/v1/chat/message", json={"message": "hi", "conversationId": "old"})

    clock.advance(app.state.settings.conversation_ttl_seconds + 1)

    assert client.get("/api/v1/sessions/old").status_code == 404


# ----------------------------------------------------------------------
# Access control, rate limiting, errors, logging
# ----------------------------------------------------------------------


def test_api_key_required_outside_development():
    with _client_for(environment="production", valid_api_keys_raw="k1, k2") as client:
        missing = client.get("/api/info")
        wrong = client.get("/api/info", headers={"X-API-Key": "nope"})
        by_header = client.get("/api/info", headers={"X-API-Key": "k2"})
        by_query = client.get("/api/info", params={"apiKey": "k1"})
        health = client.get("/health")

    assert missing.status_code == 401
    assert missing.json()["code"] == "INVALID_API_KEY"
    assert wrong.status_code == 401
    assert by_header.status_code == 200
    assert by_query.status_code == 200
    assert health.status_code == 200


def test_api_key_check_skipped_in_development_and_without_keys():
    with _client_for(environment="development", valid_api_keys_raw="k1") as client:
        assert client.get("/api/info").status_code == 200
    with _client_for(environment="production", valid_api_keys_raw="") as client:
        assert client.get("/api/info").status_code == 200


def test_rate_limit_applies_per_client_but_not_to_health():
    with _client_for(rate_limit_max_requests=2) as client:
        first = client.get("/api/info")
        client.get("/api/info")
        limited = client.get("/api/info")
        health = client.get("/health")

    assert first.headers["X-RateLimit-Limit"] == "2"
    assert first.headers["X-RateLimit-Remaining"] == "1"
    assert limited.status_code == 429
    assert limited.json()["code"] == "RATE_LIMIT_EXCEEDED"
    assert "Retry-After" in limited.headers
    assert health.status_code == 200


def test_unhandled_exception_returns_structured_error(app):
    @app.get("/__raise_unhandled_error")
    async def raise_error():
        raise RuntimeError("boom")

    with TestClient(app) as client:
        response = client.get("/__raise_unhandled_error")

    assert response.status_code == 500
    payload = response.json()
    assert payload["code"] == "INTERNAL_ERROR"
    assert payload["details"]["errorId"]


def test_request_logging_does_not_leak_api_key(client, caplog):
    caplog.set_level(logging.INFO, logger="chatrelay")
    secret_key = "sk-test-should-not-appear"

    client.get("/health", headers={"X-API-Key": secret_key, "Authorization": "Bearer x"})

    joined = "\n".join(record.getMessage() for record in caplog.records)
    assert secret_key not in joined
    assert "***REDACTED***" in joined
