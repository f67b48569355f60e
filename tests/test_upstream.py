import json
from typing import Any, Dict, List

import httpx
import pytest

from chatrelay.relay.exceptions import (
    StreamTransportError,
    UpstreamError,
    UpstreamRateLimited,
    UpstreamTimeout,
    UpstreamUnauthorized,
    UpstreamUnavailable,
)
from chatrelay.relay.upstream import OpenRouterClient, classify_upstream_status

from conftest import SSE_DONE, sse_chunk

BASE_URL = "https://upstream.test/api/v1"
MESSAGES = [
    {"role": "system", "content": "sys"},
    {"role": "user", "content": "hello"},
]


def _client(handler, *, api_key: str | None = "sk-test") -> OpenRouterClient:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return OpenRouterClient(
        http_client,
        api_key=api_key,
        base_url=BASE_URL + "/",
        model="test/model",
        referer="http://localhost:8000",
        title="Relay Test",
        max_tokens=1000,
        temperature=0.7,
        timeout=5.0,
    )


@pytest.mark.parametrize(
    "status_code, expected",
    [
        (401, UpstreamUnauthorized),
        (403, UpstreamUnauthorized),
        (429, UpstreamRateLimited),
        (408, UpstreamTimeout),
        (504, UpstreamTimeout),
        (500, UpstreamUnavailable),
        (503, UpstreamUnavailable),
        (400, UpstreamError),
    ],
)
def test_classify_upstream_status(status_code, expected):
    error = classify_upstream_status(status_code, '{"error": {"message": "nope"}}')

    assert type(error) is expected
    assert error.upstream_status == status_code


def test_classify_rate_limit_reads_retry_after():
    error = classify_upstream_status(429, "", httpx.Headers({"Retry-After": "7"}))

    assert isinstance(error, UpstreamRateLimited)
    assert error.retry_after == 7.0
    assert error.retryable


@pytest.mark.asyncio
async def test_complete_sends_expected_request_and_parses_reply():
    seen: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json={
                "model": "test/model",
                "choices": [{"message": {"role": "assistant", "content": "Hi there"}}],
                "usage": {"total_tokens": 12},
            },
        )

    upstream = _client(handler)
    result = await upstream.complete(MESSAGES)

    assert result.text == "Hi there"
    assert result.usage == {"total_tokens": 12}
    assert result.model == "test/model"

    request = seen[0]
    assert request.method == "POST"
    assert str(request.url) == f"{BASE_URL}/chat/completions"
    assert request.headers["Authorization"] == "Bearer sk-test"
    assert request.headers["HTTP-Referer"] == "http://localhost:8000"
    assert request.headers["X-Title"] == "Relay Test"
    body: Dict[str, Any] = json.loads(request.content)
    assert body == {
        "model": "test/model",
        "messages": MESSAGES,
        "max_tokens": 1000,
        "temperature": 0.7,
        "stream": False,
    }


@pytest.mark.asyncio
async def test_missing_api_key_fails_without_calling_upstream():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json={})

    upstream = _client(handler, api_key=None)

    with pytest.raises(UpstreamUnauthorized):
        await upstream.complete(MESSAGES)
    assert calls == []


@pytest.mark.asyncio
async def test_complete_maps_rate_limit_with_retry_after():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(429, headers={"Retry-After": "3"}, json={"error": "slow"})

    with pytest.raises(UpstreamRateLimited) as excinfo:
        await _client(handler).complete(MESSAGES)

    assert excinfo.value.retry_after == 3.0


@pytest.mark.asyncio
async def test_complete_maps_client_error_message():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"error": {"message": "bad model"}})

    with pytest.raises(UpstreamError) as excinfo:
        await _client(handler).complete(MESSAGES)

    assert "bad model" in excinfo.value.message
    assert excinfo.value.upstream_status == 400


@pytest.mark.asyncio
async def test_complete_maps_timeout_and_connection_errors():
    def timeout_handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("too slow", request=request)

    def connect_handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(UpstreamTimeout):
        await _client(timeout_handler).complete(MESSAGES)
    with pytest.raises(UpstreamUnavailable):
        await _client(connect_handler).complete(MESSAGES)


@pytest.mark.asyncio
async def test_complete_rejects_malformed_payload():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"choices": []})

    with pytest.raises(UpstreamUnavailable):
        await _client(handler).complete(MESSAGES)


@pytest.mark.asyncio
async def test_stream_yields_body_chunks():
    payload = sse_chunk("Hel") + sse_chunk("lo") + SSE_DONE

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        assert body["stream"] is True
        assert request.headers["Accept"] == "text/event-stream"
        return httpx.Response(
            200, headers={"Content-Type": "text/event-stream"}, content=payload
        )

    chunks = [chunk async for chunk in _client(handler).stream(MESSAGES)]

    assert b"".join(chunks) == payload


@pytest.mark.asyncio
async def test_stream_http_error_raises_before_any_chunk():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, json={"error": {"message": "down"}})

    received = []
    with pytest.raises(UpstreamUnavailable):
        async for chunk in _client(handler).stream(MESSAGES):
            received.append(chunk)
    assert received == []


@pytest.mark.asyncio
async def test_stream_interrupted_mid_body_raises_transport_error():
    async def body():
        yield sse_chunk("partial")
        raise httpx.ReadError("connection reset")

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=body())

    received = []
    with pytest.raises(StreamTransportError):
        async for chunk in _client(handler).stream(MESSAGES):
            received.append(chunk)
    assert received == [sse_chunk("partial")]


@pytest.mark.asyncio
async def test_list_models_returns_data_entries():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.method == "GET"
        assert str(request.url) == f"{BASE_URL}/models"
        return httpx.Response(200, json={"data": [{"id": "a"}, {"id": "b"}, "junk"]})

    models = await _client(handler).list_models()

    assert [m["id"] for m in models] == ["a", "b"]


def test_info_reports_configuration():
    upstream = _client(lambda request: httpx.Response(200), api_key=None)

    info = upstream.info()

    assert info["model"] == "test/model"
    assert info["baseURL"] == BASE_URL
    assert info["status"] == "unconfigured"
