"""Default httpx transport, exercised through ``httpx.MockTransport``."""

from __future__ import annotations

import json

import httpx
import pytest

from castor.classify import ErrorKind, classify, extract_message
from castor.config import ProviderConfig
from castor.driver import Driver
from castor.errors import InvalidCredentialsError
from castor.transport import ChatRequest, HttpxTransport

pytestmark = pytest.mark.unit


def _transport(handler) -> HttpxTransport:
    return HttpxTransport(client=httpx.Client(transport=httpx.MockTransport(handler)))


def test_request_sends_json_headers_and_params() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"ok": True})

    transport = _transport(handler)

    body = transport.request(
        ChatRequest(
            "POST",
            "https://api.example.test/v1/chat",
            headers={"Authorization": "Bearer k"},
            json={"model": "m"},
            params={"alt": "sse"},
            timeout_s=5.0,
        )
    )

    assert body == {"ok": True}
    [request] = seen
    assert request.headers["Authorization"] == "Bearer k"
    assert request.url.params["alt"] == "sse"
    assert json.loads(request.content) == {"model": "m"}


def test_error_status_raises_with_readable_body() -> None:
    transport = _transport(
        lambda request: httpx.Response(401, json={"error": {"message": "Invalid API key"}})
    )

    with pytest.raises(httpx.HTTPStatusError) as exc_info:
        transport.request(ChatRequest("GET", "https://api.example.test/v1/models"))

    assert classify(exc_info.value).kind is ErrorKind.INVALID_CREDENTIALS
    assert extract_message(exc_info.value) == "Invalid API key"


def test_stream_yields_lines_and_closes() -> None:
    body = b'data: {"a": 1}\n\ndata: [DONE]\n\n'
    transport = _transport(lambda request: httpx.Response(200, content=body))

    handle = transport.stream(ChatRequest("POST", "https://api.example.test/v1/chat", json={}))
    lines = list(handle)
    handle.close()

    assert 'data: {"a": 1}' in lines
    assert "data: [DONE]" in lines


def test_stream_error_status_reads_body_before_raising() -> None:
    transport = _transport(
        lambda request: httpx.Response(429, json={"error": {"message": "Rate limit reached"}})
    )

    with pytest.raises(httpx.HTTPStatusError) as exc_info:
        transport.stream(ChatRequest("POST", "https://api.example.test/v1/chat", json={}))

    assert extract_message(exc_info.value) == "Rate limit reached"


def test_driver_over_httpx_streaming_round_trip() -> None:
    chunks = [
        {"choices": [{"index": 0, "delta": {"role": "assistant", "content": "Hel"}, "finish_reason": None}]},
        {"choices": [{"index": 0, "delta": {"content": "lo"}, "finish_reason": None}]},
        {"choices": [{"index": 0, "delta": {}, "finish_reason": "stop"}]},
        {"choices": [], "usage": {"prompt_tokens": 3, "completion_tokens": 2, "total_tokens": 5}},
    ]
    body = "".join(f"data: {json.dumps(c)}\n\n" for c in chunks) + "data: [DONE]\n\n"

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v1/chat/completions"
        return httpx.Response(200, content=body.encode(), headers={"Content-Type": "text/event-stream"})

    driver = Driver(ProviderConfig(provider="openai", api_key="k"), transport=_transport(handler))

    final = list(driver.send_streaming_message("Hi"))[-1]

    assert final.content == "Hello"
    assert final.usage.total_tokens == 5


def test_driver_over_httpx_maps_status_errors() -> None:
    transport = _transport(
        lambda request: httpx.Response(403, json={"error": {"message": "Permission denied"}})
    )
    driver = Driver(ProviderConfig(provider="xai", api_key="k"), transport=transport)

    with pytest.raises(InvalidCredentialsError) as exc_info:
        driver.send_message("Hi")

    assert "Invalid xAI API key" in str(exc_info.value)
    assert "Permission denied" in str(exc_info.value)
