"""Pytest configuration and fixtures.

Provides environment isolation, scripted transports, a recording event sink
and automatic API test skipping. Fixtures marked autouse apply everywhere.
"""

from __future__ import annotations

from contextlib import suppress
from dataclasses import dataclass, field
import json
import logging
import os
from typing import Any

import httpx
import pytest

from castor.config import ProviderConfig
from castor.driver import Driver
from castor.events import CostCalculated
from castor.transport import ChatRequest

# =============================================================================
# Test Doubles
# =============================================================================


@dataclass
class FakeStream:
    """Opened stream double: yields scripted lines, optionally failing mid-way."""

    lines: list[str]
    error: BaseException | None = None
    fail_at: int | None = None
    closed: bool = False

    def __iter__(self):
        for i, line in enumerate(self.lines):
            if self.error is not None and self.fail_at == i:
                raise self.error
            yield line
        if self.error is not None and (self.fail_at is None or self.fail_at >= len(self.lines)):
            raise self.error

    def close(self) -> None:
        self.closed = True


@dataclass
class FakeTransport:
    """Transport test double.

    ``responses`` and ``streams`` are consumed in order; an exception in
    either list is raised instead of returned.
    """

    responses: list[Any] = field(default_factory=list)
    streams: list[Any] = field(default_factory=list)
    requests: list[ChatRequest] = field(default_factory=list)
    closed: bool = False

    def request(self, request: ChatRequest) -> Any:
        self.requests.append(request)
        outcome = self.responses.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    def stream(self, request: ChatRequest) -> Any:
        self.requests.append(request)
        outcome = self.streams.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    def close(self) -> None:
        self.closed = True


@dataclass
class RecordingSink:
    """Event sink that keeps every event it receives."""

    events: list[CostCalculated] = field(default_factory=list)

    def notify(self, event: CostCalculated) -> None:
        self.events.append(event)


class ExplodingSink:
    """Event sink that always fails."""

    def notify(self, event: CostCalculated) -> None:
        raise RuntimeError("sink is down")


def http_error(
    status: int,
    body: Any = None,
    *,
    headers: dict[str, str] | None = None,
    url: str = "https://api.example.test/v1/chat/completions",
) -> httpx.HTTPStatusError:
    """Build the ``HTTPStatusError`` httpx raises for a non-2xx response."""
    request = httpx.Request("POST", url)
    response = httpx.Response(
        status,
        json=body if body is not None else {},
        headers=headers,
        request=request,
    )
    return httpx.HTTPStatusError(
        f"Error response {status}", request=request, response=response
    )


def sse(*payloads: Any, done: bool = True) -> list[str]:
    """Frame payloads as Server-Sent Events lines."""
    lines: list[str] = []
    for payload in payloads:
        text = payload if isinstance(payload, str) else json.dumps(payload)
        lines.extend([f"data: {text}", ""])
    if done:
        lines.append("data: [DONE]")
    return lines


def ndjson(*payloads: Any) -> list[str]:
    """Frame payloads as newline-delimited JSON lines."""
    return [p if isinstance(p, str) else json.dumps(p) for p in payloads]


def openai_completion(
    content: str = "Hello!",
    *,
    finish_reason: str = "stop",
    usage: tuple[int, int] = (10, 5),
    model: str = "gpt-4o-mini",
    **message: Any,
) -> dict[str, Any]:
    """A minimal ``chat.completion`` payload."""
    return {
        "id": "chatcmpl-123",
        "object": "chat.completion",
        "created": 1700000000,
        "model": model,
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": content, **message},
                "finish_reason": finish_reason,
            }
        ],
        "usage": {
            "prompt_tokens": usage[0],
            "completion_tokens": usage[1],
            "total_tokens": usage[0] + usage[1],
        },
    }


def openai_delta(
    content: str | None = None, *, finish_reason: str | None = None, **delta: Any
) -> dict[str, Any]:
    """A minimal ``chat.completion.chunk`` payload."""
    body: dict[str, Any] = dict(delta)
    if content is not None:
        body["content"] = content
    return {
        "object": "chat.completion.chunk",
        "choices": [{"index": 0, "delta": body, "finish_reason": finish_reason}],
    }


@dataclass
class DriverHarness:
    """A driver wired to fakes, plus handles on those fakes."""

    driver: Driver
    transport: FakeTransport
    sink: RecordingSink
    sleeps: list[float]


@pytest.fixture
def make_driver():
    """Factory fixture: ``make_driver("openai", responses=[...], streams=[...])``.

    Sleeps are recorded instead of performed and jitter is neutral (factor 1).
    """

    def _make(
        provider: str = "openai",
        *,
        responses: list[Any] | None = None,
        streams: list[Any] | None = None,
        driver_kwargs: dict[str, Any] | None = None,
        **config_kwargs: Any,
    ) -> DriverHarness:
        if provider in ("openai", "xai", "gemini"):
            config_kwargs.setdefault("api_key", "test-key")
        config = ProviderConfig(provider=provider, **config_kwargs)  # type: ignore[arg-type]
        transport = FakeTransport(responses=list(responses or []), streams=list(streams or []))
        sink = RecordingSink()
        sleeps: list[float] = []
        driver = Driver(
            config,
            transport=transport,
            event_sink=sink,
            sleep=sleeps.append,
            rng=lambda: 0.5,
            **(driver_kwargs or {}),
        )
        return DriverHarness(driver, transport, sink, sleeps)

    return _make


# =============================================================================
# Environment Isolation (Autouse)
# =============================================================================


@pytest.fixture(autouse=True)
def block_dotenv(request, monkeypatch):
    """Prevent python-dotenv from loading project .env files during tests.

    Opt-out: @pytest.mark.allow_dotenv
    """
    if request.node.get_closest_marker("allow_dotenv"):
        return
    with suppress(Exception):
        monkeypatch.setattr(
            "dotenv.load_dotenv", lambda *_args, **_kwargs: False, raising=False
        )


@pytest.fixture(autouse=True)
def isolate_provider_env(request, monkeypatch):
    """Ensure a clean provider environment for each test.

    Clears OPENAI_*, XAI_*, GEMINI_* and OLLAMA_* env vars to prevent test
    pollution. Opt-out: @pytest.mark.allow_env_pollution or @pytest.mark.api
    """
    if request.node.get_closest_marker("allow_env_pollution") or (
        "api" in request.node.keywords
    ):
        return

    for key in list(os.environ.keys()):
        if key.startswith(("OPENAI_", "XAI_", "GEMINI_", "OLLAMA_")):
            monkeypatch.delenv(key, raising=False)


# =============================================================================
# Logging
# =============================================================================


@pytest.fixture(scope="session", autouse=True)
def quiet_noisy_libraries():
    """Suppress noisy third-party loggers."""
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


# =============================================================================
# Pytest Hooks
# =============================================================================

API_TESTS_REASON = "API tests require ENABLE_API_TESTS=1"


def _api_tests_enabled() -> bool:
    return bool(os.getenv("ENABLE_API_TESTS"))


def pytest_collection_modifyitems(items):
    """Automatically skip API tests when not explicitly enabled."""
    if _api_tests_enabled():
        return
    skip_api = pytest.mark.skip(reason=API_TESTS_REASON)
    for item in items:
        if "api" in item.keywords:
            item.add_marker(skip_api)


# =============================================================================
# API Test Configuration
# =============================================================================


@pytest.fixture
def openai_api_key():
    """Return OPENAI_API_KEY or skip the test if unavailable."""
    key = os.getenv("OPENAI_API_KEY")
    if not key:
        pytest.skip("OPENAI_API_KEY not set")
    return key
