"""Mock provider for offline use and tests.

``MockTransport`` answers OpenAI-shaped payloads locally, so ``MockDialect``
reuses the OpenAI wire parsing unchanged.
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

from castor.models import DriverCapabilities
from castor.providers.openai import OpenAIDialect

if TYPE_CHECKING:
    from collections.abc import Iterator

    from castor.config import ProviderConfig
    from castor.transport import ChatRequest


class MockDialect(OpenAIDialect):
    """OpenAI wire format reported under the configured provider's name."""

    def __init__(self, config: ProviderConfig) -> None:
        self.name = config.provider
        self.base_url = config.base_url
        self.timeout_s = config.timeout_s
        self._headers = {"Content-Type": "application/json"}

    def capabilities(self, model: str) -> DriverCapabilities:  # noqa: ARG002
        return DriverCapabilities(
            streaming=True, function_calling=True, vision=False, json_mode=True
        )


class _LineStream:
    def __init__(self, lines: list[str]) -> None:
        self._lines = lines
        self.closed = False

    def __iter__(self) -> Iterator[str]:
        return iter(self._lines)

    def close(self) -> None:
        self.closed = True


class MockTransport:
    """Deterministic echo transport.

    Replies ``echo: <last user text>``; streaming splits the reply into words.
    """

    def __init__(self, *, model: str = "mock-model") -> None:
        self.model = model
        self.requests: list[ChatRequest] = []

    def request(self, request: ChatRequest) -> Any:
        self.requests.append(request)
        if request.method == "GET":
            return {"object": "list", "data": [{"id": self.model, "owned_by": "castor"}]}
        text = self._reply(request.json or {})
        prompt_tokens = _count(request.json or {})
        completion_tokens = len(text.split())
        return {
            "id": "mock-completion",
            "object": "chat.completion",
            "model": (request.json or {}).get("model", self.model),
            "choices": [
                {
                    "index": 0,
                    "message": {"role": "assistant", "content": text},
                    "finish_reason": "stop",
                }
            ],
            "usage": {
                "prompt_tokens": prompt_tokens,
                "completion_tokens": completion_tokens,
                "total_tokens": prompt_tokens + completion_tokens,
            },
        }

    def stream(self, request: ChatRequest) -> _LineStream:
        self.requests.append(request)
        text = self._reply(request.json or {})
        words = text.split(" ")
        lines: list[str] = []
        for i, word in enumerate(words):
            piece = word if i == len(words) - 1 else f"{word} "
            lines.append(_sse({"choices": [{"index": 0, "delta": {"content": piece}}]}))
        lines.append(
            _sse({"choices": [{"index": 0, "delta": {}, "finish_reason": "stop"}]})
        )
        lines.append("data: [DONE]")
        return _LineStream(lines)

    def close(self) -> None:
        return None

    @staticmethod
    def _reply(payload: dict[str, Any]) -> str:
        for message in reversed(payload.get("messages") or []):
            if message.get("role") in ("user", "tool", "function"):
                content = message.get("content")
                if isinstance(content, list):
                    content = " ".join(
                        str(p.get("text", "")) for p in content if isinstance(p, dict)
                    )
                return f"echo: {str(content or '')[:100]}"
        return "echo: "


def _sse(payload: dict[str, Any]) -> str:
    return f"data: {json.dumps(payload)}"


def _count(payload: dict[str, Any]) -> int:
    return sum(
        len(str(m.get("content") or "").split()) for m in payload.get("messages") or []
    )
