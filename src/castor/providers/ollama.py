"""Ollama ``/api/chat`` dialect (local models, NDJSON streaming)."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

from castor.errors import ToolArgumentError
from castor.models import DriverCapabilities, ModelDescriptor, Response, TokenUsage, ToolCall
from castor.providers._utils import b64, capability_tags, stream_error, system_text
from castor.streaming import CallFragment, ChunkDelta, iter_ndjson
from castor.tools import format_for_wire, parse_arguments
from castor.transport import ChatRequest

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Iterator, Mapping

    from castor.config import ProviderConfig
    from castor.models import Message
    from castor.options import Options

_VISION_FAMILIES: tuple[str, ...] = ("llava", "bakllava", "moondream", "vision", "gemma3")


def _finish(reason: Any, *, has_calls: bool) -> str:
    if has_calls:
        return "tool_calls"
    return "length" if reason == "length" else "stop"


class OllamaDialect:
    """Ollama chat API; no authentication."""

    name = "ollama"

    def __init__(self, config: ProviderConfig) -> None:
        self.base_url = config.base_url
        self.timeout_s = config.timeout_s
        self._headers = {"Content-Type": "application/json", **config.extra_headers}

    # -- requests -----------------------------------------------------------

    def build_chat_request(
        self,
        messages: list[Message],
        options: Options,
        *,
        model: str,
        stream: bool,
    ) -> ChatRequest:
        payload: dict[str, Any] = {
            "model": model,
            "messages": self.format_messages(messages, options),
            "stream": stream,
        }
        model_options: dict[str, Any] = {}
        if options.temperature is not None:
            model_options["temperature"] = options.temperature
        if options.top_p is not None:
            model_options["top_p"] = options.top_p
        if options.max_tokens is not None:
            model_options["num_predict"] = options.max_tokens
        if options.stop:
            model_options["stop"] = list(options.stop)
        if model_options:
            payload["options"] = model_options

        schema = options.response_schema_json()
        if schema is not None:
            payload["format"] = schema
        elif options.json_mode:
            payload["format"] = "json"

        definitions = options.definitions
        if definitions:
            payload["tools"] = format_for_wire(definitions, style="openai_tools")
        payload.update(options.extra)

        return ChatRequest(
            "POST",
            f"{self.base_url}/api/chat",
            headers=self._headers,
            json=payload,
            timeout_s=options.timeout_s or self.timeout_s,
        )

    def format_messages(
        self, messages: list[Message], options: Options
    ) -> list[dict[str, Any]]:
        out: list[dict[str, Any]] = []
        system = system_text(messages, options)
        if system:
            out.append({"role": "system", "content": system})
        for m in messages:
            if m.role == "system":
                continue
            if m.role in ("tool", "function"):
                item: dict[str, Any] = {"role": "tool", "content": m.text}
                if m.name:
                    item["tool_name"] = m.name
                out.append(item)
                continue
            item = {"role": m.role, "content": m.text}
            images = [b64(a.data) for a in m.attachments if a.data is not None]
            if images:
                item["images"] = images
            calls = list(m.tool_calls)
            if m.function_call is not None:
                calls.append(ToolCall("", m.function_call.name, m.function_call.arguments))
            if calls:
                item["tool_calls"] = [
                    {"function": {"name": c.name, "arguments": _arguments(c.arguments)}}
                    for c in calls
                ]
            out.append(item)
        return out

    def build_models_request(self) -> ChatRequest:
        return ChatRequest(
            "GET", f"{self.base_url}/api/tags", headers=self._headers, timeout_s=self.timeout_s
        )

    # -- responses ----------------------------------------------------------

    def parse_response(self, payload: Any, *, model: str) -> Response:
        message = payload["message"]
        tool_calls = tuple(
            ToolCall(id=f"call_{i}", name=call.name or "", arguments=call.arguments)
            for i, call in enumerate(_read_calls(message))
        )
        return Response(
            content=message.get("content") or "",
            role=message.get("role") or "assistant",
            finish_reason=_finish(  # type: ignore[arg-type]
                payload.get("done_reason"), has_calls=bool(tool_calls)
            ),
            usage=_usage(payload) or TokenUsage(),
            model=payload.get("model") or model,
            provider=self.name,
            tool_calls=tool_calls,
            metadata=_timings(payload),
        )

    def iter_chunks(self, lines: Iterable[str]) -> Iterator[Any]:
        return iter_ndjson(lines)

    def chunk_parser(self) -> Callable[[Mapping[str, Any]], ChunkDelta]:
        saw_calls = False

        def parse(chunk: Mapping[str, Any]) -> ChunkDelta:
            nonlocal saw_calls
            error = stream_error(chunk, provider=self.name)
            if error is not None:
                raise error
            message = chunk.get("message") or {}
            calls = _read_calls(message)
            saw_calls = saw_calls or bool(calls)
            done = bool(chunk.get("done"))
            return ChunkDelta(
                content=message.get("content") or "",
                role=message.get("role"),
                # Tool calls arrive whole in a non-final chunk; the done chunk
                # only says "stop".
                finish_reason=(
                    _finish(chunk.get("done_reason"), has_calls=saw_calls) if done else None
                ),
                usage=_usage(chunk) if done else None,
                tool_calls=tuple(calls),
            )

        return parse

    def parse_models(self, payload: Any) -> list[ModelDescriptor]:
        models: list[ModelDescriptor] = []
        for item in payload.get("models") or ():
            if not isinstance(item, dict):
                continue
            model_id = item.get("model") or item.get("name")
            if not model_id:
                continue
            details = item.get("details") or {}
            models.append(
                ModelDescriptor(
                    id=model_id,
                    provider=self.name,
                    name=item.get("name") or model_id,
                    capabilities=capability_tags(self.capabilities(model_id)),
                    metadata={
                        "size": item.get("size"),
                        "family": details.get("family"),
                        "parameter_size": details.get("parameter_size"),
                        "quantization_level": details.get("quantization_level"),
                        "modified_at": item.get("modified_at"),
                    },
                )
            )
        return sorted(models, key=lambda m: m.id)

    def capabilities(self, model: str) -> DriverCapabilities:
        return DriverCapabilities(
            streaming=True,
            function_calling=True,
            vision=any(family in model for family in _VISION_FAMILIES),
            json_mode=True,
        )


def _read_calls(message: Mapping[str, Any]) -> list[CallFragment]:
    calls: list[CallFragment] = []
    for tc in message.get("tool_calls") or ():
        fn = tc.get("function") or {}
        args = fn.get("arguments")
        # Ollama sends decoded objects; callers expect the raw JSON text.
        raw = args if isinstance(args, str) else json.dumps(args or {})
        calls.append(CallFragment(index=None, name=fn.get("name"), arguments=raw))
    return calls


def _arguments(raw: str) -> dict[str, Any]:
    try:
        return parse_arguments(raw)
    except ToolArgumentError:
        return {}


def _usage(payload: Mapping[str, Any]) -> TokenUsage | None:
    if "prompt_eval_count" not in payload and "eval_count" not in payload:
        return None
    return TokenUsage.of(payload.get("prompt_eval_count"), payload.get("eval_count"))


def _timings(payload: Mapping[str, Any]) -> dict[str, Any]:
    return {
        k: payload[k]
        for k in ("total_duration", "load_duration", "eval_duration", "created_at")
        if k in payload
    }
