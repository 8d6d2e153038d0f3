"""OpenAI Chat Completions dialect (also the base wire shape for xAI)."""

from __future__ import annotations

from functools import partial
from typing import TYPE_CHECKING, Any

from castor.models import (
    DriverCapabilities,
    FunctionCall,
    ModelDescriptor,
    Response,
    TokenUsage,
    ToolCall,
)
from castor.providers._utils import (
    capability_tags,
    data_url,
    normalize_finish,
    schema_name,
    stream_error,
    system_text,
    to_strict_schema,
    usage_from,
)
from castor.streaming import CallFragment, ChunkDelta, iter_sse_data
from castor.tools import format_for_wire
from castor.transport import ChatRequest

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Iterator, Mapping

    from castor.config import ProviderConfig
    from castor.models import Message
    from castor.options import Options

_VISION_MARKERS: tuple[str, ...] = ("gpt-4o", "gpt-4-turbo", "gpt-4.1", "gpt-5", "vision")


class OpenAIDialect:
    """OpenAI ``/chat/completions`` wire format."""

    name = "openai"

    def __init__(self, config: ProviderConfig) -> None:
        self.base_url = config.base_url
        self.timeout_s = config.timeout_s
        self._headers = {
            "Authorization": f"Bearer {config.api_key}",
            "Content-Type": "application/json",
            **config.extra_headers,
        }
        if config.organization:
            self._headers["OpenAI-Organization"] = config.organization

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
        }
        if options.temperature is not None:
            payload["temperature"] = options.temperature
        if options.top_p is not None:
            payload["top_p"] = options.top_p
        if options.max_tokens is not None:
            payload["max_tokens"] = options.max_tokens
        if options.stop:
            payload["stop"] = list(options.stop)

        if options.tools:
            payload["tools"] = format_for_wire(options.tools, style="openai_tools")
            if options.tool_choice is not None:
                payload["tool_choice"] = _tool_choice(options.tool_choice)
        elif options.functions:
            payload["functions"] = format_for_wire(
                options.functions, style="openai_functions"
            )
            if isinstance(options.tool_choice, dict) and "name" in options.tool_choice:
                payload["function_call"] = {"name": options.tool_choice["name"]}
            elif options.tool_choice in ("auto", "none"):
                payload["function_call"] = options.tool_choice

        schema = options.response_schema_json()
        if schema is not None:
            payload["response_format"] = {
                "type": "json_schema",
                "json_schema": {
                    "name": schema_name(options),
                    "schema": to_strict_schema(schema),
                    "strict": True,
                },
            }
        elif options.json_mode:
            payload["response_format"] = {"type": "json_object"}

        if stream:
            payload["stream"] = True
            payload["stream_options"] = {"include_usage": True}
        payload.update(options.extra)

        return ChatRequest(
            "POST",
            f"{self.base_url}/chat/completions",
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
            out.append(_format_message(m))
        return out

    def build_models_request(self) -> ChatRequest:
        return ChatRequest(
            "GET",
            f"{self.base_url}/models",
            headers=self._headers,
            timeout_s=self.timeout_s,
        )

    # -- responses ----------------------------------------------------------

    def parse_response(self, payload: Any, *, model: str) -> Response:
        choices = payload.get("choices")
        if not choices:
            raise ValueError(f"{self.name} response has no choices")
        choice = choices[0]
        message = choice["message"]

        tool_calls = tuple(
            ToolCall(
                id=tc["id"],
                name=tc["function"]["name"],
                arguments=tc["function"].get("arguments") or "",
            )
            for tc in message.get("tool_calls") or ()
        )
        function_call = None
        fc = message.get("function_call")
        if isinstance(fc, dict) and fc.get("name"):
            function_call = FunctionCall(fc["name"], fc.get("arguments") or "")

        finish = choice.get("finish_reason")
        if finish is None:
            finish = "tool_calls" if tool_calls else (
                "function_call" if function_call else "stop"
            )

        metadata = {
            k: payload[k]
            for k in ("id", "created", "system_fingerprint", "object")
            if k in payload
        }
        return Response(
            content=message.get("content") or "",
            role=message.get("role") or "assistant",
            finish_reason=normalize_finish(finish),  # type: ignore[arg-type]
            usage=_usage(payload.get("usage")) or TokenUsage(),
            model=payload.get("model") or model,
            provider=self.name,
            function_call=function_call,
            tool_calls=tool_calls,
            metadata=metadata,
        )

    def iter_chunks(self, lines: Iterable[str]) -> Iterator[Any]:
        return _merge_trailing_usage(iter_sse_data(lines))

    def chunk_parser(self) -> Callable[[Mapping[str, Any]], ChunkDelta]:
        return partial(parse_chunk, provider=self.name)

    def parse_models(self, payload: Any) -> list[ModelDescriptor]:
        models = [
            ModelDescriptor(
                id=item["id"],
                provider=self.name,
                owned_by=item.get("owned_by"),
                capabilities=capability_tags(self.capabilities(item["id"])),
                metadata={"created": item.get("created")},
            )
            for item in payload.get("data") or ()
            if isinstance(item, dict) and item.get("id")
        ]
        return sorted(models, key=lambda m: m.id)

    def capabilities(self, model: str) -> DriverCapabilities:
        return DriverCapabilities(
            streaming=True,
            function_calling=True,
            vision=any(marker in model for marker in _VISION_MARKERS),
            json_mode=True,
        )


def parse_chunk(chunk: Mapping[str, Any], *, provider: str = "openai") -> ChunkDelta:
    """Parse one ``chat.completion.chunk`` payload."""
    error = stream_error(chunk, provider=provider)
    if error is not None:
        raise error
    usage = _usage(chunk.get("usage"))
    choices = chunk.get("choices") or []
    if not choices:
        return ChunkDelta(usage=usage)
    choice = choices[0]
    delta = choice.get("delta") or {}

    fragments = tuple(
        CallFragment(
            index=tc.get("index", 0),
            id=tc.get("id"),
            name=(tc.get("function") or {}).get("name"),
            arguments=(tc.get("function") or {}).get("arguments") or "",
        )
        for tc in delta.get("tool_calls") or ()
    )
    function_fragment = None
    fc = delta.get("function_call")
    if isinstance(fc, dict):
        function_fragment = CallFragment(
            name=fc.get("name"), arguments=fc.get("arguments") or ""
        )

    finish = choice.get("finish_reason")
    return ChunkDelta(
        content=delta.get("content") or "",
        role=delta.get("role"),
        finish_reason=normalize_finish(finish) if finish is not None else None,
        usage=usage,
        tool_calls=fragments,
        function_call=function_fragment,
    )


def _merge_trailing_usage(chunks: Iterator[Any]) -> Iterator[Any]:
    """Fold the usage-only chunk sent after the finish chunk into it.

    With ``stream_options.include_usage`` the token counts arrive in a final
    chunk with an empty ``choices`` list, after the chunk that carries the
    finish reason.
    """
    for chunk in chunks:
        if not _has_finish(chunk):
            yield chunk
            continue
        trailing = next(chunks, None)
        if (
            isinstance(trailing, dict)
            and not trailing.get("choices")
            and isinstance(trailing.get("usage"), dict)
            and not chunk.get("usage")
        ):
            chunk = {**chunk, "usage": trailing["usage"]}
            trailing = None
        yield chunk
        if trailing is not None:
            yield trailing
        yield from chunks
        return


def _has_finish(chunk: Any) -> bool:
    if not isinstance(chunk, dict):
        return False
    choices = chunk.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return False
    return choices[0].get("finish_reason") is not None


def _usage(block: Any) -> Any:
    if not isinstance(block, dict):
        return None
    # Newer endpoints report input/output instead of prompt/completion.
    if "prompt_tokens" in block or "completion_tokens" in block:
        return usage_from(
            block,
            input_key="prompt_tokens",
            output_key="completion_tokens",
            total_key="total_tokens",
        )
    return usage_from(
        block, input_key="input_tokens", output_key="output_tokens", total_key="total_tokens"
    )


def _tool_choice(choice: Any) -> Any:
    if isinstance(choice, dict) and "name" in choice and "function" not in choice:
        return {"type": "function", "function": {"name": choice["name"]}}
    return choice


def _format_message(m: Message) -> dict[str, Any]:
    if m.role == "tool":
        return {"role": "tool", "tool_call_id": m.tool_call_id, "content": m.text}
    if m.role == "function":
        return {"role": "function", "name": m.name, "content": m.text}

    item: dict[str, Any] = {"role": m.role}
    if m.attachments:
        parts: list[dict[str, Any]] = []
        if m.text:
            parts.append({"type": "text", "text": m.text})
        parts.extend(
            {"type": "image_url", "image_url": {"url": data_url(a)}} for a in m.attachments
        )
        item["content"] = parts
    elif isinstance(m.content, tuple):
        item["content"] = [dict(part) for part in m.content]
    else:
        item["content"] = m.content

    if m.role == "assistant":
        if m.tool_calls:
            item["content"] = m.content or None
            item["tool_calls"] = [
                {
                    "id": tc.id,
                    "type": "function",
                    "function": {"name": tc.name, "arguments": tc.arguments or "{}"},
                }
                for tc in m.tool_calls
            ]
        elif m.function_call is not None:
            item["content"] = m.content or None
            item["function_call"] = {
                "name": m.function_call.name,
                "arguments": m.function_call.arguments or "{}",
            }
    if m.name and m.role in ("user", "assistant"):
        item["name"] = m.name
    return item
