"""Gemini ``generateContent`` dialect (REST, v1beta)."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

from castor.errors import ToolArgumentError
from castor.models import DriverCapabilities, ModelDescriptor, Response, TokenUsage, ToolCall
from castor.providers._utils import (
    b64,
    capability_tags,
    loads_object,
    stream_error,
    system_text,
    usage_from,
)
from castor.streaming import CallFragment, ChunkDelta, iter_sse_data
from castor.tools import format_for_wire, gemini_schema, parse_arguments
from castor.transport import ChatRequest

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Iterator, Mapping

    from castor.config import ProviderConfig
    from castor.models import Message
    from castor.options import Options

_FINISH_REASONS: dict[str, str] = {
    "STOP": "stop",
    "MAX_TOKENS": "length",
    "SAFETY": "content_filter",
    "RECITATION": "content_filter",
    "BLOCKLIST": "content_filter",
    "PROHIBITED_CONTENT": "content_filter",
    "SPII": "content_filter",
    "OTHER": "stop",
}

_TOOL_MODES: dict[str, str] = {"auto": "AUTO", "required": "ANY", "none": "NONE"}


def _bare_model(model: str) -> str:
    return model.removeprefix("models/")


def _finish(reason: Any, *, has_calls: bool) -> str:
    if has_calls:
        return "tool_calls"
    return _FINISH_REASONS.get(str(reason), "stop")


class GeminiDialect:
    """Google Generative Language REST wire format."""

    name = "gemini"

    def __init__(self, config: ProviderConfig) -> None:
        self.base_url = config.base_url
        self.timeout_s = config.timeout_s
        # Header auth keeps the key out of URLs (and out of logs).
        self._headers = {
            "x-goog-api-key": config.api_key or "",
            "Content-Type": "application/json",
            **config.extra_headers,
        }

    # -- requests -----------------------------------------------------------

    def build_chat_request(
        self,
        messages: list[Message],
        options: Options,
        *,
        model: str,
        stream: bool,
    ) -> ChatRequest:
        payload: dict[str, Any] = {"contents": self.format_messages(messages)}
        system = system_text(messages, options)
        if system:
            payload["systemInstruction"] = {"parts": [{"text": system}]}

        generation: dict[str, Any] = {}
        if options.temperature is not None:
            generation["temperature"] = options.temperature
        if options.top_p is not None:
            generation["topP"] = options.top_p
        if options.max_tokens is not None:
            generation["maxOutputTokens"] = options.max_tokens
        if options.stop:
            generation["stopSequences"] = list(options.stop)
        if options.wants_json:
            generation["responseMimeType"] = "application/json"
            schema = options.response_schema_json()
            if schema is not None:
                generation["responseSchema"] = gemini_schema(schema)
        if generation:
            payload["generationConfig"] = generation
        if options.safety_settings:
            payload["safetySettings"] = [
                {"category": category, "threshold": threshold}
                for category, threshold in options.safety_settings.items()
            ]

        definitions = options.definitions
        if definitions:
            payload["tools"] = format_for_wire(definitions, style="gemini")
            tool_config = _tool_config(options.tool_choice)
            if tool_config is not None:
                payload["toolConfig"] = tool_config
        payload.update(options.extra)

        action = "streamGenerateContent" if stream else "generateContent"
        return ChatRequest(
            "POST",
            f"{self.base_url}/models/{_bare_model(model)}:{action}",
            headers=self._headers,
            json=payload,
            params={"alt": "sse"} if stream else None,
            timeout_s=options.timeout_s or self.timeout_s,
        )

    def format_messages(self, messages: list[Message]) -> list[dict[str, Any]]:
        contents: list[dict[str, Any]] = []
        call_names: dict[str, str] = {}

        for m in messages:
            if m.role == "system":
                continue
            if m.role in ("tool", "function"):
                name = m.name or call_names.get(m.tool_call_id or "", "unknown_function")
                part = {
                    "functionResponse": {
                        "name": name,
                        "response": loads_object(m.text),
                    }
                }
                # Consecutive results share one user turn.
                if contents and contents[-1]["role"] == "user" and all(
                    "functionResponse" in p for p in contents[-1]["parts"]
                ):
                    contents[-1]["parts"].append(part)
                else:
                    contents.append({"role": "user", "parts": [part]})
                continue

            parts: list[dict[str, Any]] = []
            if m.text:
                parts.append({"text": m.text})
            for a in m.attachments:
                if a.url is not None:
                    parts.append({"fileData": {"mimeType": a.mime_type, "fileUri": a.url}})
                else:
                    parts.append(
                        {"inlineData": {"mimeType": a.mime_type, "data": b64(a.data or b"")}}
                    )
            calls = list(m.tool_calls)
            if m.function_call is not None:
                calls.append(ToolCall("", m.function_call.name, m.function_call.arguments))
            for call in calls:
                if call.id:
                    call_names[call.id] = call.name
                try:
                    args = parse_arguments(call.arguments)
                except ToolArgumentError:
                    args = {}
                parts.append({"functionCall": {"name": call.name, "args": args}})
            if parts:
                role = "model" if m.role == "assistant" else "user"
                contents.append({"role": role, "parts": parts})
        return contents

    def build_models_request(self) -> ChatRequest:
        return ChatRequest(
            "GET",
            f"{self.base_url}/models",
            headers=self._headers,
            params={"pageSize": "1000"},
            timeout_s=self.timeout_s,
        )

    # -- responses ----------------------------------------------------------

    def parse_response(self, payload: Any, *, model: str) -> Response:
        candidates = payload.get("candidates")
        usage = _usage(payload.get("usageMetadata")) or TokenUsage()
        if not candidates:
            feedback = payload.get("promptFeedback") or {}
            if feedback.get("blockReason"):
                return Response(
                    finish_reason="content_filter",
                    usage=usage,
                    model=model,
                    provider=self.name,
                    metadata={"block_reason": feedback["blockReason"]},
                )
            raise ValueError("gemini response has no candidates")

        candidate = candidates[0]
        text, calls = _read_parts(candidate.get("content") or {})
        tool_calls = tuple(
            ToolCall(id=call.id or f"call_{i}", name=call.name or "", arguments=call.arguments)
            for i, call in enumerate(calls)
        )
        metadata: dict[str, Any] = {}
        if "safetyRatings" in candidate:
            metadata["safety_ratings"] = candidate["safetyRatings"]
        if "modelVersion" in payload:
            metadata["model_version"] = payload["modelVersion"]
        return Response(
            content=text,
            finish_reason=_finish(  # type: ignore[arg-type]
                candidate.get("finishReason"), has_calls=bool(tool_calls)
            ),
            usage=usage,
            model=model,
            provider=self.name,
            tool_calls=tool_calls,
            metadata=metadata,
        )

    def iter_chunks(self, lines: Iterable[str]) -> Iterator[Any]:
        return iter_sse_data(lines)

    def chunk_parser(self) -> Callable[[Mapping[str, Any]], ChunkDelta]:
        saw_calls = False

        def parse(chunk: Mapping[str, Any]) -> ChunkDelta:
            nonlocal saw_calls
            error = stream_error(chunk, provider=self.name)
            if error is not None:
                raise error
            usage = _usage(chunk.get("usageMetadata"))
            candidates = chunk.get("candidates") or []
            if not candidates:
                return ChunkDelta(usage=usage)
            candidate = candidates[0]
            text, calls = _read_parts(candidate.get("content") or {})
            saw_calls = saw_calls or bool(calls)
            reason = candidate.get("finishReason")
            return ChunkDelta(
                content=text,
                role="assistant",
                # Function calls may arrive chunks before the STOP marker.
                finish_reason=_finish(reason, has_calls=saw_calls) if reason else None,
                usage=usage,
                tool_calls=tuple(calls),
            )

        return parse

    def parse_models(self, payload: Any) -> list[ModelDescriptor]:
        models: list[ModelDescriptor] = []
        for item in payload.get("models") or ():
            if not isinstance(item, dict) or not item.get("name"):
                continue
            methods = item.get("supportedGenerationMethods") or []
            if methods and "generateContent" not in methods:
                continue
            model_id = _bare_model(item["name"])
            models.append(
                ModelDescriptor(
                    id=model_id,
                    provider=self.name,
                    name=item.get("displayName") or model_id,
                    context_length=item.get("inputTokenLimit"),
                    capabilities=capability_tags(self.capabilities(model_id)),
                    metadata={
                        "description": item.get("description"),
                        "output_token_limit": item.get("outputTokenLimit"),
                    },
                )
            )
        return sorted(models, key=lambda m: m.id)

    def capabilities(self, model: str) -> DriverCapabilities:
        bare = _bare_model(model)
        legacy_text = bare == "gemini-pro" or bare.startswith("gemini-1.0-pro")
        return DriverCapabilities(
            streaming=True,
            function_calling=not bare.startswith("gemma"),
            vision=not legacy_text,
            json_mode=not legacy_text,
        )


def _read_parts(content: Mapping[str, Any]) -> tuple[str, list[CallFragment]]:
    texts: list[str] = []
    calls: list[CallFragment] = []
    for part in content.get("parts") or ():
        if part.get("thought"):
            continue
        if "text" in part:
            texts.append(part["text"])
        fc = part.get("functionCall")
        if isinstance(fc, dict):
            calls.append(
                CallFragment(
                    index=None,
                    id=fc.get("id"),
                    name=fc.get("name"),
                    arguments=json.dumps(fc.get("args") or {}),
                )
            )
    return "".join(texts), calls


def _usage(block: Any) -> TokenUsage | None:
    return usage_from(
        block,
        input_key="promptTokenCount",
        output_key="candidatesTokenCount",
        total_key="totalTokenCount",
    )


def _tool_config(choice: Any) -> dict[str, Any] | None:
    if isinstance(choice, str) and choice in _TOOL_MODES:
        return {"functionCallingConfig": {"mode": _TOOL_MODES[choice]}}
    if isinstance(choice, dict) and "name" in choice:
        return {
            "functionCallingConfig": {
                "mode": "ANY",
                "allowedFunctionNames": [choice["name"]],
            }
        }
    return None
