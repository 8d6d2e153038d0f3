"""Shared utilities for provider dialects."""

from __future__ import annotations

import base64
from copy import deepcopy
from dataclasses import replace
import json
from typing import TYPE_CHECKING, Any

from castor.classify import classify, to_provider_error
from castor.errors import ConfigurationError
from castor.models import FINISH_REASONS, TokenUsage

if TYPE_CHECKING:
    from collections.abc import Mapping

    from castor.errors import ProviderError
    from castor.models import Attachment, DriverCapabilities, Message
    from castor.options import Options


def to_strict_schema(schema: dict[str, Any]) -> dict[str, Any]:
    """Normalize a JSON schema for strict structured-output requirements.

    Ensures that for all 'object' types:
    1. additionalProperties is False
    2. All defined properties are listed in 'required'
    """
    normalized = deepcopy(schema)

    def walk(node: Any) -> Any:
        if isinstance(node, list):
            return [walk(item) for item in node]
        if not isinstance(node, dict):
            return node

        updated = {key: walk(value) for key, value in node.items()}
        if updated.get("type") == "object" or "properties" in updated:
            properties = updated.get("properties", {})
            if isinstance(properties, dict):
                updated["additionalProperties"] = False
                if "required" not in updated:
                    updated["required"] = list(properties.keys())
        return updated

    result = walk(normalized)
    if not isinstance(result, dict):
        raise ConfigurationError("Invalid response_schema: expected object schema")
    return result


def schema_name(options: Options) -> str:
    """Name used for json_schema response formats."""
    schema = options.response_schema
    if isinstance(schema, type):
        return schema.__name__
    if isinstance(schema, dict) and isinstance(schema.get("title"), str):
        return schema["title"]
    return "structured_output"


def b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def data_url(attachment: Attachment) -> str:
    """Inline bytes as a ``data:`` URL; remote attachments pass through."""
    if attachment.url is not None:
        return attachment.url
    return f"data:{attachment.mime_type};base64,{b64(attachment.data or b'')}"


def system_text(messages: list[Message], options: Options) -> str | None:
    """Merge ``Options.system_instruction`` with any system messages."""
    parts = [options.system_instruction] if options.system_instruction else []
    parts.extend(m.text for m in messages if m.role == "system" and m.text)
    return "\n\n".join(parts) if parts else None


def normalize_finish(reason: Any, *, has_calls: bool = False) -> str:
    """Map a provider finish reason onto the shared set."""
    if has_calls:
        return "tool_calls"
    if isinstance(reason, str) and reason in FINISH_REASONS:
        return reason
    return "stop"


def usage_from(
    block: Mapping[str, Any] | None, *, input_key: str, output_key: str, total_key: str
) -> TokenUsage | None:
    """Read a provider usage block; None when the provider sent nothing."""
    if not isinstance(block, dict):
        return None
    return TokenUsage.of(block.get(input_key), block.get(output_key), block.get(total_key))


def loads_object(text: str) -> dict[str, Any]:
    """Parse *text* as a JSON object, wrapping anything else."""
    try:
        value = json.loads(text)
    except (TypeError, ValueError):
        return {"content": text}
    return value if isinstance(value, dict) else {"content": value}


def capability_tags(caps: DriverCapabilities) -> tuple[str, ...]:
    """Names of the enabled flags, for ``ModelDescriptor.capabilities``."""
    return tuple(name for name, enabled in caps.as_dict().items() if enabled)


def stream_error(chunk: Mapping[str, Any], *, provider: str) -> ProviderError | None:
    """Typed error for an ``{"error": ...}`` payload sent inside an open stream."""
    error = chunk.get("error")
    if not error:
        return None
    if not isinstance(error, dict):
        return to_provider_error(str(error), provider=provider)
    code = error.get("code")
    status_code = code if isinstance(code, int) else None
    message = str(
        error.get("message") or error.get("status") or error.get("type") or "stream error"
    )
    # Type and status names ("server_error", "RESOURCE_EXHAUSTED") carry the kind.
    text = " ".join(
        str(part) for part in (error.get("type"), error.get("status"), message) if part
    )
    classification = replace(classify(text, status_code=status_code), message=message)
    return to_provider_error(message, provider=provider, classification=classification)
