"""Function/tool call orchestration.

Validation, wire formatting, extraction and execution are separate steps:
formatting never validates, and execution never raises for a single failing
call. Drivers use these to implement ``continue_with_results`` and
``conversation_with_functions``.
"""

from __future__ import annotations

from collections.abc import Mapping
import dataclasses
import json
import logging
import re
from typing import TYPE_CHECKING, Any, Literal

from pydantic import BaseModel

from castor.errors import ToolArgumentError
from castor.models import ExecutionResult, FunctionCall, Message, ToolCall

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Sequence

    from castor.models import Response

log = logging.getLogger(__name__)

WireStyle = Literal["openai_functions", "openai_tools", "gemini"]

_NAME_RE = re.compile(r"^[A-Za-z0-9_-]+$")

EMPTY_RESULT_PLACEHOLDER = "Function executed successfully"


# =============================================================================
# Validation
# =============================================================================


def normalize_definition(definition: Mapping[str, Any]) -> Mapping[str, Any]:
    """Unwrap ``{"type": "function", "function": {...}}`` to the flat form."""
    inner = definition.get("function")
    if definition.get("type") == "function" and isinstance(inner, Mapping):
        return inner
    return definition


def validate_definition(definition: Mapping[str, Any]) -> list[str]:
    """Return validation problems for one function definition, in check order.

    An empty list means the definition is usable.
    """
    if not isinstance(definition, Mapping):
        return ["Function definition must be a mapping"]
    d = normalize_definition(definition)
    errors: list[str] = []

    if "name" not in d:
        errors.append("Function name is required")
    elif not isinstance(d["name"], str) or not d["name"].strip():
        errors.append("Function name must be a non-empty string")
    elif not _NAME_RE.match(d["name"]):
        errors.append(
            "Function name can only contain letters, numbers, underscores, and hyphens"
        )

    if "description" not in d:
        errors.append("Function description is required")
    elif not isinstance(d["description"], str) or not d["description"].strip():
        errors.append("Function description must be a non-empty string")

    if "parameters" in d:
        params = d["parameters"]
        if not isinstance(params, Mapping):
            errors.append("Function parameters must be a mapping")
        else:
            if "type" not in params:
                errors.append("Parameters must have a type")
            elif params["type"] != "object":
                errors.append('Parameters type must be "object"')
            if "properties" in params and not isinstance(params["properties"], Mapping):
                errors.append("Parameters properties must be a mapping")
            if "required" in params and not isinstance(params["required"], list):
                errors.append("Parameters required must be a list")

    return errors


def validate_definitions(definitions: Iterable[Mapping[str, Any]]) -> list[str]:
    """Validate several definitions; messages are prefixed with their index."""
    problems: list[str] = []
    for i, definition in enumerate(definitions):
        problems.extend(f"[{i}] {msg}" for msg in validate_definition(definition))
    return problems


# =============================================================================
# Wire formatting
# =============================================================================


def _function_body(definition: Mapping[str, Any]) -> dict[str, Any]:
    d = normalize_definition(definition)
    body: dict[str, Any] = {"name": d.get("name")}
    if "description" in d:
        body["description"] = d["description"]
    body["parameters"] = d.get("parameters") or {"type": "object", "properties": {}}
    return body


def format_for_wire(
    definitions: Iterable[Mapping[str, Any]], *, style: WireStyle
) -> list[dict[str, Any]]:
    """Render definitions in a provider's native shape. Does not validate."""
    bodies = [_function_body(d) for d in definitions]
    if style == "openai_functions":
        return bodies
    if style == "openai_tools":
        return [{"type": "function", "function": body} for body in bodies]
    if style == "gemini":
        return [{"functionDeclarations": [_gemini_declaration(b) for b in bodies]}]
    raise ValueError(f"Unknown wire style: {style!r}")


# Gemini rejects JSON-schema keys outside its OpenAPI subset.
_GEMINI_UNSUPPORTED_KEYS = frozenset({"additionalProperties", "$schema", "strict"})


def gemini_schema(schema: Any) -> Any:
    if isinstance(schema, Mapping):
        return {
            k: gemini_schema(v)
            for k, v in schema.items()
            if k not in _GEMINI_UNSUPPORTED_KEYS
        }
    if isinstance(schema, list):
        return [gemini_schema(v) for v in schema]
    return schema


def _gemini_declaration(body: dict[str, Any]) -> dict[str, Any]:
    decl = dict(body)
    params = decl.get("parameters")
    if isinstance(params, Mapping) and not params.get("properties"):
        # Gemini refuses an object schema with no properties.
        decl.pop("parameters")
    else:
        decl["parameters"] = gemini_schema(params)
    return decl


# =============================================================================
# Extraction and execution
# =============================================================================


def extract_calls(response: Response) -> list[FunctionCall | ToolCall]:
    """Return the calls a final response asks for (possibly none)."""
    if response.tool_calls:
        return list(response.tool_calls)
    if response.function_call is not None:
        return [response.function_call]
    return []


def parse_arguments(raw: str | Mapping[str, Any] | None) -> dict[str, Any]:
    """Parse a call's raw argument text into a dict.

    Empty text means "no arguments". Anything that is not a JSON object raises
    ``ToolArgumentError``.
    """
    if raw is None:
        return {}
    if isinstance(raw, Mapping):
        return dict(raw)
    if not raw.strip():
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ToolArgumentError(
            f"Invalid JSON in function arguments: {exc.msg}",
            hint="The model produced malformed arguments; retry or tighten the schema.",
        ) from exc
    if not isinstance(value, dict):
        raise ToolArgumentError(
            f"Function arguments must be a JSON object, got {type(value).__name__}"
        )
    return value


def serialize_result(value: Any) -> str:
    """Canonical string form of an executor's return value."""
    if isinstance(value, str):
        return value
    if isinstance(value, BaseModel):
        return value.model_dump_json()
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return json.dumps(dataclasses.asdict(value), default=str)
    if isinstance(value, Mapping):
        return json.dumps(dict(value), default=str)
    if value is None or isinstance(value, (list, tuple)):
        return json.dumps(value, default=str)
    return str(value)


def execute_calls(
    calls: Sequence[FunctionCall | ToolCall],
    executor: Callable[[str, dict[str, Any]], Any] | None,
) -> list[ExecutionResult]:
    """Run every call through *executor*; one failure never aborts the batch."""
    results: list[ExecutionResult] = []
    for call in calls:
        results.append(_execute_one(call, executor))
    return results


def _execute_one(
    call: FunctionCall | ToolCall,
    executor: Callable[[str, dict[str, Any]], Any] | None,
) -> ExecutionResult:
    if executor is None:
        return _failed(call, f"No executor available for function '{call.name}'")
    try:
        arguments = parse_arguments(call.arguments)
    except ToolArgumentError as exc:
        return _failed(call, str(exc))
    try:
        value = executor(call.name, arguments)
    except Exception as exc:
        log.info("Function '%s' raised %s", call.name, type(exc).__name__)
        return _failed(call, str(exc) or type(exc).__name__)
    return ExecutionResult(call=call, success=True, output=serialize_result(value))


def _failed(call: FunctionCall | ToolCall, message: str) -> ExecutionResult:
    return ExecutionResult(
        call=call, success=False, output=f"Error: {message}", error=message
    )


# =============================================================================
# Continuation
# =============================================================================


def result_messages(results: Iterable[ExecutionResult]) -> list[Message]:
    """One function/tool result message per execution result."""
    messages: list[Message] = []
    for result in results:
        content = result.output or EMPTY_RESULT_PLACEHOLDER
        if isinstance(result.call, ToolCall):
            messages.append(
                Message.tool_result(result.call.id, content, name=result.call.name)
            )
        else:
            messages.append(Message.function_result(result.call.name, content))
    return messages


def continuation_messages(
    messages: Sequence[Message],
    response: Response,
    results: Iterable[ExecutionResult],
) -> list[Message]:
    """History to send after executing *response*'s calls."""
    return [*messages, response.to_message(), *result_messages(results)]
