"""Function/tool orchestration: validation, wire shapes, execution, continuation."""

from __future__ import annotations

from dataclasses import dataclass

from pydantic import BaseModel
import pytest

from castor.errors import ToolArgumentError
from castor.models import FunctionCall, Message, Response, ToolCall
from castor.tools import (
    EMPTY_RESULT_PLACEHOLDER,
    continuation_messages,
    execute_calls,
    extract_calls,
    format_for_wire,
    parse_arguments,
    result_messages,
    serialize_result,
    validate_definition,
    validate_definitions,
)

pytestmark = pytest.mark.unit

WEATHER = {
    "name": "get_weather",
    "description": "Current weather for a city",
    "parameters": {
        "type": "object",
        "properties": {"city": {"type": "string"}},
        "required": ["city"],
        "additionalProperties": False,
    },
}


# =============================================================================
# Validation
# =============================================================================


def test_valid_definition_has_no_problems() -> None:
    assert validate_definition(WEATHER) == []
    assert validate_definition({"type": "function", "function": WEATHER}) == []


def test_problems_are_reported_in_check_order() -> None:
    problems = validate_definition(
        {"name": "bad name!", "parameters": {"type": "array", "required": "city"}}
    )

    assert problems == [
        "Function name can only contain letters, numbers, underscores, and hyphens",
        "Function description is required",
        'Parameters type must be "object"',
        "Parameters required must be a list",
    ]


@pytest.mark.parametrize(
    ("definition", "expected"),
    [
        ({"description": "x"}, "Function name is required"),
        ({"name": "  ", "description": "x"}, "Function name must be a non-empty string"),
        ({"name": "f", "description": ""}, "Function description must be a non-empty string"),
        ({"name": "f", "description": "x", "parameters": []}, "Function parameters must be a mapping"),
        ({"name": "f", "description": "x", "parameters": {}}, "Parameters must have a type"),
        (
            {"name": "f", "description": "x", "parameters": {"type": "object", "properties": []}},
            "Parameters properties must be a mapping",
        ),
    ],
)
def test_single_problem_messages(definition: dict, expected: str) -> None:
    assert validate_definition(definition) == [expected]


def test_validate_definitions_prefixes_index() -> None:
    problems = validate_definitions([WEATHER, {"name": "f"}, "nope"])  # type: ignore[list-item]

    assert problems == [
        "[1] Function description is required",
        "[2] Function definition must be a mapping",
    ]


# =============================================================================
# Wire formatting
# =============================================================================


def test_openai_tool_and_function_styles() -> None:
    tools = format_for_wire([WEATHER], style="openai_tools")
    functions = format_for_wire([WEATHER], style="openai_functions")

    assert tools == [{"type": "function", "function": functions[0]}]
    assert functions[0]["name"] == "get_weather"
    assert functions[0]["parameters"]["required"] == ["city"]


def test_gemini_style_strips_unsupported_schema_keys() -> None:
    no_params = {"name": "ping", "description": "Ping"}

    wire = format_for_wire([WEATHER, no_params], style="gemini")

    assert len(wire) == 1
    first, second = wire[0]["functionDeclarations"]
    assert "additionalProperties" not in first["parameters"]
    assert first["parameters"]["properties"] == {"city": {"type": "string"}}
    assert "parameters" not in second


def test_unknown_style_is_rejected() -> None:
    with pytest.raises(ValueError, match="Unknown wire style"):
        format_for_wire([WEATHER], style="anthropic")  # type: ignore[arg-type]


# =============================================================================
# Extraction and arguments
# =============================================================================


def test_extract_calls() -> None:
    tool = ToolCall("call_1", "get_weather", '{"city": "Oslo"}')
    legacy = FunctionCall("get_weather", "{}")

    assert extract_calls(Response(tool_calls=(tool,), finish_reason="tool_calls")) == [tool]
    assert extract_calls(Response(function_call=legacy, finish_reason="function_call")) == [legacy]
    assert extract_calls(Response(content="plain")) == []


@pytest.mark.parametrize(
    ("raw", "expected"),
    [(None, {}), ("", {}), ("   ", {}), ('{"a": 1}', {"a": 1}), ({"b": 2}, {"b": 2})],
)
def test_parse_arguments(raw, expected) -> None:
    assert parse_arguments(raw) == expected


@pytest.mark.parametrize("raw", ["{not json", "[1, 2]", '"text"'])
def test_parse_arguments_rejects_non_objects(raw: str) -> None:
    with pytest.raises(ToolArgumentError):
        parse_arguments(raw)


# =============================================================================
# Execution
# =============================================================================


class Forecast(BaseModel):
    city: str
    temp_c: float


@dataclass
class Reading:
    value: int


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ("sunny", "sunny"),
        ({"temp": 21}, '{"temp": 21}'),
        ([1, 2], "[1, 2]"),
        (None, "null"),
        (Reading(3), '{"value": 3}'),
        (Forecast(city="Oslo", temp_c=4.5), '{"city":"Oslo","temp_c":4.5}'),
        (42, "42"),
        (True, "True"),
    ],
)
def test_serialize_result(value, expected: str) -> None:
    assert serialize_result(value) == expected


def test_batch_with_one_failure_returns_every_result() -> None:
    calls = [
        ToolCall("c1", "add", '{"a": 1, "b": 2}'),
        ToolCall("c2", "explode", "{}"),
        ToolCall("c3", "add", '{"a": 5, "b": 5}'),
    ]

    def executor(name: str, args: dict) -> int:
        if name == "explode":
            raise RuntimeError("kaboom")
        return args["a"] + args["b"]

    results = execute_calls(calls, executor)

    assert len(results) == 3
    assert [r.success for r in results] == [True, False, True]
    assert [r.output for r in results] == ["3", "Error: kaboom", "10"]
    assert results[1].error == "kaboom"
    assert [r.call_id for r in results] == ["c1", "c2", "c3"]


def test_bad_arguments_and_missing_executor_are_failures() -> None:
    bad_args = execute_calls([ToolCall("c1", "add", "{oops")], lambda n, a: 0)
    no_executor = execute_calls([FunctionCall("lookup", "{}")], None)

    assert bad_args[0].success is False
    assert bad_args[0].output.startswith("Error: Invalid JSON in function arguments")
    assert no_executor[0].success is False
    assert no_executor[0].error == "No executor available for function 'lookup'"
    assert no_executor[0].call_id is None


# =============================================================================
# Continuation
# =============================================================================


def test_result_messages_by_call_style() -> None:
    results = execute_calls(
        [ToolCall("c1", "noop", ""), FunctionCall("legacy", "")],
        lambda name, args: "" if name == "noop" else "done",
    )

    tool_msg, fn_msg = result_messages(results)

    assert tool_msg.role == "tool"
    assert tool_msg.tool_call_id == "c1"
    assert tool_msg.content == EMPTY_RESULT_PLACEHOLDER
    assert fn_msg.role == "function"
    assert fn_msg.name == "legacy"
    assert fn_msg.content == "done"


def test_continuation_appends_assistant_turn_then_results() -> None:
    history = [Message.user("Weather in Oslo?")]
    call = ToolCall("c1", "get_weather", '{"city": "Oslo"}')
    response = Response(tool_calls=(call,), finish_reason="tool_calls")
    results = execute_calls([call], lambda name, args: {"temp": 4})

    out = continuation_messages(history, response, results)

    assert [m.role for m in out] == ["user", "assistant", "tool"]
    assert out[1].tool_calls == (call,)
    assert out[2].content == '{"temp": 4}'
    assert history == [Message.user("Weather in Oslo?")]
