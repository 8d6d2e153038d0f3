"""Streaming response assembly.

Provider dialects turn one native chunk into a ``ChunkDelta``; everything
after that is provider-agnostic. ``assemble_stream`` re-emits each chunk as an
immutable partial ``Response`` and, once a chunk carries a finish reason,
emits exactly one final ``Response`` built from the accumulated state.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
import json
import logging
import time
from typing import TYPE_CHECKING, Any

from castor.models import FunctionCall, Response, TokenUsage, ToolCall

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Iterator

log = logging.getLogger(__name__)

# Parser failures that mean "this chunk is not shaped like we expect".
_MALFORMED_CHUNK_ERRORS = (KeyError, IndexError, TypeError, ValueError, AttributeError)


@dataclass(frozen=True)
class CallFragment:
    """A piece of a function/tool call as it arrives in one chunk.

    ``index`` groups pieces of the same call; ``None`` marks a call that
    arrives whole and gets the next free slot.
    """

    index: int | None = 0
    id: str | None = None
    name: str | None = None
    arguments: str = ""


@dataclass(frozen=True)
class ChunkDelta:
    """The provider-neutral content of one streamed chunk."""

    content: str = ""
    role: str | None = None
    finish_reason: str | None = None
    usage: TokenUsage | None = None
    tool_calls: tuple[CallFragment, ...] = ()
    function_call: CallFragment | None = None


EMPTY_DELTA = ChunkDelta()


class StreamAssembler:
    """Accumulates deltas for one streaming call.

    The accumulator is private; every snapshot handed out is a fresh frozen
    ``Response``.
    """

    def __init__(self, *, provider: str, model: str) -> None:
        self.provider = provider
        self.model = model
        self.chunk_count = 0
        self.finish_reason: str | None = None
        self._parts: list[str] = []
        self._role = "assistant"
        self._usage: TokenUsage | None = None
        self._tool_calls: dict[int, dict[str, Any]] = {}
        self._function_name = ""
        self._function_args: list[str] = []

    @property
    def done(self) -> bool:
        return self.finish_reason is not None

    @property
    def content(self) -> str:
        return "".join(self._parts)

    def feed(self, delta: ChunkDelta) -> Response:
        """Record *delta* and return the partial snapshot for it."""
        index = self.chunk_count
        self.chunk_count += 1

        if delta.content:
            self._parts.append(delta.content)
        if delta.role:
            self._role = delta.role
        if delta.usage is not None:
            self._usage = delta.usage
        for fragment in delta.tool_calls:
            self._feed_tool_fragment(fragment)
        if delta.function_call is not None:
            if delta.function_call.name:
                self._function_name = delta.function_call.name
            if delta.function_call.arguments:
                self._function_args.append(delta.function_call.arguments)
        if delta.finish_reason is not None:
            self.finish_reason = delta.finish_reason

        return Response(
            content=delta.content,
            role=self._role,
            finish_reason=delta.finish_reason,
            usage=delta.usage or TokenUsage(),
            model=self.model,
            provider=self.provider,
            partial=True,
            metadata={"chunk_index": index},
        )

    def _feed_tool_fragment(self, fragment: CallFragment) -> None:
        index = fragment.index
        if index is None:
            index = max(self._tool_calls, default=-1) + 1
        entry = self._tool_calls.setdefault(
            index, {"id": None, "name": "", "arguments": []}
        )
        if fragment.id and not entry["id"]:
            entry["id"] = fragment.id
        if fragment.name:
            entry["name"] = fragment.name
        if fragment.arguments:
            entry["arguments"].append(fragment.arguments)

    def tool_calls(self) -> tuple[ToolCall, ...]:
        calls = []
        for idx in sorted(self._tool_calls):
            entry = self._tool_calls[idx]
            if not entry["name"]:
                continue
            calls.append(
                ToolCall(
                    id=entry["id"] or f"call_{idx}",
                    name=entry["name"],
                    arguments="".join(entry["arguments"]),
                )
            )
        return tuple(calls)

    def function_call(self) -> FunctionCall | None:
        if not self._function_name:
            return None
        return FunctionCall(self._function_name, "".join(self._function_args))

    def finalize(
        self, *, finish_reason: str | None = None, latency_ms: float | None = None
    ) -> Response:
        """Build the final response from everything fed so far."""
        finish = finish_reason or self.finish_reason or "stop"
        return Response(
            content=self.content,
            role=self._role,
            finish_reason=finish,  # type: ignore[arg-type]
            usage=self._usage or TokenUsage(),
            model=self.model,
            provider=self.provider,
            latency_ms=latency_ms,
            # Calls are only complete once the terminal chunk says so.
            tool_calls=self.tool_calls() if finish == "tool_calls" else (),
            function_call=self.function_call() if finish == "function_call" else None,
            metadata={"chunks": self.chunk_count},
        )


def _parse_safely(raw: Any, parse_chunk: Callable[[Mapping[str, Any]], ChunkDelta]) -> ChunkDelta:
    if not isinstance(raw, Mapping):
        log.debug("Skipping malformed stream chunk of type %s", type(raw).__name__)
        return EMPTY_DELTA
    try:
        return parse_chunk(raw)
    except _MALFORMED_CHUNK_ERRORS as exc:
        log.debug("Skipping malformed stream chunk: %s", exc)
        return EMPTY_DELTA


def assemble_stream(
    chunks: Iterable[Any],
    parse_chunk: Callable[[Mapping[str, Any]], ChunkDelta],
    *,
    provider: str,
    model: str,
    clock: Callable[[], float] = time.monotonic,
    started: float | None = None,
) -> Iterator[Response]:
    """Yield one partial ``Response`` per chunk, then one final ``Response``.

    Zero chunks yield nothing. Chunks that are not mappings or that the parser
    cannot read count as empty deltas. A stream that ends without a finish
    reason after producing chunks is closed out with ``finish_reason="error"``
    so callers can tell the output was cut short.
    """
    if started is None:
        started = clock()
    assembler = StreamAssembler(provider=provider, model=model)

    for raw in chunks:
        delta = _parse_safely(raw, parse_chunk)
        yield assembler.feed(delta)
        if assembler.done:
            break

    if assembler.chunk_count == 0:
        return
    finish_reason: str | None = None
    if not assembler.done:
        log.warning(
            "%s stream for %s ended after %d chunk(s) without a finish reason",
            provider,
            model,
            assembler.chunk_count,
        )
        finish_reason = "error"
    yield assembler.finalize(
        finish_reason=finish_reason, latency_ms=(clock() - started) * 1000.0
    )


# =============================================================================
# Line framing
# =============================================================================


def iter_sse_data(lines: Iterable[str]) -> Iterator[Any]:
    """Decode ``data:`` payloads from Server-Sent Events lines.

    Stops at the ``[DONE]`` sentinel. Payloads that are not valid JSON are
    yielded as ``None`` so the assembler can count them as malformed chunks.
    """
    for line in lines:
        line = line.strip()
        if not line.startswith("data:"):
            # Blank separators, comments and event:/id:/retry: fields.
            continue
        payload = line[len("data:") :].strip()
        if payload == "[DONE]":
            return
        if not payload:
            continue
        try:
            yield json.loads(payload)
        except json.JSONDecodeError:
            log.debug("Undecodable SSE payload: %.80s", payload)
            yield None


def iter_ndjson(lines: Iterable[str]) -> Iterator[Any]:
    """Decode newline-delimited JSON; undecodable lines are yielded as ``None``."""
    for line in lines:
        line = line.strip()
        if not line:
            continue
        try:
            yield json.loads(line)
        except json.JSONDecodeError:
            log.debug("Undecodable NDJSON line: %.80s", line)
            yield None
