"""Domain models shared by drivers, the stream assembler and the tool layer."""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Literal

from castor.errors import ConfigurationError

if TYPE_CHECKING:
    from collections.abc import Mapping

    from castor.pricing import CostBreakdown

Role = Literal["system", "user", "assistant", "function", "tool"]
FinishReason = Literal[
    "stop", "length", "content_filter", "function_call", "tool_calls", "error"
]

_ROLES: frozenset[str] = frozenset({"system", "user", "assistant", "function", "tool"})
FINISH_REASONS: frozenset[str] = frozenset(
    {"stop", "length", "content_filter", "function_call", "tool_calls", "error"}
)


def _freeze(mapping: Mapping[str, Any] | None) -> Mapping[str, Any]:
    if isinstance(mapping, MappingProxyType):
        return mapping
    return MappingProxyType(dict(mapping or {}))


@dataclass(frozen=True)
class Attachment:
    """Binary or remote content attached to a message (images, documents)."""

    mime_type: str
    data: bytes | None = None
    url: str | None = None

    def __post_init__(self) -> None:
        """Exactly one of data/url must be present."""
        if (self.data is None) == (self.url is None):
            raise ConfigurationError(
                "Attachment needs exactly one of data= or url=",
                hint="Pass raw bytes via data=... or a remote reference via url=...",
            )


@dataclass(frozen=True)
class FunctionCall:
    """A legacy single function call requested by the model."""

    name: str
    arguments: str = ""


@dataclass(frozen=True)
class ToolCall:
    """A tool call requested by the model; ``id`` correlates the result."""

    id: str
    name: str
    arguments: str = ""


@dataclass(frozen=True)
class Message:
    """A conversational turn. Immutable once constructed."""

    role: Role
    content: str | tuple[Mapping[str, Any], ...] = ""
    attachments: tuple[Attachment, ...] = ()
    tool_calls: tuple[ToolCall, ...] = ()
    function_call: FunctionCall | None = None
    tool_call_id: str | None = None
    name: str | None = None

    def __post_init__(self) -> None:
        """Validate role and normalize sequences to tuples."""
        if self.role not in _ROLES:
            raise ConfigurationError(
                f"Unknown message role: {self.role!r}",
                hint="Use one of: system, user, assistant, function, tool.",
            )
        if isinstance(self.content, list):
            object.__setattr__(self, "content", tuple(self.content))
        if isinstance(self.attachments, list):
            object.__setattr__(self, "attachments", tuple(self.attachments))
        if isinstance(self.tool_calls, list):
            object.__setattr__(self, "tool_calls", tuple(self.tool_calls))
        if self.role == "tool" and not self.tool_call_id:
            raise ConfigurationError(
                "tool messages require tool_call_id",
                hint="Use Message.tool_result(call_id, content).",
            )

    @property
    def text(self) -> str:
        """Plain-text view of the content (text parts joined)."""
        if isinstance(self.content, str):
            return self.content
        return "".join(
            str(part.get("text", "")) for part in self.content if part.get("type") == "text"
        )

    @classmethod
    def user(cls, content: str, *, attachments: tuple[Attachment, ...] = ()) -> Message:
        return cls(role="user", content=content, attachments=attachments)

    @classmethod
    def system(cls, content: str) -> Message:
        return cls(role="system", content=content)

    @classmethod
    def assistant(
        cls,
        content: str = "",
        *,
        tool_calls: tuple[ToolCall, ...] = (),
        function_call: FunctionCall | None = None,
    ) -> Message:
        return cls(
            role="assistant",
            content=content,
            tool_calls=tool_calls,
            function_call=function_call,
        )

    @classmethod
    def function_result(cls, name: str, content: str) -> Message:
        return cls(role="function", content=content, name=name)

    @classmethod
    def tool_result(cls, tool_call_id: str, content: str, *, name: str | None = None) -> Message:
        return cls(role="tool", content=content, tool_call_id=tool_call_id, name=name)


@dataclass(frozen=True)
class TokenUsage:
    """Token counts for one call."""

    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0

    @classmethod
    def of(
        cls, input_tokens: int | None, output_tokens: int | None, total: int | None = None
    ) -> TokenUsage:
        """Build usage, deriving the total when the provider omits it."""
        inp = int(input_tokens or 0)
        out = int(output_tokens or 0)
        return cls(inp, out, int(total) if total is not None else inp + out)


@dataclass(frozen=True)
class Response:
    """One provider response: a final result or a streaming partial snapshot."""

    content: str = ""
    role: str = "assistant"
    finish_reason: FinishReason | None = None
    usage: TokenUsage = field(default_factory=TokenUsage)
    model: str = ""
    provider: str = ""
    cost: CostBreakdown | None = None
    latency_ms: float | None = None
    function_call: FunctionCall | None = None
    tool_calls: tuple[ToolCall, ...] = ()
    partial: bool = False
    #: Provider-specific fields that have no first-class slot above.
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Freeze metadata and normalize tool calls."""
        object.__setattr__(self, "metadata", _freeze(self.metadata))
        if isinstance(self.tool_calls, list):
            object.__setattr__(self, "tool_calls", tuple(self.tool_calls))

    @property
    def has_calls(self) -> bool:
        return bool(self.tool_calls) or self.function_call is not None

    def to_message(self) -> Message:
        """Return the assistant turn that produced this response."""
        return Message.assistant(
            self.content,
            tool_calls=self.tool_calls,
            function_call=self.function_call,
        )


@dataclass(frozen=True)
class ModelDescriptor:
    """A model offered by a provider."""

    id: str
    provider: str
    name: str = ""
    owned_by: str | None = None
    context_length: int | None = None
    capabilities: tuple[str, ...] = ()
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.name:
            object.__setattr__(self, "name", self.id)
        object.__setattr__(self, "metadata", _freeze(self.metadata))


@dataclass(frozen=True)
class DriverCapabilities:
    """Feature flags a driver reports for a model."""

    streaming: bool
    function_calling: bool
    vision: bool = False
    json_mode: bool = False

    def as_dict(self) -> dict[str, bool]:
        return {
            "streaming": self.streaming,
            "function_calling": self.function_calling,
            "vision": self.vision,
            "json_mode": self.json_mode,
        }


@dataclass(frozen=True)
class CredentialCheck:
    """Outcome of ``Driver.validate_credentials``."""

    valid: bool
    provider: str
    details: Mapping[str, Any] = field(default_factory=dict)
    errors: tuple[str, ...] = ()
    response_time_ms: float | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "details", _freeze(self.details))


@dataclass(frozen=True)
class HealthCheck:
    """One named check in a health report."""

    name: str
    passed: bool
    message: str


# A failure in any of these makes the provider unusable, not just degraded.
_CRITICAL_CHECKS: frozenset[str] = frozenset({"configuration", "connectivity", "authentication"})


@dataclass(frozen=True)
class HealthStatus:
    """Outcome of ``Driver.get_health_status``."""

    provider: str
    checks: tuple[HealthCheck, ...] = ()
    response_time_ms: float | None = None

    @property
    def status(self) -> Literal["healthy", "degraded", "unhealthy"]:
        failed = {c.name for c in self.checks if not c.passed}
        if failed & _CRITICAL_CHECKS:
            return "unhealthy"
        return "degraded" if failed else "healthy"

    @property
    def issues(self) -> tuple[str, ...]:
        return tuple(f"{c.name}: {c.message}" for c in self.checks if not c.passed)


@dataclass(frozen=True)
class ExecutionResult:
    """Outcome of running one function/tool call through an executor."""

    call: FunctionCall | ToolCall
    success: bool
    output: str
    error: str | None = None

    @property
    def call_id(self) -> str | None:
        return self.call.id if isinstance(self.call, ToolCall) else None
