"""Per-call generation options."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

from pydantic import BaseModel

from castor.errors import ConfigurationError
from castor.retry import RetryPolicy

ResponseSchemaInput = type[BaseModel] | dict[str, Any]
ToolChoice = Literal["auto", "required", "none"] | dict[str, Any]

# Gemini harm categories and block thresholds accepted by ``safety_settings``.
SAFETY_CATEGORIES: frozenset[str] = frozenset(
    {
        "HARM_CATEGORY_HARASSMENT",
        "HARM_CATEGORY_HATE_SPEECH",
        "HARM_CATEGORY_SEXUALLY_EXPLICIT",
        "HARM_CATEGORY_DANGEROUS_CONTENT",
        "HARM_CATEGORY_CIVIC_INTEGRITY",
    }
)
SAFETY_THRESHOLDS: frozenset[str] = frozenset(
    {
        "BLOCK_NONE",
        "BLOCK_ONLY_HIGH",
        "BLOCK_MEDIUM_AND_ABOVE",
        "BLOCK_LOW_AND_ABOVE",
        "OFF",
    }
)


@dataclass(frozen=True)
class Options:
    """Optional generation features for ``send_message`` and friends."""

    #: Overrides ``ProviderConfig.model`` for this call.
    model: str | None = None
    #: Optional system-level instruction, sent ahead of the messages.
    system_instruction: str | None = None

    #: Generation tuning parameters
    temperature: float | None = None
    top_p: float | None = None
    max_tokens: int | None = None
    stop: tuple[str, ...] = ()

    #: Legacy single-function calling (OpenAI ``functions``).
    functions: list[dict[str, Any]] | None = None
    #: Tool calling; preferred over *functions*.
    tools: list[dict[str, Any]] | None = None
    tool_choice: ToolChoice | None = None

    #: Ask for a JSON object response.
    json_mode: bool = False
    #: Pydantic ``BaseModel`` subclass or JSON Schema dict for structured output.
    response_schema: ResponseSchemaInput | None = None
    #: Gemini content filtering, harm category to block threshold.
    safety_settings: dict[str, str] | None = None

    timeout_s: float | None = None
    #: Overrides the provider's retry policy for this call.
    retry: RetryPolicy | None = None
    #: Provider-specific request fields merged into the payload as-is.
    extra: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Validate option shapes early for clear errors."""
        if self.system_instruction is not None and not isinstance(
            self.system_instruction, str
        ):
            raise ConfigurationError(
                "system_instruction must be a string",
                hint="Pass system_instruction='You are a concise assistant.'",
            )

        if self.temperature is not None and not 0 <= self.temperature <= 2:
            raise ConfigurationError(
                f"temperature must be between 0 and 2, got {self.temperature}"
            )
        if self.top_p is not None and not 0 <= self.top_p <= 1:
            raise ConfigurationError(f"top_p must be between 0 and 1, got {self.top_p}")

        if self.max_tokens is not None and (
            not isinstance(self.max_tokens, int) or self.max_tokens <= 0
        ):
            raise ConfigurationError(
                "max_tokens must be a positive integer",
                hint="Pass max_tokens=1024 or omit it for the provider default.",
            )

        if self.functions is not None and self.tools is not None:
            raise ConfigurationError(
                "functions and tools are mutually exclusive",
                hint="Use tools=[...]; functions=[...] is the legacy form.",
            )

        if self.response_schema is not None and not (
            isinstance(self.response_schema, dict)
            or (
                isinstance(self.response_schema, type)
                and issubclass(self.response_schema, BaseModel)
            )
        ):
            raise ConfigurationError(
                "response_schema must be a Pydantic model class or JSON schema dict",
                hint="Pass a BaseModel subclass or a dict following JSON Schema.",
            )

        if self.safety_settings is not None:
            invalid = [
                f"{category}={threshold}"
                for category, threshold in self.safety_settings.items()
                if category not in SAFETY_CATEGORIES or threshold not in SAFETY_THRESHOLDS
            ]
            if invalid:
                raise ConfigurationError(
                    f"Invalid safety setting(s): {', '.join(invalid)}",
                    hint=(
                        "Map a HARM_CATEGORY_* name to one of "
                        f"{', '.join(sorted(SAFETY_THRESHOLDS))}."
                    ),
                )

        if self.timeout_s is not None and self.timeout_s <= 0:
            raise ConfigurationError(f"timeout_s must be > 0, got {self.timeout_s}")

        if isinstance(self.stop, (list, str)):
            stop = (self.stop,) if isinstance(self.stop, str) else tuple(self.stop)
            object.__setattr__(self, "stop", stop)

    @property
    def definitions(self) -> list[dict[str, Any]]:
        """Function/tool definitions in whichever form was supplied."""
        return list(self.tools or self.functions or [])

    @property
    def wants_json(self) -> bool:
        return self.json_mode or self.response_schema is not None

    def response_schema_json(self) -> dict[str, Any] | None:
        """Return JSON Schema for provider APIs."""
        schema = self.response_schema
        if schema is None:
            return None
        if isinstance(schema, dict):
            return schema
        return schema.model_json_schema()
