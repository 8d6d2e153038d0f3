"""Exception hierarchy for Castor."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterator

    from castor.classify import ErrorKind


class CastorError(Exception):
    """Base exception for all Castor errors."""

    def __init__(self, message: str, *, hint: str | None = None) -> None:
        super().__init__(message)
        self.hint = hint


class ConfigurationError(CastorError):
    """Configuration validation or resolution failed."""


class ToolArgumentError(CastorError):
    """Function/tool call arguments could not be parsed into an object."""


class ModelNotFoundError(CastorError):
    """The provider does not list the requested model."""


class ProviderError(CastorError):
    """A provider call failed.

    Carries the classification kind so callers can branch on it without
    re-inspecting message text, plus the original cause for diagnostics.
    """

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        kind: ErrorKind | str = "generic",
        retryable: bool = False,
        status_code: int | None = None,
        retry_after_s: float | None = None,
        provider: str | None = None,
        attempts: int = 1,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message, hint=hint)
        self.kind = kind
        self.retryable = retryable
        self.status_code = status_code
        self.retry_after_s = retry_after_s
        self.provider = provider
        self.attempts = attempts
        self.cause = cause


class InvalidCredentialsError(ProviderError):
    """API key missing, wrong, or lacking permission (HTTP 401/403)."""


class RateLimitError(ProviderError):
    """Rate limit exceeded (HTTP 429)."""


class QuotaExceededError(ProviderError):
    """Account quota or billing limit reached."""


class ServerError(ProviderError):
    """Transient provider-side failure (HTTP 5xx or connection error)."""


class ProviderTimeoutError(ProviderError):
    """The provider did not answer in time."""


def _walk_exception_chain(exc: BaseException) -> Iterator[BaseException]:
    """Yield *exc* and its ``__cause__``/``__context__`` chain, with cycle protection."""
    seen: set[int] = set()
    stack: list[BaseException] = [exc]
    while stack:
        cur = stack.pop()
        if id(cur) in seen:
            continue
        seen.add(id(cur))
        yield cur

        cause = cur.__cause__
        if isinstance(cause, BaseException):
            stack.append(cause)
        context = cur.__context__
        if isinstance(context, BaseException):
            stack.append(context)
