"""Error classification: map raw provider failures to a fixed taxonomy.

Classification is a pure function returning a value. Turning that value into
a raised exception is a separate step (``to_provider_error``) so retry logic
can decide first and propagate second.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import re
from typing import Any

import httpx

from castor.errors import (
    InvalidCredentialsError,
    ProviderError,
    ProviderTimeoutError,
    QuotaExceededError,
    RateLimitError,
    ServerError,
    _walk_exception_chain,
)


class ErrorKind(str, Enum):
    """Fixed set of failure kinds shared by every provider."""

    INVALID_CREDENTIALS = "invalid_credentials"
    RATE_LIMIT = "rate_limit"
    QUOTA_EXCEEDED = "quota_exceeded"
    SERVER_ERROR = "server_error"
    TIMEOUT = "timeout"
    GENERIC = "generic"


@dataclass(frozen=True)
class ErrorClassification:
    """Outcome of classifying one failure."""

    kind: ErrorKind
    retryable: bool
    retry_after_s: float | None = None
    status_code: int | None = None
    message: str = ""


@dataclass(frozen=True)
class _Rule:
    kind: ErrorKind
    retryable: bool
    status_codes: frozenset[int] = frozenset()
    patterns: tuple[str, ...] = ()
    exc_types: tuple[type[BaseException], ...] = ()

    def matches(
        self, status_code: int | None, text: str, chain: list[BaseException]
    ) -> bool:
        if status_code is not None and status_code in self.status_codes:
            return True
        if any(p in text for p in self.patterns):
            return True
        return bool(self.exc_types) and any(
            isinstance(e, self.exc_types) for e in chain
        )


# Order matters: credential and quota rules run before the transient ones so a
# quota message mentioning "error" or arriving with a 429 is not retried.
_RULES: tuple[_Rule, ...] = (
    _Rule(
        ErrorKind.INVALID_CREDENTIALS,
        retryable=False,
        status_codes=frozenset({401, 403}),
        patterns=(
            "invalid api key",
            "invalid_api_key",
            "incorrect api key",
            "api key not valid",
            "authentication",
            "unauthorized",
            "permission denied",
        ),
    ),
    _Rule(
        ErrorKind.QUOTA_EXCEEDED,
        retryable=False,
        status_codes=frozenset({402}),
        patterns=("quota", "insufficient", "billing"),
    ),
    _Rule(
        ErrorKind.RATE_LIMIT,
        retryable=True,
        status_codes=frozenset({429}),
        patterns=("rate limit", "rate_limit", "too many requests"),
    ),
    _Rule(
        ErrorKind.TIMEOUT,
        retryable=True,
        status_codes=frozenset({408}),
        patterns=("timeout", "timed out"),
        exc_types=(httpx.TimeoutException, TimeoutError),
    ),
    _Rule(
        ErrorKind.SERVER_ERROR,
        retryable=True,
        status_codes=frozenset(range(500, 600)),
        patterns=(
            "server error",
            "server_error",
            "internal error",
            "unavailable",
            "bad gateway",
            "overloaded",
        ),
        exc_types=(httpx.TransportError, ConnectionError),
    ),
)

_RETRY_AFTER_TEXT_RE = re.compile(
    r"(?:retry after|try again in)\s+(\d+(?:\.\d+)?)\s*"
    r"(ms|milliseconds?|minutes?|s|secs?|seconds?)?",
    re.IGNORECASE,
)
_PROTO_DURATION_RE = re.compile(r"^(\d+(?:\.\d+)?)s$")


def classify(
    raw: BaseException | str, *, status_code: int | None = None
) -> ErrorClassification:
    """Classify a raw failure into an ``ErrorClassification``.

    ``raw`` is an exception (its cause chain is inspected) or a bare message.
    An explicit ``status_code`` wins over one found on the exception.
    """
    if isinstance(raw, ProviderError):
        return ErrorClassification(
            kind=ErrorKind(raw.kind),
            retryable=raw.retryable,
            retry_after_s=raw.retry_after_s,
            status_code=raw.status_code,
            message=str(raw),
        )

    chain: list[BaseException] = []
    if isinstance(raw, str):
        message = raw
        retry_after_s = None
    else:
        chain = list(_walk_exception_chain(raw))
        if status_code is None:
            status_code = extract_status_code(raw)
        message = extract_message(raw)
        retry_after_s = extract_retry_after_s(raw)

    texts = [message, *(str(e) for e in chain)]
    text = " ".join(texts).lower()
    if retry_after_s is None:
        retry_after_s = _retry_after_from_text(text)

    for rule in _RULES:
        if rule.matches(status_code, text, chain):
            return ErrorClassification(
                kind=rule.kind,
                retryable=rule.retryable,
                retry_after_s=retry_after_s,
                status_code=status_code,
                message=message,
            )

    return ErrorClassification(
        kind=ErrorKind.GENERIC,
        retryable=False,
        retry_after_s=retry_after_s,
        status_code=status_code,
        message=message,
    )


def extract_status_code(exc: BaseException) -> int | None:
    """Walk the exception chain to find an HTTP status code."""
    for e in _walk_exception_chain(exc):
        for attr in ("status_code", "status"):
            value = getattr(e, attr, None)
            if isinstance(value, int) and 100 <= value <= 599:
                return value
        response = getattr(e, "response", None)
        value = getattr(response, "status_code", None)
        if isinstance(value, int) and 100 <= value <= 599:
            return value
    return None


def extract_message(exc: BaseException) -> str:
    """Return the most useful human-readable message for *exc*.

    Provider JSON bodies (``{"error": {"message": ...}}``) beat httpx's generic
    "Client error '400 Bad Request' for url ..." text.
    """
    for e in _walk_exception_chain(exc):
        if isinstance(e, httpx.HTTPStatusError):
            body_message = _body_error_message(e.response)
            if body_message:
                return body_message
    text = str(exc)
    return text if text else type(exc).__name__


def _body_error_message(response: httpx.Response) -> str | None:
    try:
        body: Any = response.json()
    except (httpx.ResponseNotRead, ValueError):
        return None
    if isinstance(body, list) and body:
        # Gemini sometimes wraps the error object in a one-element list.
        body = body[0]
    if not isinstance(body, dict):
        return None
    error = body.get("error")
    if isinstance(error, dict):
        msg = error.get("message")
        return msg if isinstance(msg, str) and msg else None
    if isinstance(error, str) and error:
        # Ollama: {"error": "model 'x' not found"}
        return error
    return None


def _extract_retry_info_seconds(exc: BaseException) -> float | None:
    """Extract retry delay from Google API-style RetryInfo in an error body.

    Shaped like::

        {"error": {"details": [{"@type": "...RetryInfo", "retryDelay": "8s"}]}}
    """
    details: Any = getattr(exc, "details", None)
    if details is None and isinstance(exc, httpx.HTTPStatusError):
        try:
            details = exc.response.json()
        except (httpx.ResponseNotRead, ValueError):
            details = None
    if isinstance(details, list) and details:
        details = details[0]
    if not isinstance(details, dict):
        return None
    error: Any = details.get("error")
    if not isinstance(error, dict):
        return None
    detail_list: Any = error.get("details")
    if not isinstance(detail_list, list):
        return None
    for entry in detail_list:
        if not isinstance(entry, dict):
            continue
        at_type = entry.get("@type", "")
        if not isinstance(at_type, str) or "RetryInfo" not in at_type:
            continue
        delay_raw = entry.get("retryDelay")
        if not isinstance(delay_raw, str):
            continue
        m = _PROTO_DURATION_RE.match(delay_raw)
        if m:
            return float(m.group(1))
    return None


def extract_retry_after_s(exc: BaseException) -> float | None:
    """Walk the exception chain to find a retry-after delay in seconds."""
    for e in _walk_exception_chain(exc):
        value = getattr(e, "retry_after", None)
        if isinstance(value, (int, float)) and value >= 0:
            return float(value)

        response = getattr(e, "response", None)
        headers: Any = getattr(response, "headers", None)
        if headers is not None and hasattr(headers, "get"):
            raw = headers.get("Retry-After")
            if isinstance(raw, str) and raw.strip():
                try:
                    seconds = float(raw)
                except ValueError:
                    # HTTP-date form is rare for LLM APIs; ignore it.
                    seconds = -1.0
                if seconds >= 0:
                    return seconds

        retry_info = _extract_retry_info_seconds(e)
        if retry_info is not None:
            return retry_info
    return None


def _retry_after_from_text(text: str) -> float | None:
    m = _RETRY_AFTER_TEXT_RE.search(text)
    if not m:
        return None
    value = float(m.group(1))
    unit = (m.group(2) or "s").lower()
    if unit.startswith("min"):
        value *= 60.0
    elif unit.startswith("m"):
        value /= 1000.0
    return value


# =============================================================================
# Propagation
# =============================================================================

_PROVIDER_NAMES: dict[str, str] = {
    "openai": "OpenAI",
    "xai": "xAI",
    "gemini": "Gemini",
    "ollama": "Ollama",
    "mock": "Mock",
}

_API_KEY_ENV_VARS: dict[str, str] = {
    "openai": "OPENAI_API_KEY",
    "xai": "XAI_API_KEY",
    "gemini": "GEMINI_API_KEY",
}

_ENHANCED_MESSAGES: dict[ErrorKind, str] = {
    ErrorKind.INVALID_CREDENTIALS: (
        "Invalid {name} API key. Please check your API key configuration."
    ),
    ErrorKind.RATE_LIMIT: (
        "{name} API rate limit exceeded. Please wait before making more requests."
    ),
    ErrorKind.QUOTA_EXCEEDED: (
        "{name} API quota exceeded. Please check your billing and usage limits."
    ),
    ErrorKind.SERVER_ERROR: "{name} server error. Please try again later.",
    ErrorKind.TIMEOUT: (
        "Request to {name} timed out. Please try again or increase timeout settings."
    ),
    ErrorKind.GENERIC: "{name} API error.",
}

_ERROR_CLASSES: dict[ErrorKind, type[ProviderError]] = {
    ErrorKind.INVALID_CREDENTIALS: InvalidCredentialsError,
    ErrorKind.RATE_LIMIT: RateLimitError,
    ErrorKind.QUOTA_EXCEEDED: QuotaExceededError,
    ErrorKind.SERVER_ERROR: ServerError,
    ErrorKind.TIMEOUT: ProviderTimeoutError,
    ErrorKind.GENERIC: ProviderError,
}


def enhance_message(kind: ErrorKind, provider: str, original: str) -> str:
    """Prefix *original* with a human-readable explanation for *kind*."""
    name = _PROVIDER_NAMES.get(provider, provider)
    prefix = _ENHANCED_MESSAGES[kind].format(name=name)
    original = original.strip()
    return f"{prefix} {original}" if original else prefix


def _hint_for(kind: ErrorKind, provider: str) -> str | None:
    if kind is ErrorKind.INVALID_CREDENTIALS:
        env_var = _API_KEY_ENV_VARS.get(provider, "the API key")
        return f"Check credentials/permissions (try setting {env_var} or ProviderConfig.api_key)."
    if kind is ErrorKind.QUOTA_EXCEEDED:
        return "Review your plan, billing details and usage limits with the provider."
    if kind is ErrorKind.RATE_LIMIT:
        return "Slow down or raise RetryPolicy.max_attempts / max_delay_s."
    if kind is ErrorKind.TIMEOUT:
        return "Increase ProviderConfig.timeout_s or Options.timeout_s."
    return None


def to_provider_error(
    raw: BaseException | str,
    *,
    provider: str,
    classification: ErrorClassification | None = None,
    attempts: int = 1,
) -> ProviderError:
    """Convert a raw failure into the typed ``ProviderError`` for its kind.

    An existing ``ProviderError`` is enriched in place rather than re-wrapped.
    The caller is expected to ``raise ... from raw`` to keep the chain intact.
    """
    if isinstance(raw, ProviderError):
        if raw.provider is None:
            raw.provider = provider
        raw.attempts = max(raw.attempts, attempts)
        return raw

    if classification is None:
        classification = classify(raw)
    kind = classification.kind
    err_cls = _ERROR_CLASSES[kind]
    return err_cls(
        enhance_message(kind, provider, classification.message),
        hint=_hint_for(kind, provider),
        kind=kind,
        retryable=classification.retryable,
        status_code=classification.status_code,
        retry_after_s=classification.retry_after_s,
        provider=provider,
        attempts=attempts,
        cause=raw if isinstance(raw, BaseException) else None,
    )

