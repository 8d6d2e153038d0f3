"""Bounded retry with exponential backoff and multiplicative jitter.

Design goals:
- Explicit state (policy + attempt counters), nothing global
- Retry decisions come from ``classify``, never from ad-hoc checks here
- Only the final classified failure reaches the caller
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
import random
import time
from typing import TYPE_CHECKING, TypeVar

from castor.classify import classify, to_provider_error
from castor.errors import ConfigurationError

if TYPE_CHECKING:
    from collections.abc import Callable

    from castor.classify import ErrorClassification

T = TypeVar("T")

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry policy owned by one provider configuration."""

    max_attempts: int = 3
    base_delay_s: float = 1.0
    max_delay_s: float = 30.0
    jitter: bool = True

    def __post_init__(self) -> None:
        """Validate invariants to keep retry behavior predictable."""
        if not isinstance(self.max_attempts, int) or self.max_attempts < 1:
            raise ConfigurationError(
                f"RetryPolicy.max_attempts must be >= 1, got {self.max_attempts!r}",
                hint="Use max_attempts=1 to disable retries.",
            )
        if self.base_delay_s < 0:
            raise ConfigurationError(
                f"RetryPolicy.base_delay_s must be >= 0, got {self.base_delay_s!r}"
            )
        if self.max_delay_s < self.base_delay_s:
            raise ConfigurationError(
                "RetryPolicy.max_delay_s must be >= base_delay_s",
                hint=f"Got base_delay_s={self.base_delay_s}, max_delay_s={self.max_delay_s}.",
            )

    @classmethod
    def no_retry(cls) -> RetryPolicy:
        """Single attempt; used for credential checks and local providers."""
        return cls(max_attempts=1)


def compute_delay(
    policy: RetryPolicy,
    attempt: int,
    *,
    retry_after_s: float | None = None,
    rng: Callable[[], float] = random.random,
) -> float:
    """Return the sleep before the retry that follows failed *attempt*.

    ``base * 2**(attempt-1)`` scaled by a factor in ``[0.5, 1.5)`` when jitter
    is on, raised to any provider retry-after hint, then clamped to
    ``max_delay_s``.
    """
    raw = policy.base_delay_s * (2 ** max(0, attempt - 1))
    if policy.jitter:
        raw *= 0.5 + rng()
    if retry_after_s is not None and retry_after_s > raw:
        raw = retry_after_s
    return min(policy.max_delay_s, raw)


def retry_call(
    operation: Callable[[], T],
    *,
    policy: RetryPolicy,
    provider: str,
    classifier: Callable[[BaseException], ErrorClassification] = classify,
    sleep: Callable[[float], None] = time.sleep,
    rng: Callable[[], float] = random.random,
) -> T:
    """Run a zero-argument provider *operation* with bounded retries.

    Returns the first successful result. Non-retryable failures, and the last
    failure once ``policy.max_attempts`` is reached, are raised as the typed
    ``ProviderError`` for their kind with the original exception chained.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return operation()
        except Exception as exc:
            classification = classifier(exc)
            if not classification.retryable or attempt >= policy.max_attempts:
                if attempt > 1:
                    log.info(
                        "%s call failed after %d attempt(s): %s",
                        provider,
                        attempt,
                        classification.kind.value,
                    )
                err = to_provider_error(
                    exc,
                    provider=provider,
                    classification=classification,
                    attempts=attempt,
                )
                if err is exc:
                    raise
                raise err from exc

            delay = compute_delay(
                policy,
                attempt,
                retry_after_s=classification.retry_after_s,
                rng=rng,
            )
            log.info(
                "%s call attempt %d/%d failed (%s); retrying in %.2fs",
                provider,
                attempt,
                policy.max_attempts,
                classification.kind.value,
                delay,
            )
            if delay > 0:
                sleep(delay)
