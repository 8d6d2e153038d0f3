"""Cost calculation with a layered pricing lookup.

Tiers, first hit wins: injected pricing store, short-lived cache of store
hits, static per-model table, generic fallback rate. A failing store is
logged and skipped; pricing never blocks a response.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, replace
from enum import Enum
import json
import logging
import math
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from castor.cache import TTLCache
from castor.errors import ConfigurationError

if TYPE_CHECKING:
    from collections.abc import Mapping

    from castor.models import Message

log = logging.getLogger(__name__)


class PricingSource(str, Enum):
    """Which lookup tier produced a price."""

    STORE = "store"
    CACHE = "cache"
    STATIC = "static"
    FALLBACK = "fallback"


@dataclass(frozen=True)
class PricingEntry:
    """Price per 1,000 tokens for one provider/model pair."""

    provider: str
    model: str
    input_per_1k: float
    output_per_1k: float
    currency: str = "USD"
    source: PricingSource = PricingSource.STATIC

    def __post_init__(self) -> None:
        """Reject negative rates so cost stays monotonic in token counts."""
        if self.input_per_1k < 0 or self.output_per_1k < 0:
            raise ConfigurationError(
                f"Negative price for {self.provider}/{self.model}",
                hint="Prices are per 1,000 tokens and must be >= 0.",
            )


@dataclass(frozen=True)
class CostBreakdown:
    """Cost of one call. ``total_cost`` is the number most callers want."""

    provider: str
    model: str
    input_tokens: int
    output_tokens: int
    input_rate: float
    output_rate: float
    input_cost: float
    output_cost: float
    total_cost: float
    currency: str
    source: PricingSource


@runtime_checkable
class PricingStore(Protocol):
    """Primary pricing backend (database, remote service, ...)."""

    def lookup(self, provider: str, model: str) -> PricingEntry | None:
        """Return the current price or None when unknown."""
        ...


# Per 1K tokens, USD.
STATIC_PRICING: dict[str, dict[str, tuple[float, float]]] = {
    "openai": {
        "gpt-3.5-turbo": (0.0015, 0.002),
        "gpt-4": (0.03, 0.06),
        "gpt-4-turbo": (0.01, 0.03),
        "gpt-4o": (0.0025, 0.01),
        "gpt-4o-mini": (0.00015, 0.0006),
        "gpt-4.1": (0.002, 0.008),
        "gpt-4.1-mini": (0.0004, 0.0016),
        "gpt-5": (0.01, 0.03),
    },
    "xai": {
        "grok-beta": (0.005, 0.015),
        "grok-2": (0.002, 0.01),
        "grok-2-1212": (0.002, 0.01),
        "grok-2-vision-1212": (0.002, 0.01),
        "grok-2-mini": (0.001, 0.005),
        "grok-4": (0.003, 0.015),
    },
    "gemini": {
        "gemini-pro": (0.0005, 0.0015),
        "gemini-1.5-pro": (0.00125, 0.005),
        "gemini-1.5-flash": (0.000075, 0.0003),
        "gemini-2.0-flash": (0.000075, 0.0003),
        "gemini-2.5-pro": (0.00125, 0.01),
        "gemini-2.5-flash": (0.0003, 0.0025),
    },
}

# Local and offline providers cost nothing regardless of model.
FREE_PROVIDERS: frozenset[str] = frozenset({"ollama", "mock"})

GENERIC_FALLBACK: tuple[float, float] = (0.01, 0.02)


def static_price(provider: str, model: str) -> tuple[float, float] | None:
    """Look up *model* in the static table.

    Tries the exact id, then the id without a ``models/`` prefix, then the
    longest known prefix (``gpt-4o-mini-2024-07-18`` → ``gpt-4o-mini``).
    """
    if provider in FREE_PROVIDERS:
        return (0.0, 0.0)
    table = STATIC_PRICING.get(provider)
    if not table:
        return None
    if model in table:
        return table[model]
    bare = model.removeprefix("models/")
    if bare in table:
        return table[bare]
    matches = [known for known in table if bare.startswith(known)]
    if matches:
        return table[max(matches, key=len)]
    return None


class CostEngine:
    """Resolves prices through the tier chain and computes cost breakdowns."""

    def __init__(
        self,
        *,
        store: PricingStore | None = None,
        cache: TTLCache[PricingEntry] | None = None,
        static_table: Mapping[str, Mapping[str, tuple[float, float]]] | None = None,
        fallback: tuple[float, float] = GENERIC_FALLBACK,
        currency: str = "USD",
    ) -> None:
        self.store = store
        self.cache: TTLCache[PricingEntry] = cache if cache is not None else TTLCache()
        self._static_overrides = static_table or {}
        self.fallback = fallback
        self.currency = currency

    def resolve(self, provider: str, model: str) -> PricingEntry:
        """Return the price for *provider*/*model*, tagged with its tier."""
        key = (provider, model)

        if self.store is not None:
            try:
                entry = self.store.lookup(provider, model)
            except Exception as exc:
                log.warning(
                    "Pricing store lookup failed for %s/%s: %s", provider, model, exc
                )
                entry = None
            if entry is not None:
                entry = replace(entry, source=PricingSource.STORE)
                self.cache.set(key, entry)
                return entry

        cached = self.cache.get(key)
        if cached is not None:
            return replace(cached, source=PricingSource.CACHE)

        rates = self._static_overrides.get(provider, {}).get(model)
        if rates is None:
            rates = static_price(provider, model)
        if rates is not None:
            return PricingEntry(
                provider, model, rates[0], rates[1], self.currency, PricingSource.STATIC
            )

        log.debug("No price known for %s/%s; using generic fallback", provider, model)
        return PricingEntry(
            provider,
            model,
            self.fallback[0],
            self.fallback[1],
            self.currency,
            PricingSource.FALLBACK,
        )

    def calculate_cost(
        self, provider: str, model: str, input_tokens: int, output_tokens: int
    ) -> CostBreakdown:
        """Compute the cost of one call."""
        entry = self.resolve(provider, model)
        inp = max(0, int(input_tokens))
        out = max(0, int(output_tokens))
        input_cost = inp / 1000 * entry.input_per_1k
        output_cost = out / 1000 * entry.output_per_1k
        return CostBreakdown(
            provider=provider,
            model=model,
            input_tokens=inp,
            output_tokens=out,
            input_rate=entry.input_per_1k,
            output_rate=entry.output_per_1k,
            input_cost=input_cost,
            output_cost=output_cost,
            total_cost=input_cost + output_cost,
            currency=entry.currency,
            source=entry.source,
        )


# =============================================================================
# Pre-call estimates
# =============================================================================

# About four bytes of English text per token.
_BYTES_PER_TOKEN = 4
# Role and wrapper tokens added to every message.
_MESSAGE_OVERHEAD_TOKENS = 4


def estimate_text_tokens(text: str) -> int:
    """Rough token count for *text*; no tokenizer is consulted."""
    return math.ceil(len(text.encode("utf-8")) / _BYTES_PER_TOKEN)


def estimate_message_tokens(message: Message) -> int:
    """Rough token count for one message, including requested calls."""
    tokens = estimate_text_tokens(message.text) + _MESSAGE_OVERHEAD_TOKENS
    if message.tool_calls:
        tokens += estimate_text_tokens(json.dumps([asdict(c) for c in message.tool_calls]))
    if message.function_call is not None:
        tokens += estimate_text_tokens(json.dumps(asdict(message.function_call)))
    return tokens


def estimate_output_tokens(input_tokens: int, model: str) -> int:
    """Expected reply length when the caller sets no ``max_tokens``."""
    if "gpt-4" in model:
        ratio = 0.6
    elif "gpt-3.5" in model:
        ratio = 0.4
    else:
        ratio = 0.5
    return int(input_tokens * ratio)
