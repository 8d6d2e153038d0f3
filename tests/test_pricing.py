"""Cost engine: tier order, fallback behaviour, arithmetic."""

from __future__ import annotations

import logging

import pytest

from castor.cache import TTLCache
from castor.errors import ConfigurationError
from castor.pricing import (
    GENERIC_FALLBACK,
    CostEngine,
    PricingEntry,
    PricingSource,
    static_price,
)

pytestmark = pytest.mark.unit


class DictStore:
    """Pricing store backed by a dict; counts lookups."""

    def __init__(self, prices: dict[tuple[str, str], PricingEntry] | None = None) -> None:
        self.prices = prices or {}
        self.lookups = 0

    def lookup(self, provider: str, model: str) -> PricingEntry | None:
        self.lookups += 1
        return self.prices.get((provider, model))


class BrokenStore:
    def lookup(self, provider: str, model: str) -> PricingEntry | None:
        raise ConnectionError("pricing db unreachable")


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def test_model_missing_from_store_uses_static_table() -> None:
    engine = CostEngine(store=DictStore())

    cost = engine.calculate_cost("openai", "gpt-4o-mini", 1000, 1000)

    assert cost.source is PricingSource.STATIC
    assert cost.input_rate == 0.00015
    assert cost.output_rate == 0.0006
    assert cost.total_cost == pytest.approx(0.00075)


def test_store_hit_wins_and_is_cached() -> None:
    entry = PricingEntry("openai", "gpt-4o", 0.5, 1.0)
    store = DictStore({("openai", "gpt-4o"): entry})
    engine = CostEngine(store=store)

    cost = engine.calculate_cost("openai", "gpt-4o", 2000, 1000)

    assert cost.source is PricingSource.STORE
    assert cost.input_cost == pytest.approx(1.0)
    assert cost.output_cost == pytest.approx(1.0)
    assert cost.total_cost == pytest.approx(2.0)
    assert len(engine.cache) == 1


def test_cache_serves_when_store_fails(caplog: pytest.LogCaptureFixture) -> None:
    engine = CostEngine(store=BrokenStore())
    engine.cache.set(("xai", "grok-2"), PricingEntry("xai", "grok-2", 0.1, 0.2))

    with caplog.at_level(logging.WARNING, logger="castor.pricing"):
        cost = engine.calculate_cost("xai", "grok-2", 1000, 0)

    assert cost.source is PricingSource.CACHE
    assert cost.total_cost == pytest.approx(0.1)
    assert "pricing db unreachable" in caplog.text


def test_cache_entries_expire() -> None:
    clock = FakeClock()
    entry = PricingEntry("openai", "gpt-4o", 0.5, 1.0)
    store = DictStore({("openai", "gpt-4o"): entry})
    engine = CostEngine(store=store, cache=TTLCache(ttl_s=60, clock=clock))
    engine.calculate_cost("openai", "gpt-4o", 1, 1)

    engine.store = BrokenStore()
    clock.now = 30
    assert engine.resolve("openai", "gpt-4o").source is PricingSource.CACHE

    clock.now = 61
    assert engine.resolve("openai", "gpt-4o").source is PricingSource.STATIC


def test_store_failure_without_cache_falls_through() -> None:
    engine = CostEngine(store=BrokenStore())

    assert engine.resolve("gemini", "gemini-1.5-flash").source is PricingSource.STATIC
    assert engine.resolve("gemini", "mystery-model").source is PricingSource.FALLBACK


def test_unknown_model_uses_generic_fallback() -> None:
    cost = CostEngine().calculate_cost("openai", "brand-new-model", 1000, 1000)

    assert cost.source is PricingSource.FALLBACK
    assert (cost.input_rate, cost.output_rate) == GENERIC_FALLBACK
    assert cost.total_cost == pytest.approx(0.03)


def test_local_providers_are_free() -> None:
    cost = CostEngine().calculate_cost("ollama", "llama3.1:8b", 50_000, 10_000)

    assert cost.source is PricingSource.STATIC
    assert cost.total_cost == 0.0


@pytest.mark.parametrize(
    ("provider", "model", "expected"),
    [
        ("openai", "gpt-4o-mini-2024-07-18", (0.00015, 0.0006)),
        ("openai", "gpt-4o-2024-08-06", (0.0025, 0.01)),
        ("gemini", "models/gemini-1.5-pro", (0.00125, 0.005)),
        ("xai", "grok-2-vision-1212", (0.002, 0.01)),
        ("openai", "davinci", None),
        ("unknown", "model", None),
    ],
)
def test_static_price_lookup(provider: str, model: str, expected) -> None:
    assert static_price(provider, model) == expected


def test_static_overrides_take_precedence() -> None:
    engine = CostEngine(static_table={"openai": {"gpt-4o": (1.0, 2.0)}})

    entry = engine.resolve("openai", "gpt-4o")

    assert (entry.input_per_1k, entry.output_per_1k) == (1.0, 2.0)
    assert entry.source is PricingSource.STATIC


def test_negative_tokens_clamp_to_zero() -> None:
    cost = CostEngine().calculate_cost("openai", "gpt-4o", -100, -5)

    assert (cost.input_tokens, cost.output_tokens, cost.total_cost) == (0, 0, 0.0)


@pytest.mark.parametrize("model", ["gpt-4o", "grok-beta", "unknown-model"])
def test_cost_is_monotonic_in_both_token_counts(model: str) -> None:
    engine = CostEngine()
    provider = "xai" if model.startswith("grok") else "openai"
    counts = [0, 1, 10, 999, 1000, 1001, 250_000]

    for fixed in counts:
        by_input = [engine.calculate_cost(provider, model, n, fixed).total_cost for n in counts]
        by_output = [engine.calculate_cost(provider, model, fixed, n).total_cost for n in counts]
        assert by_input == sorted(by_input)
        assert by_output == sorted(by_output)


def test_negative_price_is_rejected() -> None:
    with pytest.raises(ConfigurationError):
        PricingEntry("openai", "gpt-4o", -0.1, 0.2)
