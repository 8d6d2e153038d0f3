"""Outbound notifications.

The driver's obligation ends at ``notify``: sinks decide what to do with an
event, and a failing sink never affects the call that produced it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from castor.pricing import CostBreakdown, PricingSource

log = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class CostCalculated:
    """A completed cost calculation for one final response."""

    provider: str
    model: str
    input_tokens: int
    output_tokens: int
    total_cost: float
    currency: str
    source: PricingSource
    occurred_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def from_breakdown(cls, cost: CostBreakdown) -> CostCalculated:
        return cls(
            provider=cost.provider,
            model=cost.model,
            input_tokens=cost.input_tokens,
            output_tokens=cost.output_tokens,
            total_cost=cost.total_cost,
            currency=cost.currency,
            source=cost.source,
        )


@runtime_checkable
class EventSink(Protocol):
    """Receives events; must not block the caller for long."""

    def notify(self, event: CostCalculated) -> None:
        """Accept one event."""
        ...


class NullEventSink:
    """Discards every event."""

    def notify(self, event: CostCalculated) -> None:  # noqa: ARG002
        return None


def notify_safely(sink: EventSink, event: CostCalculated) -> None:
    """Deliver *event*, logging instead of raising if the sink fails."""
    try:
        sink.notify(event)
    except Exception as exc:
        log.warning("Event sink %s failed: %s", type(sink).__name__, exc)
