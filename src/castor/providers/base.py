"""Dialect protocol: the provider-specific half of a driver.

A dialect knows one provider's wire format and nothing else. Retries,
streaming assembly, tool execution and pricing live in provider-agnostic
modules that the ``Driver`` composes around it.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Iterator, Mapping

    from castor.models import DriverCapabilities, Message, ModelDescriptor, Response
    from castor.options import Options
    from castor.streaming import ChunkDelta
    from castor.transport import ChatRequest


@runtime_checkable
class Dialect(Protocol):
    """Wire format of one provider."""

    #: Provider identifier used for pricing, errors and events.
    name: str

    def build_chat_request(
        self,
        messages: list[Message],
        options: Options,
        *,
        model: str,
        stream: bool,
    ) -> ChatRequest:
        """Build the native request for a chat call."""
        ...

    def parse_response(self, payload: Any, *, model: str) -> Response:
        """Parse a complete (non-streamed) response.

        Raises ``KeyError``/``ValueError``/``TypeError`` for payloads that
        lack the expected shape.
        """
        ...

    def iter_chunks(self, lines: Iterable[str]) -> Iterator[Any]:
        """Decode transport lines into provider-native chunks."""
        ...

    def chunk_parser(self) -> Callable[[Mapping[str, Any]], ChunkDelta]:
        """Return a chunk parser for one stream (may hold per-stream state)."""
        ...

    def build_models_request(self) -> ChatRequest:
        """Build the model-listing request."""
        ...

    def parse_models(self, payload: Any) -> list[ModelDescriptor]:
        """Parse the model-listing response."""
        ...

    def capabilities(self, model: str) -> DriverCapabilities:
        """Feature flags for *model*."""
        ...
