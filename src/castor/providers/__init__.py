"""Provider dialects."""

from __future__ import annotations

from typing import TYPE_CHECKING

from .base import Dialect
from .gemini import GeminiDialect
from .mock import MockDialect, MockTransport
from .ollama import OllamaDialect
from .openai import OpenAIDialect
from .xai import XAIDialect

if TYPE_CHECKING:
    from castor.config import ProviderConfig

_DIALECTS: dict[str, type[Dialect]] = {
    "openai": OpenAIDialect,
    "xai": XAIDialect,
    "gemini": GeminiDialect,
    "ollama": OllamaDialect,
}


def dialect_for(config: ProviderConfig) -> Dialect:
    """Return the wire dialect for *config* (the mock one when ``use_mock``)."""
    if config.use_mock or config.provider == "mock":
        return MockDialect(config)
    return _DIALECTS[config.provider](config)


__all__ = [
    "Dialect",
    "GeminiDialect",
    "MockDialect",
    "MockTransport",
    "OllamaDialect",
    "OpenAIDialect",
    "XAIDialect",
    "dialect_for",
]
