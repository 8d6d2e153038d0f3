"""Castor: one driver contract for OpenAI-style, xAI, Gemini and Ollama models.

Public API:
    - Driver: send messages, stream, call tools, list models, price usage,
      check provider health
    - create_driver(): Build a Driver from a provider name or config
    - ProviderConfig / Options: Configuration and per-call options
    - Message, Response, TokenUsage: Conversation data model
"""

from __future__ import annotations

import logging
from typing import Any

from castor.classify import ErrorClassification, ErrorKind, classify
from castor.config import ProviderConfig
from castor.driver import Driver
from castor.errors import (
    CastorError,
    ConfigurationError,
    InvalidCredentialsError,
    ModelNotFoundError,
    ProviderError,
    ProviderTimeoutError,
    QuotaExceededError,
    RateLimitError,
    ServerError,
    ToolArgumentError,
)
from castor.events import CostCalculated, EventSink
from castor.models import (
    Attachment,
    CredentialCheck,
    DriverCapabilities,
    ExecutionResult,
    FunctionCall,
    HealthCheck,
    HealthStatus,
    Message,
    ModelDescriptor,
    Response,
    TokenUsage,
    ToolCall,
)
from castor.options import Options
from castor.pricing import CostBreakdown, CostEngine, PricingEntry, PricingSource, PricingStore
from castor.retry import RetryPolicy

try:
    from importlib.metadata import PackageNotFoundError, version

    __version__ = version("castor-llm")
except PackageNotFoundError:
    __version__ = "0.0.0+unknown"

# Library-level NullHandler: stay silent unless the consumer configures logging.
logging.getLogger("castor").addHandler(logging.NullHandler())


def create_driver(config: ProviderConfig | str, **kwargs: Any) -> Driver:
    """Create a driver from a config or a bare provider name.

    Keyword arguments go to ``ProviderConfig`` when *config* is a name, and to
    ``Driver`` otherwise.

    Example:
        driver = create_driver("ollama", model="llama3.1")
        print(driver.send_message("Hello").content)
    """
    if isinstance(config, str):
        return Driver(ProviderConfig(provider=config, **kwargs))  # type: ignore[arg-type]
    return Driver(config, **kwargs)


__all__ = [
    "Attachment",
    "CastorError",
    "ConfigurationError",
    "CostBreakdown",
    "CostCalculated",
    "CostEngine",
    "CredentialCheck",
    "Driver",
    "DriverCapabilities",
    "ErrorClassification",
    "ErrorKind",
    "EventSink",
    "ExecutionResult",
    "FunctionCall",
    "HealthCheck",
    "HealthStatus",
    "InvalidCredentialsError",
    "Message",
    "ModelDescriptor",
    "ModelNotFoundError",
    "Options",
    "PricingEntry",
    "PricingSource",
    "PricingStore",
    "ProviderConfig",
    "ProviderError",
    "ProviderTimeoutError",
    "QuotaExceededError",
    "RateLimitError",
    "Response",
    "RetryPolicy",
    "ServerError",
    "TokenUsage",
    "ToolArgumentError",
    "ToolCall",
    "classify",
    "create_driver",
]
