"""Configuration: frozen per-provider settings with env-resolved credentials."""

from __future__ import annotations

from dataclasses import dataclass, field
import os
from typing import Literal

from dotenv import load_dotenv

from castor.errors import ConfigurationError
from castor.retry import RetryPolicy

load_dotenv()

ProviderName = Literal["openai", "xai", "gemini", "ollama", "mock"]

_PROVIDERS: tuple[str, ...] = ("openai", "xai", "gemini", "ollama", "mock")

# Provider-specific API key environment variable names
_API_KEY_ENV_VARS: dict[str, str] = {
    "openai": "OPENAI_API_KEY",
    "xai": "XAI_API_KEY",
    "gemini": "GEMINI_API_KEY",
}

_DEFAULT_BASE_URLS: dict[str, str] = {
    "openai": "https://api.openai.com/v1",
    "xai": "https://api.x.ai/v1",
    "gemini": "https://generativelanguage.googleapis.com/v1beta",
    "ollama": "http://localhost:11434",
    "mock": "mock://local",
}

_DEFAULT_MODELS: dict[str, str] = {
    "openai": "gpt-4o-mini",
    "xai": "grok-beta",
    "gemini": "gemini-2.0-flash",
    "ollama": "llama2",
    "mock": "mock-model",
}

# Local models are slow to load and rarely benefit from retrying.
_DEFAULT_TIMEOUTS: dict[str, float] = {"ollama": 120.0}
_DEFAULT_RETRY: dict[str, RetryPolicy] = {"ollama": RetryPolicy(max_attempts=1)}


@dataclass(frozen=True)
class ProviderConfig:
    """Immutable configuration for one provider driver.

    API keys are auto-resolved from standard environment variables; base URL,
    default model, timeout and retry policy fall back to per-provider
    defaults.

    Example:
        config = ProviderConfig(provider="openai")
        # API key is automatically resolved from OPENAI_API_KEY
    """

    provider: ProviderName
    #: Default model when a call's Options do not name one.
    model: str | None = None
    #: Auto-resolved from ``OPENAI_API_KEY``/``XAI_API_KEY``/``GEMINI_API_KEY``.
    api_key: str | None = None
    #: Ollama honours ``OLLAMA_HOST`` when unset.
    base_url: str | None = None
    organization: str | None = None
    timeout_s: float | None = None
    use_mock: bool = False
    retry: RetryPolicy | None = None
    models_cache_ttl_s: float = 3600.0
    pricing_cache_ttl_s: float = 3600.0
    extra_headers: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Fill per-provider defaults and validate."""
        if self.provider not in _PROVIDERS:
            raise ConfigurationError(
                f"Unknown provider: {self.provider!r}",
                hint=f"Supported providers: {', '.join(repr(p) for p in _PROVIDERS)}",
            )
        provider = self.provider

        if self.model is None:
            object.__setattr__(self, "model", _DEFAULT_MODELS[provider])
        if self.base_url is None:
            base_url = _DEFAULT_BASE_URLS[provider]
            if provider == "ollama":
                base_url = os.environ.get("OLLAMA_HOST") or base_url
                if "://" not in base_url:
                    base_url = f"http://{base_url}"
            object.__setattr__(self, "base_url", base_url)
        object.__setattr__(self, "base_url", self.base_url.rstrip("/"))
        if self.timeout_s is None:
            object.__setattr__(
                self, "timeout_s", _DEFAULT_TIMEOUTS.get(provider, 30.0)
            )
        if self.retry is None:
            object.__setattr__(self, "retry", _DEFAULT_RETRY.get(provider, RetryPolicy()))

        if self.timeout_s <= 0:
            raise ConfigurationError(
                f"timeout_s must be > 0, got {self.timeout_s}",
                hint="This is the per-request timeout in seconds.",
            )
        if self.models_cache_ttl_s < 0 or self.pricing_cache_ttl_s < 0:
            raise ConfigurationError(
                "cache TTLs must be >= 0",
                hint="Use 0 to disable caching of model lists or prices.",
            )

        env_var = _API_KEY_ENV_VARS.get(provider)
        if env_var is None or self.use_mock:
            return

        # Auto-resolve API key from environment if not provided
        if self.api_key is None:
            object.__setattr__(self, "api_key", os.environ.get(env_var))

        if not self.api_key:
            raise ConfigurationError(
                f"API key required for {provider}",
                hint=f"Set {env_var} environment variable or pass api_key=...",
            )

    @property
    def requires_api_key(self) -> bool:
        return self.provider in _API_KEY_ENV_VARS and not self.use_mock

    def __str__(self) -> str:
        """Return a redacted, developer-friendly representation."""
        return (
            f"ProviderConfig(provider={self.provider!r}, model={self.model!r}, "
            f"base_url={self.base_url!r}, "
            f"api_key={'[REDACTED]' if self.api_key else None}, use_mock={self.use_mock})"
        )

    __repr__ = __str__
