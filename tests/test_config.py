"""Configuration boundary tests: provider defaults, credentials, options."""

from __future__ import annotations

from pydantic import BaseModel
import pytest

from castor.config import ProviderConfig
from castor.errors import ConfigurationError
from castor.options import Options
from castor.retry import RetryPolicy

pytestmark = pytest.mark.unit


def test_config_auto_resolves_api_key_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """API key should be auto-resolved from the provider's environment variable."""
    monkeypatch.setenv("XAI_API_KEY", "env-key")

    cfg = ProviderConfig(provider="xai")

    assert cfg.api_key == "env-key"


def test_explicit_api_key_takes_precedence(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("OPENAI_API_KEY", "env-key")

    cfg = ProviderConfig(provider="openai", api_key="explicit-key")

    assert cfg.api_key == "explicit-key"


@pytest.mark.parametrize(
    ("provider", "env_var"),
    [("openai", "OPENAI_API_KEY"), ("xai", "XAI_API_KEY"), ("gemini", "GEMINI_API_KEY")],
)
def test_missing_api_key_raises_clear_error(provider: str, env_var: str) -> None:
    with pytest.raises(ConfigurationError) as exc_info:
        ProviderConfig(provider=provider)  # type: ignore[arg-type]

    assert env_var in (exc_info.value.hint or "")


def test_mock_mode_and_local_providers_need_no_key() -> None:
    assert ProviderConfig(provider="openai", use_mock=True).api_key is None
    assert ProviderConfig(provider="ollama").requires_api_key is False
    assert ProviderConfig(provider="mock").model == "mock-model"


def test_provider_defaults() -> None:
    openai = ProviderConfig(provider="openai", api_key="k")
    gemini = ProviderConfig(provider="gemini", api_key="k")
    ollama = ProviderConfig(provider="ollama")

    assert openai.base_url == "https://api.openai.com/v1"
    assert openai.model == "gpt-4o-mini"
    assert openai.timeout_s == 30.0
    assert openai.retry == RetryPolicy()
    assert gemini.base_url == "https://generativelanguage.googleapis.com/v1beta"
    assert ollama.base_url == "http://localhost:11434"
    assert ollama.timeout_s == 120.0
    assert ollama.retry is not None and ollama.retry.max_attempts == 1


def test_ollama_host_env_is_honoured(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("OLLAMA_HOST", "gpu-box:11434")

    assert ProviderConfig(provider="ollama").base_url == "http://gpu-box:11434"


def test_base_url_trailing_slash_is_stripped() -> None:
    cfg = ProviderConfig(provider="openai", api_key="k", base_url="https://proxy.local/v1/")

    assert cfg.base_url == "https://proxy.local/v1"


def test_unknown_provider_is_rejected() -> None:
    with pytest.raises(ConfigurationError, match="Unknown provider"):
        ProviderConfig(provider="anthropic")  # type: ignore[arg-type]


@pytest.mark.parametrize(
    "kwargs",
    [{"timeout_s": 0}, {"models_cache_ttl_s": -1}, {"pricing_cache_ttl_s": -5}],
)
def test_invalid_numbers_are_rejected(kwargs: dict) -> None:
    with pytest.raises(ConfigurationError):
        ProviderConfig(provider="ollama", **kwargs)


def test_repr_redacts_api_key() -> None:
    cfg = ProviderConfig(provider="openai", api_key="sk-very-secret")

    assert "sk-very-secret" not in repr(cfg)
    assert "[REDACTED]" in str(cfg)


# =============================================================================
# Options
# =============================================================================


class Answer(BaseModel):
    text: str


@pytest.mark.parametrize(
    "kwargs",
    [
        {"temperature": 2.5},
        {"top_p": -0.1},
        {"max_tokens": 0},
        {"functions": [], "tools": []},
        {"response_schema": "not-a-schema"},
        {"timeout_s": -1},
        {"system_instruction": 42},
        {"safety_settings": {"HARM_CATEGORY_HARASSMENT": "BLOCK_SOMETIMES"}},
        {"safety_settings": {"HARM_CATEGORY_GOSSIP": "BLOCK_NONE"}},
    ],
)
def test_invalid_options_are_rejected(kwargs: dict) -> None:
    with pytest.raises(ConfigurationError):
        Options(**kwargs)


def test_options_normalize_stop_and_expose_definitions() -> None:
    opts = Options(stop=["END"], tools=[{"name": "f"}])

    assert opts.stop == ("END",)
    assert opts.definitions == [{"name": "f"}]
    assert Options(stop="END").stop == ("END",)


def test_response_schema_from_pydantic_model() -> None:
    opts = Options(response_schema=Answer)

    schema = opts.response_schema_json()

    assert opts.wants_json is True
    assert schema is not None
    assert schema["properties"]["text"]["type"] == "string"


def test_invalid_safety_settings_are_named() -> None:
    with pytest.raises(ConfigurationError) as exc_info:
        Options(
            safety_settings={
                "HARM_CATEGORY_HATE_SPEECH": "BLOCK_NONE",
                "HARM_CATEGORY_HARASSMENT": "block_none",
            }
        )

    assert "HARM_CATEGORY_HARASSMENT=block_none" in str(exc_info.value)
    assert "HATE_SPEECH" not in str(exc_info.value)
    assert "BLOCK_ONLY_HIGH" in (exc_info.value.hint or "")
