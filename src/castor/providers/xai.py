"""xAI (Grok) dialect: OpenAI-compatible chat completions."""

from __future__ import annotations

from castor.models import DriverCapabilities
from castor.providers.openai import OpenAIDialect


class XAIDialect(OpenAIDialect):
    """``https://api.x.ai/v1`` speaks the OpenAI wire format."""

    name = "xai"

    def capabilities(self, model: str) -> DriverCapabilities:
        return DriverCapabilities(
            streaming=True,
            function_calling=True,
            vision="vision" in model or model.startswith("grok-4"),
            json_mode=True,
        )
