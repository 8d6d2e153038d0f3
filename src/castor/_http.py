"""Small HTTP-related constants shared across Castor.

This module is intentionally tiny to avoid circular imports and drift.
"""

from __future__ import annotations

DEFAULT_TIMEOUT_S = 30.0
USER_AGENT = "castor-llm"
