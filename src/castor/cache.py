"""TTL cache shared by the pricing lookup and the model-list cache."""

from __future__ import annotations

from dataclasses import dataclass, field
import threading
import time
from typing import TYPE_CHECKING, Generic, TypeVar

if TYPE_CHECKING:
    from collections.abc import Callable, Hashable

V = TypeVar("V")


@dataclass
class TTLCache(Generic[V]):
    """Thread-safe key/value cache with per-entry expiration.

    Entries are replaced whole under the lock, so a reader sees either the old
    value or the new one, never a mix.
    """

    ttl_s: float = 3600.0
    clock: Callable[[], float] = time.monotonic
    _entries: dict[Hashable, tuple[V, float]] = field(
        default_factory=dict, init=False, repr=False
    )
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def get(self, key: Hashable) -> V | None:
        """Return the value for *key* if present and not expired."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if self.clock() >= expires_at:
                del self._entries[key]
                return None
            return value

    def set(self, key: Hashable, value: V, ttl_s: float | None = None) -> None:
        """Store *value* with expiration ``now + ttl``."""
        ttl = self.ttl_s if ttl_s is None else ttl_s
        expires_at = self.clock() + max(0.0, ttl)
        with self._lock:
            self._entries[key] = (value, expires_at)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
