"""In-process response cache with per-entry expiry.

One instance is created at service start and handed to the market-data
client; entries expire lazily on read.  Concurrent writers to the same key are
harmless because a refetched payload is equivalent to the one it replaces.
"""
from __future__ import annotations

import json
import time
from typing import Any, Callable

SERVER_TTL = 300.0
CLIENT_MIRROR_TTL = 180.0


def make_key(path: str, params: dict[str, Any] | None = None, *, v3: bool = False) -> str:
    """Deterministic cache key: API surface + path + sorted params."""
    prefix = "v3:" if v3 else ""
    return f"{prefix}{path}|{json.dumps(params or {}, sort_keys=True)}"


class TTLCache:
    """Key -> (data, timestamp) map whose entries expire after ``ttl`` seconds."""

    def __init__(self, ttl: float = SERVER_TTL, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._entries: dict[str, tuple[Any, float]] = {}

    def get(self, key: str) -> Any | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        data, stored_at = entry
        if self._clock() - stored_at < self.ttl:
            return data
        self._entries.pop(key, None)
        return None

    def set(self, key: str, data: Any) -> None:
        self._entries[key] = (data, self._clock())

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
