"""Response caching for provider reads.

The cache is an injected dependency of the provider client, never module
state.  Keys are built from the request signature plus a hash of the bearer
token, so entries never cross users and the token itself is never stored.
"""

from __future__ import annotations

import hashlib
import json
import time
from collections import OrderedDict
from collections.abc import Callable
from typing import Any, Protocol


def cache_key(method: str, path: str, params: dict[str, Any] | None, access_token: str) -> str:
    """Build a cache key from the request signature and a token digest."""
    token_digest = hashlib.sha256(access_token.encode("utf-8")).hexdigest()[:16]
    encoded_params = json.dumps(params or {}, sort_keys=True, default=str)
    return f"{method.upper()} {path} {encoded_params} {token_digest}"


class ResponseCache(Protocol):
    def get(self, key: str) -> Any | None: ...

    def set(self, key: str, value: Any) -> None: ...

    def clear(self) -> None: ...


class TTLResponseCache:
    """Bounded in-memory cache with a fixed time-to-live.

    A non-positive *ttl_seconds* disables caching: ``get`` always misses and
    ``set`` is a no-op.  When full, the oldest entry is evicted.
    """

    def __init__(
        self,
        ttl_seconds: float,
        *,
        max_entries: int = 1024,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = ttl_seconds
        self._max_entries = max(1, max_entries)
        self._clock = clock
        self._entries: OrderedDict[str, tuple[float, Any]] = OrderedDict()

    @property
    def enabled(self) -> bool:
        return self._ttl > 0

    def get(self, key: str) -> Any | None:
        if not self.enabled:
            return None
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            return None
        return value

    def set(self, key: str, value: Any) -> None:
        if not self.enabled:
            return
        self._entries.pop(key, None)
        self._entries[key] = (self._clock() + self._ttl, value)
        while len(self._entries) > self._max_entries:
            self._entries.popitem(last=False)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
