"""
In-process TTL cache for resolved VAST documents.

Entries are checked for expiry on read; an optional periodic sweep
evicts entries nobody reads again.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from urllib.parse import parse_qs, urlsplit

from vastunwrap.common.logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class CacheEntry:
    """A cached value, its absolute expiry (clock seconds) and the wrapper
    chain depth it was resolved through."""

    value: str
    expires_at: float
    depth: int = 0


class ResolutionCache:
    """
    Thread-safe mapping of key -> (value, expiry).

    The lock only brackets dictionary access; it is never held across
    network I/O.
    """

    def __init__(
        self,
        ttl_ms: int = 60000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl_s = ttl_ms / 1000
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get(self, key: str) -> str | None:
        """Get a value, evicting it if it has expired."""
        entry = self.get_entry(key)
        return None if entry is None else entry.value

    def get_entry(self, key: str) -> CacheEntry | None:
        """Get the live entry for ``key``, evicting it if it has expired."""
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.expires_at <= now:
                del self._entries[key]
                return None
            return entry

    def set(self, key: str, value: str, ttl_ms: int | None = None, *, depth: int = 0) -> None:
        """
        Store a value.

        Args:
            key: Cache key.
            value: Serialized document.
            ttl_ms: Time to live in milliseconds (defaults to the cache TTL).
            depth: Wrapper hops walked to produce ``value``.
        """
        if self._ttl_s <= 0 and ttl_ms is None:
            return
        ttl_s = self._ttl_s if ttl_ms is None else ttl_ms / 1000
        entry = CacheEntry(value=value, expires_at=self._clock() + ttl_s, depth=depth)
        with self._lock:
            self._entries[key] = entry

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def sweep(self) -> int:
        """Evict every expired entry. Returns the number evicted."""
        now = self._clock()
        with self._lock:
            expired = [k for k, e in self._entries.items() if e.expires_at <= now]
            for k in expired:
                del self._entries[k]
        if expired:
            logger.debug("Cache sweep", evicted=len(expired))
        return len(expired)


# ==================== Key Builders ====================


class CacheKeys:
    """Cache key builders."""

    @staticmethod
    def vast_id(vast_id: str) -> str:
        return f"vastid:{vast_id}"

    @staticmethod
    def url(url: str) -> str:
        return f"url:{url}"

    @staticmethod
    def for_ad_tag(url: str) -> str:
        """Key on the embedded ``vastid`` ad identifier when present, else the URL."""
        try:
            params = parse_qs(urlsplit(url).query)
        except ValueError:
            return CacheKeys.url(url)
        vast_ids = [v for v in params.get("vastid", []) if v]
        if vast_ids:
            return CacheKeys.vast_id(vast_ids[0])
        return CacheKeys.url(url)
