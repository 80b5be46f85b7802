from __future__ import annotations

import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

logger = logging.getLogger(__name__)

_MISSING = object()


class CacheManager:
    """
    In-process key/value cache with per-key TTL.

    Holds the enabled-rule list (key 'rules:all') and cached alert-list responses
    ('alerts:list:...'). Writers invalidate by prefix after any alert mutation or sweep.

    Not thread-safe; used from the single asyncio event loop only.
    """

    def __init__(self, default_ttl: int = 300, clock: Callable[[], float] = time.monotonic):
        self._store: Dict[str, Tuple[Any, Optional[float]]] = {}
        self._default_ttl = int(default_ttl)
        self._clock = clock
        self.hits = 0
        self.misses = 0

    def _expired(self, expires: Optional[float]) -> bool:
        return expires is not None and self._clock() >= expires

    def get(self, key: str, default: Any = None) -> Any:
        """Return the cached value, or default on miss/expiry."""
        entry = self._store.get(key)
        if entry is None or self._expired(entry[1]):
            if entry is not None:
                self._store.pop(key, None)
                logger.debug("Cache EXPIRED: %s", key)
            self.misses += 1
            logger.debug("Cache MISS: %s", key)
            return default
        self.hits += 1
        logger.debug("Cache HIT: %s", key)
        return entry[0]

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        """Store value; ttl <= 0 means no expiry."""
        ttl = self._default_ttl if ttl is None else int(ttl)
        expires = self._clock() + ttl if ttl > 0 else None
        self._store[key] = (value, expires)
        logger.debug("Cache SET: %s (ttl=%s)", key, ttl)

    def delete(self, key: str) -> bool:
        removed = self._store.pop(key, _MISSING) is not _MISSING
        if removed:
            logger.debug("Cache DEL: %s", key)
        return removed

    def invalidate_pattern(self, prefix: str) -> int:
        """Drop every key starting with prefix; returns the number removed."""
        keys = [k for k in self._store if k.startswith(prefix)]
        for k in keys:
            self._store.pop(k, None)
        if keys:
            logger.debug("Cache invalidated %d key(s) with prefix=%s", len(keys), prefix)
        return len(keys)

    async def get_or_set(self, key: str, fetch: Callable[[], Awaitable[Any]], ttl: Optional[int] = None) -> Any:
        """Return the cached value or await fetch() and cache its result."""
        value = self.get(key, _MISSING)
        if value is not _MISSING:
            return value
        value = await fetch()
        self.set(key, value, ttl)
        return value

    def get_stats(self) -> Dict[str, Any]:
        total = self.hits + self.misses
        return {
            "hits": self.hits,
            "misses": self.misses,
            "hitRate": (self.hits / total) if total else 0.0,
            "keys": len(self._store),
        }
