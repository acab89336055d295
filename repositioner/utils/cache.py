"""
Short-lived in-process cache for read-mostly lookups.

Entries expire after their TTL; a miss never serves an entry past it.
Cache-internal failures are logged as CACHE_ERROR and treated as misses.
"""
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from repositioner.exceptions import ErrorKind
from repositioner.monitoring.logger import get_logger

logger = get_logger(__name__)

_MISSING = object()


class TTLCache:
    """Time-based cache keyed by stable string keys."""

    def __init__(self, ttl_seconds: int = 30, max_size: int = 1000, clock: Callable[[], datetime] | None = None):
        self.cache: Dict[str, Tuple[Any, datetime]] = {}
        self.ttl = timedelta(seconds=ttl_seconds)
        self.max_size = max_size
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def get(self, key: str) -> Optional[Any]:
        """Get cached value if not expired, else None."""
        value = self._lookup(key)
        return None if value is _MISSING else value

    def _lookup(self, key: str) -> Any:
        try:
            if key in self.cache:
                value, stored_at = self.cache[key]
                if self._clock() - stored_at < self.ttl:
                    return value
                del self.cache[key]
        except Exception as e:
            logger.warning("CACHE_LOOKUP_FAILED", kind=ErrorKind.CACHE_ERROR.value, key=key, error=str(e))
        return _MISSING

    def set(self, key: str, value: Any) -> None:
        """Cache a value."""
        try:
            self.cache[key] = (value, self._clock())
            if len(self.cache) >= self.max_size:
                self._cleanup()
        except Exception as e:
            logger.warning("CACHE_STORE_FAILED", kind=ErrorKind.CACHE_ERROR.value, key=key, error=str(e))

    def delete(self, key: str) -> None:
        self.cache.pop(key, None)

    def _cleanup(self) -> None:
        """Remove expired entries; if still full, keep the newest half."""
        now = self._clock()
        expired_keys = [k for k, (_, ts) in self.cache.items() if now - ts >= self.ttl]
        for k in expired_keys:
            del self.cache[k]

        if len(self.cache) >= self.max_size:
            sorted_items = sorted(self.cache.items(), key=lambda x: x[1][1])
            self.cache = dict(sorted_items[-self.max_size // 2:])

    def clear(self) -> None:
        """Clear all cached entries."""
        self.cache.clear()

    async def get_or_load(self, key: str, loader: Callable[[], Awaitable[Any]]) -> Any:
        """
        Return the cached value for ``key`` or await ``loader()`` and cache it.

        ``None`` results are not cached, so an absent entity is looked up again
        on the next call.
        """
        value = self._lookup(key)
        if value is not _MISSING:
            return value
        value = await loader()
        if value is not None:
            self.set(key, value)
        return value
