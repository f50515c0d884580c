"""
In-memory TTL cache passed explicitly to the components that use it
"""
import time
import logging
from collections import OrderedDict
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


def generate_cache_key(prefix: str, *parts: Any) -> str:
    """Join a prefix and key parts into a stable cache key"""
    return ":".join([prefix] + [str(part) for part in parts])


class TTLCache:
    """Size-bounded cache whose entries expire after a fixed time to live.

    When ``max_size`` is reached the oldest inserted entry is evicted.
    ``clock`` can be replaced in tests to control expiry.
    """

    def __init__(self, ttl_seconds: float = 3600, max_size: int = 1000,
                 clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self.max_size = max_size
        self._clock = clock
        self._entries: "OrderedDict[str, tuple]" = OrderedDict()

    def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            return None
        return value

    def set(self, key: str, value: Any, ttl_seconds: Optional[float] = None):
        ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds
        if key in self._entries:
            del self._entries[key]
        elif len(self._entries) >= self.max_size:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug(f"Cache full, evicted {evicted}")
        self._entries[key] = (value, self._clock() + ttl)

    def delete(self, key: str):
        self._entries.pop(key, None)

    def cleanup(self) -> int:
        """Remove expired entries and return how many were dropped"""
        now = self._clock()
        expired = [key for key, (_, expires_at) in self._entries.items() if now >= expires_at]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.debug(f"Removed {len(expired)} expired cache entries")
        return len(expired)

    def clear(self):
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
