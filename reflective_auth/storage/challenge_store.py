from __future__ import annotations

import threading
import time
from typing import Any, Callable, Dict, Mapping, Optional, Protocol, Tuple

from reflective_auth.logging import get_logger

logger = get_logger(__name__)

Clock = Callable[[], float]


class ChallengeStore(Protocol):
    """Keyed, TTL-expiring store for ephemeral challenge records.

    ``increment_field`` must be a single atomic operation against the store;
    it returns the new value, or ``None`` when the key does not exist (it
    never creates a key). Failures to reach the store raise
    :class:`reflective_auth.storage.errors.StoreError`.
    """

    async def connect(self) -> None: ...

    async def close(self) -> None: ...

    async def ping(self) -> None: ...

    async def set(self, key: str, value: Mapping[str, Any], ttl_seconds: int) -> None: ...

    async def get(self, key: str) -> Optional[Dict[str, Any]]: ...

    async def delete(self, key: str) -> bool: ...

    async def increment_field(self, key: str, field: str, amount: int = 1) -> Optional[int]: ...

    async def check_rate_limit(self, key: str, limit: int, window_seconds: int) -> bool: ...


class MemoryChallengeStore:
    """Single-process challenge store.

    Entries expire lazily on access; :meth:`sweep_expired` reclaims memory for
    keys nobody reads again. The clock is injectable so expiry can be driven
    from tests.
    """

    def __init__(self, *, clock: Clock = time.time) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: Dict[str, Tuple[Dict[str, Any], float]] = {}
        self._buckets: Dict[str, Tuple[float, float]] = {}

    async def connect(self) -> None:
        return None

    async def close(self) -> None:
        with self._lock:
            self._entries.clear()
            self._buckets.clear()

    async def ping(self) -> None:
        return None

    def _live_entry(self, key: str) -> Optional[Tuple[Dict[str, Any], float]]:
        # Caller holds the lock
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() >= entry[1]:
            self._entries.pop(key, None)
            return None
        return entry

    async def set(self, key: str, value: Mapping[str, Any], ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        with self._lock:
            self._entries[key] = (dict(value), self._clock() + ttl_seconds)

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            entry = self._live_entry(key)
            return dict(entry[0]) if entry else None

    async def delete(self, key: str) -> bool:
        with self._lock:
            entry = self._live_entry(key)
            self._entries.pop(key, None)
            return entry is not None

    async def increment_field(self, key: str, field: str, amount: int = 1) -> Optional[int]:
        with self._lock:
            entry = self._live_entry(key)
            if entry is None:
                return None
            value, _ = entry
            value[field] = int(value.get(field, 0)) + amount
            return value[field]

    async def check_rate_limit(self, key: str, limit: int, window_seconds: int) -> bool:
        """Token bucket: ``limit`` requests per ``window_seconds``, refilled continuously."""
        refill_rate = float(limit) / float(window_seconds)
        now = self._clock()
        with self._lock:
            tokens, last = self._buckets.get(key, (float(limit), now))
            tokens = min(float(limit), tokens + max(0.0, now - last) * refill_rate)
            if tokens < 1:
                self._buckets[key] = (tokens, now)
                return False
            self._buckets[key] = (tokens - 1, now)
            return True

    def sweep_expired(self) -> int:
        """Drop expired entries; returns how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [key for key, (_, expires) in self._entries.items() if now >= expires]
            for key in expired:
                self._entries.pop(key, None)
        if expired:
            logger.debug("challenge_store_swept", removed=len(expired))
        return len(expired)
