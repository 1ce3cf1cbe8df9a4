from __future__ import annotations
"""In-process read-through cache for resolved permission sets, keyed by (user_id, role_id)."""
import logging
import threading
import time
from typing import Any, Callable, Dict, Hashable, Optional, Tuple

logger = logging.getLogger(__name__)

DEFAULT_TTL = 300  # seconds


class PermissionCache:
    def __init__(self, ttl_seconds: float = DEFAULT_TTL, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl_seconds
        self._clock = clock
        self._entries: Dict[Tuple[Hashable, Hashable], Tuple[float, Any]] = {}
        self._lock = threading.Lock()

    def get(self, key: Tuple[Hashable, Hashable]) -> Optional[Any]:
        with self._lock:
            hit = self._entries.get(key)
            if hit is None:
                return None
            stored_at, value = hit
            if self._clock() - stored_at >= self.ttl:
                del self._entries[key]
                return None
            return value

    def set(self, key: Tuple[Hashable, Hashable], value: Any) -> None:
        with self._lock:
            self._entries[key] = (self._clock(), value)

    def get_or_compute(self, key: Tuple[Hashable, Hashable], compute: Callable[[], Any]) -> Any:
        value = self.get(key)
        if value is not None:
            logger.debug('permission cache hit %s', key)
            return value
        # Computed outside the lock; results are deterministic so a racing write is harmless.
        value = compute()
        self.set(key, value)
        return value

    def invalidate_user(self, user_id: Hashable) -> int:
        return self._drop(lambda k: k[0] == user_id)

    def invalidate_role(self, role_id: Hashable) -> int:
        return self._drop(lambda k: k[1] == role_id)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def _drop(self, pred: Callable[[Tuple[Hashable, Hashable]], bool]) -> int:
        with self._lock:
            doomed = [k for k in self._entries if pred(k)]
            for k in doomed:
                del self._entries[k]
        if doomed:
            logger.info('permission cache invalidated %d entr%s', len(doomed), 'y' if len(doomed) == 1 else 'ies')
        return len(doomed)


__all__ = ['PermissionCache', 'DEFAULT_TTL']
