import time
import logging
import threading
from typing import Any, Callable, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)


class Lease:
    __slots__ = ('value', 'expires_at', 'owner')

    def __init__(self, value: Any, expires_at: float, owner: Optional[str] = None):
        self.value = value
        self.expires_at = expires_at
        self.owner = owner


class LeaseStore:
    """Named TTL store. Every entry holds a lease that expires, optionally tagged with the fingerprint that owns it."""

    def __init__(self, name: str, default_ttl: float = 300, clock: Callable[[], float] = time.monotonic):
        self.name = name
        self.default_ttl = default_ttl
        self._clock = clock
        self._entries: Dict[str, Lease] = {}
        self._lock = threading.RLock()
        self.stats = {'hits': 0, 'misses': 0, 'expired': 0}

    def get(self, key: str) -> Optional[Any]:
        """Get value if its lease has not expired"""
        with self._lock:
            lease = self._entries.get(key)
            if lease is not None:
                if self._clock() < lease.expires_at:
                    self.stats['hits'] += 1
                    return lease.value
                del self._entries[key]
                self.stats['expired'] += 1
            self.stats['misses'] += 1
            return None

    def put(self, key: str, value: Any, ttl: Optional[float] = None, owner: Optional[str] = None) -> None:
        with self._lock:
            expires_at = self._clock() + (ttl if ttl is not None else self.default_ttl)
            self._entries[key] = Lease(value, expires_at, owner)

    def add(self, key: str, value: Any, ttl: Optional[float] = None, owner: Optional[str] = None) -> bool:
        """Insert only if no live lease exists for key. Returns False when the key is taken."""
        with self._lock:
            if self.get(key) is not None:
                return False
            self.put(key, value, ttl, owner)
            return True

    def renew(self, key: str, ttl: Optional[float] = None) -> bool:
        with self._lock:
            lease = self._entries.get(key)
            if lease is None or self._clock() >= lease.expires_at:
                return False
            lease.expires_at = self._clock() + (ttl if ttl is not None else self.default_ttl)
            return True

    def pop(self, key: str) -> Optional[Any]:
        with self._lock:
            lease = self._entries.pop(key, None)
            if lease is None or self._clock() >= lease.expires_at:
                return None
            return lease.value

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def release_owner(self, owner: str) -> int:
        """Drop every lease held by an owner fingerprint"""
        with self._lock:
            keys = [k for k, lease in self._entries.items() if lease.owner == owner]
            for key in keys:
                del self._entries[key]
            return len(keys)

    def items(self) -> List[Tuple[str, Any]]:
        with self._lock:
            now = self._clock()
            return [(k, lease.value) for k, lease in self._entries.items() if now < lease.expires_at]

    def expired_items(self) -> List[Tuple[str, Any]]:
        with self._lock:
            now = self._clock()
            return [(k, lease.value) for k, lease in self._entries.items() if now >= lease.expires_at]

    def cleanup(self) -> int:
        """Remove expired entries, return count removed"""
        with self._lock:
            now = self._clock()
            expired_keys = [k for k, lease in self._entries.items() if now >= lease.expires_at]
            for key in expired_keys:
                del self._entries[key]
            self.stats['expired'] += len(expired_keys)
        if expired_keys:
            logger.debug(f"Lease store {self.name}: expired {len(expired_keys)} entries")
        return len(expired_keys)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    def __len__(self) -> int:
        return len(self.items())

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            total = self.stats['hits'] + self.stats['misses']
            hit_rate = (self.stats['hits'] / total * 100) if total > 0 else 0
            return {
                'name': self.name,
                'hits': self.stats['hits'],
                'misses': self.stats['misses'],
                'expired': self.stats['expired'],
                'hit_rate': f"{hit_rate:.1f}%",
                'size': len(self._entries),
            }
