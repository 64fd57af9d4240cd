"""
Query Result Cache for QueryDeck
Caches whole execute-queries batches so repeated dashboard refreshes with
identical filters skip the database.
"""

import hashlib
import json
import logging
import threading
from typing import Optional, Any, Callable, Dict
from datetime import datetime
from dataclasses import dataclass, asdict
from collections import OrderedDict

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    """Cache entry with metadata"""
    key: str
    value: Any
    created_at: datetime
    last_accessed: datetime
    access_count: int
    ttl_seconds: int

    def is_expired(self) -> bool:
        age = (datetime.now() - self.created_at).total_seconds()
        return age > self.ttl_seconds

    def to_dict(self) -> dict:
        data = asdict(self)
        data['created_at'] = self.created_at.isoformat()
        data['last_accessed'] = self.last_accessed.isoformat()
        return data


class QueryCache:
    """LRU cache with TTL and per-key compute deduplication"""

    def __init__(self, max_size: int = 1000, default_ttl: int = 60):
        """
        Args:
            max_size: Maximum number of entries
            default_ttl: Default TTL in seconds
        """
        self.max_size = max_size
        self.default_ttl = default_ttl
        self._cache: OrderedDict[str, CacheEntry] = OrderedDict()
        self._lock = threading.RLock()
        self._key_locks: Dict[str, threading.Lock] = {}
        self._stats = {
            "hits": 0,
            "misses": 0,
            "evictions": 0,
            "expirations": 0
        }

    @staticmethod
    def generate_key(namespace: str, payload: Dict[str, Any]) -> str:
        """
        Deterministic key: '<namespace>:<sha256 of sorted JSON payload>'.

        The namespace stays readable so invalidate_prefix() can target it.
        """
        content = json.dumps(payload, sort_keys=True, default=str)
        return f"{namespace}:{hashlib.sha256(content.encode()).hexdigest()}"

    def get(self, key: str) -> Optional[Any]:
        """Cached value, or None if missing/expired."""
        with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                self._stats["misses"] += 1
                return None

            if entry.is_expired():
                logger.debug(f"[CACHE] Entry expired: {key[:48]}...")
                del self._cache[key]
                self._stats["misses"] += 1
                self._stats["expirations"] += 1
                return None

            entry.last_accessed = datetime.now()
            entry.access_count += 1
            self._cache.move_to_end(key)
            self._stats["hits"] += 1
            logger.debug(f"[CACHE] Hit: {key[:48]}... (access count: {entry.access_count})")
            return entry.value

    def set(self, key: str, value: Any, ttl: Optional[int] = None):
        with self._lock:
            if key not in self._cache and len(self._cache) >= self.max_size:
                evicted_key, _ = self._cache.popitem(last=False)
                self._stats["evictions"] += 1
                logger.debug(f"[CACHE] Evicted: {evicted_key[:48]}...")

            now = datetime.now()
            self._cache[key] = CacheEntry(
                key=key,
                value=value,
                created_at=now,
                last_accessed=now,
                access_count=0,
                ttl_seconds=ttl if ttl is not None else self.default_ttl,
            )
            self._cache.move_to_end(key)

    def get_or_compute(self, key: str, compute: Callable[[], Any], ttl: Optional[int] = None) -> Any:
        """
        Return the cached value or compute, cache and return it.

        Concurrent callers for the same key wait for a single computation.
        Exceptions from `compute` propagate and nothing is cached.
        """
        cached = self.get(key)
        if cached is not None:
            return cached

        with self._lock:
            key_lock = self._key_locks.setdefault(key, threading.Lock())

        with key_lock:
            # Another caller may have filled it while we waited
            with self._lock:
                entry = self._cache.get(key)
                if entry is not None and not entry.is_expired():
                    return entry.value

            try:
                value = compute()
                self.set(key, value, ttl=ttl)
                return value
            finally:
                with self._lock:
                    self._key_locks.pop(key, None)

    def invalidate(self, key: str):
        with self._lock:
            if self._cache.pop(key, None) is not None:
                logger.debug(f"[CACHE] Invalidated: {key[:48]}...")

    def invalidate_prefix(self, prefix: str) -> int:
        """Drop every entry whose key starts with `prefix`."""
        with self._lock:
            keys = [k for k in self._cache if k.startswith(prefix)]
            for key in keys:
                del self._cache[key]
        if keys:
            logger.info(f"[CACHE] Invalidated {len(keys)} entries with prefix '{prefix}'")
        return len(keys)

    def clear(self):
        with self._lock:
            count = len(self._cache)
            self._cache.clear()
        logger.info(f"[CACHE] Cleared {count} entries")

    def cleanup_expired(self) -> int:
        """Remove all expired entries"""
        with self._lock:
            expired_keys = [key for key, entry in self._cache.items() if entry.is_expired()]
            for key in expired_keys:
                del self._cache[key]
                self._stats["expirations"] += 1

        if expired_keys:
            logger.info(f"[CACHE] Cleaned up {len(expired_keys)} expired entries")
        return len(expired_keys)

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            total_requests = self._stats["hits"] + self._stats["misses"]
            hit_rate = self._stats["hits"] / total_requests if total_requests > 0 else 0

            return {
                "total_entries": len(self._cache),
                "max_size": self.max_size,
                "utilization": len(self._cache) / self.max_size,
                "pending_computations": len(self._key_locks),
                "hits": self._stats["hits"],
                "misses": self._stats["misses"],
                "hit_rate": hit_rate,
                "evictions": self._stats["evictions"],
                "expirations": self._stats["expirations"],
            }

    def reset_stats(self):
        with self._lock:
            self._stats = {
                "hits": 0,
                "misses": 0,
                "evictions": 0,
                "expirations": 0
            }
        logger.info("[CACHE] Statistics reset")
