"""
Result cache for portfolio_engine

A TTL map keyed by a deterministic fingerprint of the inputs. One
instance is created at process start and injected into the correlation
engine and the optimizer; each caller chooses its own TTL.

Concurrent misses on the same key are single-flighted: the first caller
computes, the others wait on the per-key lock and then read the stored
result.
"""

import hashlib
import json
import threading
import time
from collections import OrderedDict
from dataclasses import is_dataclass, asdict
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple


def _default(obj: Any) -> Any:
    if isinstance(obj, Enum):
        return obj.value
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    if is_dataclass(obj):
        return asdict(obj)
    if isinstance(obj, (set, frozenset)):
        return sorted(obj, key=str)
    return str(obj)


def fingerprint(*parts: Any) -> str:
    """sha256 over a canonical JSON encoding of the parts."""
    payload = json.dumps(parts, sort_keys=True, default=_default, separators=(",", ":"))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class ResultCache:
    """
    Thread-safe TTL cache with LRU eviction.

    clock is injectable so expiry can be tested without sleeping.
    """

    def __init__(
        self,
        ttl_seconds: float = 300,
        max_entries: int = 512,
        clock: Callable[[], float] = time.monotonic
    ):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock

        self._lock = threading.Lock()
        # key -> (expires_at, value)
        self._entries: "OrderedDict[str, Tuple[float, Any]]" = OrderedDict()
        self._key_locks: Dict[str, threading.Lock] = {}

        self._hits = 0
        self._misses = 0
        self._evictions = 0

    def _lookup(self, key: str) -> Tuple[bool, Any]:
        # Caller holds self._lock
        entry = self._entries.get(key)
        if entry is None:
            return False, None
        expires_at, value = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            self._evictions += 1
            return False, None
        self._entries.move_to_end(key)
        return True, value

    def get(self, key: str) -> Optional[Any]:
        """Stored value, or None when missing or expired."""
        with self._lock:
            found, value = self._lookup(key)
            if found:
                self._hits += 1
                return value
            self._misses += 1
            return None

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        ttl = self.ttl_seconds if ttl is None else ttl
        with self._lock:
            self._entries[key] = (self._clock() + ttl, value)
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)
                self._evictions += 1

    def get_or_compute(
        self,
        key: str,
        compute: Callable[[], Any],
        ttl: Optional[float] = None,
        force_refresh: bool = False
    ) -> Tuple[Any, bool]:
        """
        Return (value, from_cache), computing at most once per key at a time.

        force_refresh skips the lookup and replaces the stored value.
        """
        if not force_refresh:
            cached = self.get(key)
            if cached is not None:
                return cached, True

        with self._lock:
            key_lock = self._key_locks.setdefault(key, threading.Lock())

        try:
            with key_lock:
                if not force_refresh:
                    # Another thread may have filled the entry while we waited
                    with self._lock:
                        found, value = self._lookup(key)
                    if found:
                        return value, True
                value = compute()
                self.set(key, value, ttl)
        finally:
            with self._lock:
                if self._key_locks.get(key) is key_lock and not key_lock.locked():
                    del self._key_locks[key]
        return value, False

    def invalidate(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._hits = 0
            self._misses = 0
            self._evictions = 0

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            lookups = self._hits + self._misses
            return {
                "entries": len(self._entries),
                "hits": self._hits,
                "misses": self._misses,
                "evictions": self._evictions,
                "hit_rate": round(self._hits / lookups, 4) if lookups else 0.0,
                "ttl_seconds": self.ttl_seconds,
                "max_entries": self.max_entries,
            }
