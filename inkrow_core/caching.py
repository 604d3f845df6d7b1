"""
Caching - Content-addressed result cache with TTL eviction

Shared by recognition (keyed by tile content hash) and validation (keyed by
the predecessor/current/settings hash triple). Callers get a namespaced view
so that both key spaces live in one backend without colliding.

Expired entries are purged lazily on access and eagerly when a disk cache is
loaded; there is no background purge timer.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio | 2026-01-12
"""

import hashlib
import json
import logging
import threading
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from inkrow_core.errors import CacheCorrupt

logger = logging.getLogger(__name__)

# Entries expire after 7 days
DEFAULT_TTL = 7 * 24 * 3600.0

Clock = Callable[[], float]


@dataclass
class CacheEntry:
    """A cached value."""

    key: str
    value: Any
    created_at: float = field(default_factory=time.time)
    accessed_at: float = field(default_factory=time.time)
    access_count: int = 0
    ttl: Optional[float] = None  # Time to live in seconds

    def is_expired(self, now: Optional[float] = None) -> bool:
        """Check if entry has expired."""
        if self.ttl is None:
            return False
        now = time.time() if now is None else now
        return now - self.created_at > self.ttl

    def touch(self, now: Optional[float] = None):
        """Update access time and count."""
        self.accessed_at = time.time() if now is None else now
        self.access_count += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "value": self.value,
            "created_at": self.created_at,
            "accessed_at": self.accessed_at,
            "access_count": self.access_count,
            "ttl": self.ttl,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CacheEntry":
        return cls(
            key=data["key"],
            value=data["value"],
            created_at=float(data["created_at"]),
            accessed_at=float(data.get("accessed_at", data["created_at"])),
            access_count=int(data.get("access_count", 0)),
            ttl=data.get("ttl"),
        )


class CacheBackend(ABC):
    """Abstract cache backend."""

    @abstractmethod
    def get(self, key: str) -> Optional[CacheEntry]:
        """Get entry by key (None when missing or expired)."""
        pass

    @abstractmethod
    def set(self, entry: CacheEntry):
        """Store entry."""
        pass

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Delete entry by key. Returns True if it existed."""
        pass

    @abstractmethod
    def clear(self):
        """Clear all entries."""
        pass

    @abstractmethod
    def size(self) -> int:
        """Number of entries."""
        pass

    @abstractmethod
    def keys(self) -> List[str]:
        """All stored keys."""
        pass

    @abstractmethod
    def purge_expired(self) -> int:
        """Remove expired entries. Returns count removed."""
        pass


class InMemoryCache(CacheBackend):
    """
    In-memory LRU cache with size and TTL limits.

    Thread-safe implementation using OrderedDict.
    """

    def __init__(
        self,
        max_size: int = 5000,
        default_ttl: Optional[float] = DEFAULT_TTL,
        clock: Optional[Clock] = None,
    ):
        """
        Initialize in-memory cache.

        Args:
            max_size: Maximum number of entries
            default_ttl: Default time-to-live in seconds (None = no expiry)
            clock: Time source (defaults to time.time)
        """
        self.max_size = max_size
        self.default_ttl = default_ttl
        self.clock = clock or time.time
        self._cache: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._lock = threading.RLock()

    def get(self, key: str) -> Optional[CacheEntry]:
        """Get entry, moving to end (most recently used)."""
        with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                return None

            now = self.clock()
            if entry.is_expired(now):
                del self._cache[key]
                logger.debug(f"Purged expired cache entry: {key}")
                return None

            self._cache.move_to_end(key)
            entry.touch(now)
            return entry

    def set(self, entry: CacheEntry):
        """Store entry, evicting oldest if at capacity."""
        with self._lock:
            if entry.ttl is None:
                entry.ttl = self.default_ttl

            if entry.key in self._cache:
                del self._cache[entry.key]

            while len(self._cache) >= self.max_size:
                self._cache.popitem(last=False)

            self._cache[entry.key] = entry

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._cache.pop(key, None) is not None

    def clear(self):
        with self._lock:
            self._cache.clear()

    def size(self) -> int:
        return len(self._cache)

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._cache.keys())

    def purge_expired(self) -> int:
        removed = 0
        now = self.clock()
        with self._lock:
            expired_keys = [k for k, v in self._cache.items() if v.is_expired(now)]
            for key in expired_keys:
                del self._cache[key]
                removed += 1
        if removed:
            logger.debug(f"Purged {removed} expired cache entries")
        return removed


class DiskCache(CacheBackend):
    """
    Disk-based cache using JSON files.

    Each entry is stored as a separate file named after the hash of its key.
    An index file maps keys to creation time and TTL so that expired entries
    can be purged without opening every file.
    """

    INDEX_NAME = "cache_index.json"

    def __init__(
        self,
        cache_dir: Path,
        max_size: int = 10000,
        default_ttl: Optional[float] = DEFAULT_TTL,
        clock: Optional[Clock] = None,
    ):
        """
        Initialize disk cache and purge expired entries.

        Args:
            cache_dir: Directory to store cache files
            max_size: Maximum number of entries
            default_ttl: Default time-to-live in seconds
            clock: Time source (defaults to time.time)
        """
        self.cache_dir = Path(cache_dir)
        self.max_size = max_size
        self.default_ttl = default_ttl
        self.clock = clock or time.time
        self.cache_dir.mkdir(parents=True, exist_ok=True)

        self.index_path = self.cache_dir / self.INDEX_NAME
        self._index: Dict[str, Dict[str, Any]] = {}  # key -> {created_at, ttl}
        self._lock = threading.RLock()
        self._load_index()
        self.purge_expired()

    def _load_index(self):
        """Load index from disk, dropping malformed records."""
        if not self.index_path.exists():
            return
        try:
            with open(self.index_path, "r", encoding="utf-8") as f:
                raw = json.load(f)
            if not isinstance(raw, dict):
                raise CacheCorrupt("index is not a mapping")
        except Exception as e:
            logger.warning(f"Failed to load cache index, starting empty: {e}")
            self._index = {}
            return

        for key, meta in raw.items():
            if isinstance(meta, dict) and isinstance(meta.get("created_at"), (int, float)):
                self._index[key] = {"created_at": meta["created_at"], "ttl": meta.get("ttl")}
            else:
                logger.warning(f"{CacheCorrupt.kind.value}: dropping index record for {key}")

    def _save_index(self):
        try:
            with open(self.index_path, "w", encoding="utf-8") as f:
                json.dump(self._index, f)
        except Exception as e:
            logger.warning(f"Failed to save cache index: {e}")

    def _key_to_path(self, key: str) -> Path:
        """Convert key to file path."""
        digest = hashlib.sha256(key.encode("utf-8")).hexdigest()[:32]
        return self.cache_dir / f"{digest}.json"

    def _is_expired(self, meta: Dict[str, Any], now: float) -> bool:
        ttl = meta.get("ttl")
        return ttl is not None and now - meta["created_at"] > ttl

    def get(self, key: str) -> Optional[CacheEntry]:
        with self._lock:
            meta = self._index.get(key)
            if meta is None:
                return None

            now = self.clock()
            if self._is_expired(meta, now):
                self.delete(key)
                return None

            path = self._key_to_path(key)
            try:
                with open(path, "r", encoding="utf-8") as f:
                    data = json.load(f)
                entry = CacheEntry.from_dict(data)
                if entry.key != key:
                    raise CacheCorrupt(f"key mismatch in {path.name}")
            except Exception as e:
                logger.warning(f"{CacheCorrupt.kind.value}: dropping entry {key}: {e}")
                self.delete(key)
                return None

            entry.touch(now)
            return entry

    def set(self, entry: CacheEntry):
        with self._lock:
            if entry.ttl is None:
                entry.ttl = self.default_ttl

            while entry.key not in self._index and len(self._index) >= self.max_size:
                oldest_key = min(self._index, key=lambda k: self._index[k]["created_at"])
                self.delete(oldest_key)

            path = self._key_to_path(entry.key)
            try:
                with open(path, "w", encoding="utf-8") as f:
                    json.dump(entry.to_dict(), f)
                self._index[entry.key] = {"created_at": entry.created_at, "ttl": entry.ttl}
                self._save_index()
            except Exception as e:
                logger.warning(f"Failed to save cache entry {entry.key}: {e}")

    def delete(self, key: str) -> bool:
        with self._lock:
            existed = self._index.pop(key, None) is not None
            path = self._key_to_path(key)
            try:
                if path.exists():
                    path.unlink()
                if existed:
                    self._save_index()
            except Exception as e:
                logger.warning(f"Failed to delete cache entry {key}: {e}")
            return existed

    def clear(self):
        for key in self.keys():
            self.delete(key)

    def size(self) -> int:
        return len(self._index)

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._index.keys())

    def purge_expired(self) -> int:
        now = self.clock()
        with self._lock:
            expired = [k for k, meta in self._index.items() if self._is_expired(meta, now)]
            for key in expired:
                self.delete(key)
        if expired:
            logger.info(f"Purged {len(expired)} expired entries from {self.cache_dir}")
        return len(expired)


class NamespacedCache:
    """
    A caller's view of a shared backend.

    Keys are stored as ``<namespace>:<key>`` and values must be
    JSON-serializable so that any backend can hold them.
    """

    def __init__(
        self,
        backend: CacheBackend,
        namespace: str,
        default_ttl: Optional[float] = DEFAULT_TTL,
    ):
        self.backend = backend
        self.namespace = namespace
        self.default_ttl = default_ttl

        # Statistics
        self.hits = 0
        self.misses = 0

    def _full_key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    def get(self, key: str) -> Optional[Any]:
        """Get cached value or None."""
        entry = self.backend.get(self._full_key(key))
        if entry is None:
            self.misses += 1
            return None
        self.hits += 1
        logger.debug(f"Cache hit ({self.namespace}): {key}")
        return entry.value

    def put(self, key: str, value: Any, ttl: Optional[float] = None):
        """Store a value. Rewriting an identical key is idempotent."""
        clock = getattr(self.backend, "clock", time.time)
        now = clock()
        entry = CacheEntry(
            key=self._full_key(key),
            value=value,
            created_at=now,
            accessed_at=now,
            ttl=ttl if ttl is not None else self.default_ttl,
        )
        self.backend.set(entry)

    def delete(self, key: str) -> bool:
        return self.backend.delete(self._full_key(key))

    def __contains__(self, key: str) -> bool:
        return self.backend.get(self._full_key(key)) is not None

    def keys(self) -> List[str]:
        """Keys of this namespace, without the prefix."""
        prefix = f"{self.namespace}:"
        return [k[len(prefix):] for k in self.backend.keys() if k.startswith(prefix)]

    def clear(self) -> int:
        """Delete every entry of this namespace."""
        keys = self.keys()
        for key in keys:
            self.delete(key)
        return len(keys)

    def purge_expired(self) -> int:
        """Purge expired entries of the shared backend."""
        return self.backend.purge_expired()

    @property
    def stats(self) -> Dict[str, Any]:
        total = self.hits + self.misses
        return {
            "namespace": self.namespace,
            "size": len(self.keys()),
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": self.hits / total if total > 0 else 0.0,
        }


def create_cache_backend(
    backend: str = "memory",
    cache_dir: Optional[Path] = None,
    max_size: int = 5000,
    ttl: Optional[float] = DEFAULT_TTL,
) -> CacheBackend:
    """
    Factory for cache backends.

    Args:
        backend: "memory" or "disk"
        cache_dir: Directory for disk cache
        max_size: Maximum entries
        ttl: Default time-to-live in seconds
    """
    if backend == "disk":
        if cache_dir is None:
            cache_dir = Path(".inkrow/cache")
        return DiskCache(cache_dir=Path(cache_dir), max_size=max_size, default_ttl=ttl)
    if backend != "memory":
        logger.warning(f"Unknown cache backend '{backend}', using memory")
    return InMemoryCache(max_size=max_size, default_ttl=ttl)
