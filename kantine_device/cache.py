"""Two-tier (memory + disk) cache with per-entry TTL.

Entries are JSON-serialized. The memory tier is an LRU bounded by a byte
budget; the disk tier stores one file per key, named by the SHA-256 of the
key. Disk writes run on a single background worker so ``put`` never blocks
on I/O; reads are synchronous and only touch disk on a memory miss. File
deletes share the writer queue, so they run after writes queued before them.

Freshness is derived from the entry age relative to its TTL:

* fresh: age <= 50% of TTL
* stale: 50% of TTL < age <= TTL (usable, but callers should refresh)
* expired: age > TTL (reported as a miss and purged from both tiers)

The cache is best-effort. Serialization failures on write are logged and
ignored; unreadable entries are purged and reported as a miss.
"""

import hashlib
import json
import logging
import threading
import time
from collections import OrderedDict
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Generic, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

STALE_FRACTION = 0.5


class CacheStatus(Enum):
    FRESH = "fresh"
    STALE = "stale"
    MISS = "miss"


@dataclass(frozen=True)
class CachedResult(Generic[T]):
    """Result of a cache lookup."""

    status: CacheStatus
    value: Optional[T] = None

    @classmethod
    def fresh(cls, value: T) -> "CachedResult[T]":
        return cls(CacheStatus.FRESH, value)

    @classmethod
    def stale(cls, value: T) -> "CachedResult[T]":
        return cls(CacheStatus.STALE, value)

    @classmethod
    def miss(cls) -> "CachedResult[T]":
        return cls(CacheStatus.MISS)

    @property
    def data(self) -> Optional[T]:
        return self.value if self.status is not CacheStatus.MISS else None

    @property
    def is_hit(self) -> bool:
        return self.status is not CacheStatus.MISS

    @property
    def should_refresh(self) -> bool:
        return self.status is not CacheStatus.FRESH


@dataclass(frozen=True)
class CacheEntry:
    key: str
    payload: str
    created_at: float
    ttl: float

    @property
    def size(self) -> int:
        return len(self.payload.encode("utf-8"))

    def age(self, now: float) -> float:
        return max(0.0, now - self.created_at)

    def status(self, now: float) -> CacheStatus:
        age = self.age(now)
        if age > self.ttl:
            return CacheStatus.MISS
        if age > self.ttl * STALE_FRACTION:
            return CacheStatus.STALE
        return CacheStatus.FRESH

    def to_dict(self) -> Dict[str, Any]:
        return {"key": self.key, "payload": self.payload, "created_at": self.created_at, "ttl": self.ttl}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CacheEntry":
        return cls(
            key=str(data["key"]),
            payload=str(data["payload"]),
            created_at=float(data["created_at"]),
            ttl=float(data["ttl"]),
        )


class CacheKey:
    """Key builders for the data classes the device caches.

    Tenant-scoped keys have the form ``<kind>:<tenant_slug>[:...]`` so all
    entries of a tenant can be dropped when it is removed.
    """

    ALL_TENANT_INFO = "all_tenant_info"

    @staticmethod
    def tenant_info(tenant_slug: str) -> str:
        return f"tenant_info:{tenant_slug}"

    @staticmethod
    def leaderboard(tenant_slug: str, period: str = "season", team_id: Optional[str] = None) -> str:
        return f"leaderboard:{tenant_slug}:{period}:{team_id or 'all'}"

    @staticmethod
    def belongs_to(key: str, tenant_slug: str) -> bool:
        parts = key.split(":")
        return len(parts) >= 2 and parts[1] == tenant_slug


class TieredCache:
    """Memory + disk cache. See the module docstring for the semantics."""

    def __init__(
        self,
        directory: Path,
        max_memory_bytes: int = 50 * 1024 * 1024,
        clock: Callable[[], float] = time.time
    ) -> None:
        """Initialize the cache.

        Args:
            directory: Directory for the disk tier; created if missing.
            max_memory_bytes: Byte budget of the memory tier.
            clock: Returns the current time in seconds.
        """
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self.max_memory_bytes = max_memory_bytes
        self._clock = clock
        self._memory: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._memory_bytes = 0
        self._lock = threading.RLock()
        self._writer = ThreadPoolExecutor(max_workers=1, thread_name_prefix="kantine-cache")
        self._stats = {"hits": 0, "misses": 0, "writes": 0, "evictions": 0, "purged": 0}

    # Public API

    def put(self, key: str, value: Any, ttl: float) -> bool:
        """Store ``value`` under ``key`` for ``ttl`` seconds.

        Returns:
            True if the value was accepted, False if it could not be
            serialized (nothing is stored in that case).
        """
        try:
            payload = json.dumps(value)
        except (TypeError, ValueError) as e:
            logger.error("Failed to cache data for key %s: %s", key, e)
            return False

        entry = CacheEntry(key=key, payload=payload, created_at=self._clock(), ttl=float(ttl))
        self._remember(entry)
        self._writer.submit(self._write_entry, entry)
        with self._lock:
            self._stats["writes"] += 1
        logger.debug("Cached data for key: %s", key)
        return True

    def get(self, key: str) -> CachedResult[Any]:
        """Look up ``key``, promoting disk hits into memory."""
        now = self._clock()

        with self._lock:
            entry = self._memory.get(key)
            if entry is not None:
                self._memory.move_to_end(key)

        source = "memory"
        if entry is None:
            entry = self._read_entry(key)
            source = "disk"

        if entry is None:
            return self._miss(key)

        status = entry.status(now)
        if status is CacheStatus.MISS:
            logger.debug("Cache entry expired for key: %s", key)
            self._purge(key)
            return self._miss(key)

        try:
            value = json.loads(entry.payload)
        except ValueError as e:
            logger.warning("Failed to decode cached data for key %s: %s", key, e)
            self._purge(key)
            return self._miss(key)

        if source == "disk":
            self._remember(entry)

        with self._lock:
            self._stats["hits"] += 1
        logger.debug("Cache hit (%s, %s) for key: %s", source, status.value, key)
        return CachedResult(status, value)

    def invalidate(self, key: str) -> None:
        """Remove ``key`` from both tiers."""
        self._forget(key)
        self._run_on_writer(self._delete_file, self._path_for(key))
        logger.debug("Cache invalidated for key: %s", key)

    def invalidate_where(self, predicate: Callable[[str], bool]) -> int:
        """Remove every entry whose key matches ``predicate``.

        Returns:
            Number of disk entries removed.
        """
        with self._lock:
            for key in [k for k in self._memory if predicate(k)]:
                self._forget(key)
        return self._run_on_writer(self._delete_matching, predicate)

    def invalidate_tenant(self, tenant_slug: str) -> int:
        return self.invalidate_where(lambda key: CacheKey.belongs_to(key, tenant_slug))

    def invalidate_all(self) -> None:
        """Drop everything from both tiers."""
        with self._lock:
            self._memory.clear()
            self._memory_bytes = 0
        self._run_on_writer(self._delete_matching, lambda key: True)
        logger.info("Cache cleared")

    def sweep(self) -> int:
        """Purge expired and unreadable entries from disk and memory.

        Returns:
            Number of disk entries removed.
        """
        now = self._clock()
        with self._lock:
            for key in [k for k, e in self._memory.items() if e.status(now) is CacheStatus.MISS]:
                self._forget(key)
        removed = self._run_on_writer(self._sweep_disk, now)
        if removed:
            logger.info("Cleaned up %d expired cache entries", removed)
        return removed

    def flush(self) -> None:
        """Block until all queued disk writes have completed."""
        self._run_on_writer(lambda: None)

    def close(self) -> None:
        self._writer.shutdown(wait=True)

    @property
    def stats(self) -> Dict[str, int]:
        with self._lock:
            stats = dict(self._stats)
            stats["memory_entries"] = len(self._memory)
            stats["memory_bytes"] = self._memory_bytes
        return stats

    def __enter__(self) -> "TieredCache":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    # Memory tier

    def _remember(self, entry: CacheEntry) -> None:
        with self._lock:
            self._forget(entry.key)
            if entry.size > self.max_memory_bytes:
                return
            self._memory[entry.key] = entry
            self._memory_bytes += entry.size
            while self._memory_bytes > self.max_memory_bytes and self._memory:
                _, evicted = self._memory.popitem(last=False)
                self._memory_bytes -= evicted.size
                self._stats["evictions"] += 1

    def _forget(self, key: str) -> None:
        with self._lock:
            entry = self._memory.pop(key, None)
            if entry is not None:
                self._memory_bytes -= entry.size

    def _miss(self, key: str) -> CachedResult[Any]:
        with self._lock:
            self._stats["misses"] += 1
        logger.debug("Cache miss for key: %s", key)
        return CachedResult.miss()

    def _purge(self, key: str) -> None:
        self._forget(key)
        self._writer.submit(self._delete_file, self._path_for(key))
        with self._lock:
            self._stats["purged"] += 1

    # Disk tier

    def _path_for(self, key: str) -> Path:
        digest = hashlib.sha256(key.encode("utf-8")).hexdigest()
        return self.directory / f"{digest}.json"

    def _run_on_writer(self, func: Callable[..., T], *args: Any) -> T:
        future: Future = self._writer.submit(func, *args)
        return future.result()

    def _write_entry(self, entry: CacheEntry) -> None:
        path = self._path_for(entry.key)
        temp_file = path.with_suffix(".tmp")
        try:
            temp_file.write_text(json.dumps(entry.to_dict()), encoding="utf-8")
            temp_file.replace(path)
        except OSError as e:
            logger.error("Failed to write cache entry for key %s: %s", entry.key, e)
            self._delete_file(temp_file)

    def _read_entry(self, key: str) -> Optional[CacheEntry]:
        path = self._path_for(key)
        entry = self._load_file(path)
        if entry is None:
            return None
        if entry.key != key:
            logger.warning("Cache file %s holds key %s, expected %s", path.name, entry.key, key)
            return None
        return entry

    def _load_file(self, path: Path) -> Optional[CacheEntry]:
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.warning("Failed to read cache file %s: %s", path.name, e)
            return None

        try:
            return CacheEntry.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as e:
            logger.warning("Corrupt cache file %s removed: %s", path.name, e)
            self._delete_file(path)
            return None

    def _delete_file(self, path: Path) -> None:
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("Failed to remove cache file %s: %s", path.name, e)

    def _delete_matching(self, predicate: Callable[[str], bool]) -> int:
        removed = 0
        for path in self.directory.glob("*.json"):
            entry = self._load_file(path)
            if entry is None or predicate(entry.key):
                self._delete_file(path)
                removed += 1
        return removed

    def _sweep_disk(self, now: float) -> int:
        removed = 0
        for path in self.directory.glob("*.tmp"):
            self._delete_file(path)
        for path in self.directory.glob("*.json"):
            entry = self._load_file(path)
            if entry is None:
                removed += 1
                continue
            if entry.status(now) is CacheStatus.MISS:
                self._delete_file(path)
                removed += 1
        return removed
