"""Two-tier (memory + disk) cache for fetched feeds and static data."""

import asyncio
import logging
import pickle
import time
from collections import OrderedDict
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, TypeVar, Union
from urllib.parse import quote

from .config import DEFAULT_DISK_CACHE_BYTES, DEFAULT_MEMORY_CACHE_ITEMS

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Fraction of disk entries dropped when a write would exceed the size budget
DISK_EVICTION_FRACTION = 0.2

_SUFFIX = ".cache"


@dataclass(frozen=True)
class CachePolicy:
    """How long a category of data stays fresh, in seconds."""
    name: str
    max_age: float

    @property
    def enabled(self) -> bool:
        return self.max_age > 0


CachePolicy.VEHICLE_POSITIONS = CachePolicy("vehicle_positions", 30)
CachePolicy.TRIP_UPDATES = CachePolicy("trip_updates", 60)
CachePolicy.ALERTS = CachePolicy("alerts", 300)
CachePolicy.STATIC_DATA = CachePolicy("static_data", 7 * 24 * 3600)
CachePolicy.STOP_SEARCH = CachePolicy("stop_search", 3600)
CachePolicy.NONE = CachePolicy("none", 0)


class MemoryCache:
    """In-process cache holding at most max_items entries, oldest evicted first."""

    def __init__(self, max_items: int = DEFAULT_MEMORY_CACHE_ITEMS):
        self.max_items = max_items
        self._entries: "OrderedDict[str, Tuple[float, Any]]" = OrderedDict()
        self._lock = asyncio.Lock()

    async def get(self, key: str, max_age: float) -> Optional[Any]:
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            stored_at, value = entry
            if time.time() - stored_at > max_age:
                del self._entries[key]
                return None
            return value

    async def set(self, key: str, value: Any, stored_at: Optional[float] = None) -> None:
        async with self._lock:
            self._entries.pop(key, None)
            self._entries[key] = (stored_at if stored_at is not None else time.time(), value)
            while len(self._entries) > self.max_items:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug(f"Evicted {evicted} from memory cache")

    async def remove(self, key: str) -> None:
        async with self._lock:
            self._entries.pop(key, None)

    async def clear(self) -> None:
        async with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class DiskCache:
    """
    File-per-key cache under a directory, bounded by total size in bytes.

    Values are pickled together with their write time. When a write would
    push the directory over max_bytes, the oldest 20% of entries (at least
    one) are removed first, in the same critical section as the write.
    """

    def __init__(self, directory: Union[str, Path], max_bytes: int = DEFAULT_DISK_CACHE_BYTES):
        self.directory = Path(directory)
        self.max_bytes = max_bytes
        self._lock = asyncio.Lock()
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        return self.directory / (quote(key, safe="") + _SUFFIX)

    # File work runs in the default executor while the lock is held, so the
    # event loop keeps running and each operation stays atomic.

    async def get(self, key: str, max_age: float) -> Optional[Tuple[float, Any]]:
        """Return (stored_at, value) if a fresh entry exists."""
        async with self._lock:
            return await asyncio.get_running_loop().run_in_executor(None, self._read_entry, self._path(key), max_age)

    async def set(self, key: str, value: Any) -> None:
        async with self._lock:
            await asyncio.get_running_loop().run_in_executor(None, self._write_entry, self._path(key), value)

    async def remove(self, key: str) -> None:
        async with self._lock:
            await asyncio.get_running_loop().run_in_executor(None, self._delete_entries, [self._path(key)])

    async def clear(self) -> None:
        async with self._lock:
            loop = asyncio.get_running_loop()
            entries = await loop.run_in_executor(None, self._entries)
            await loop.run_in_executor(None, self._delete_entries, entries)

    def _read_entry(self, path: Path, max_age: float) -> Optional[Tuple[float, Any]]:
        if not path.exists():
            return None
        try:
            stored_at, value = pickle.loads(path.read_bytes())
        except (OSError, pickle.UnpicklingError, EOFError, ValueError) as e:
            logger.warning(f"Discarding unreadable cache entry {path.name}: {e}")
            path.unlink(missing_ok=True)
            return None
        if time.time() - stored_at > max_age:
            path.unlink(missing_ok=True)
            return None
        return stored_at, value

    def _write_entry(self, path: Path, value: Any) -> None:
        payload = pickle.dumps((time.time(), value))
        existing = path.stat().st_size if path.exists() else 0
        if self._total_size() - existing + len(payload) > self.max_bytes:
            self._evict_oldest(exclude=path)
        path.write_bytes(payload)

    @staticmethod
    def _delete_entries(paths) -> None:
        for path in paths:
            path.unlink(missing_ok=True)

    def size(self) -> int:
        """Total bytes currently on disk."""
        return self._total_size()

    def count(self) -> int:
        return len(self._entries())

    def _entries(self):
        return [path for path in self.directory.glob(f"*{_SUFFIX}") if path.is_file()]

    def _total_size(self) -> int:
        return sum(path.stat().st_size for path in self._entries())

    def _evict_oldest(self, exclude: Optional[Path] = None) -> None:
        entries = sorted(
            (path for path in self._entries() if path != exclude),
            key=lambda p: p.stat().st_mtime,
        )
        if not entries:
            return
        count = max(1, int(len(entries) * DISK_EVICTION_FRACTION))
        for path in entries[:count]:
            path.unlink(missing_ok=True)
        logger.debug(f"Evicted {count} entries from disk cache")


class CacheManager:
    """
    Looks up the memory tier first, then the disk tier.

    Disk hits are promoted to memory. Disk failures are logged and treated as
    misses so the cache never breaks a fetch.
    """

    def __init__(self, memory: Optional[MemoryCache] = None, disk: Optional[DiskCache] = None):
        self.memory = memory if memory is not None else MemoryCache()
        self.disk = disk
        self._hits = 0
        self._misses = 0

    async def get(self, key: str, policy: CachePolicy) -> Optional[Any]:
        if not policy.enabled:
            return None

        value = await self.memory.get(key, policy.max_age)
        if value is not None:
            self._hits += 1
            logger.debug(f"Memory cache hit for {key}")
            return value

        if self.disk is not None:
            try:
                entry = await self.disk.get(key, policy.max_age)
            except OSError as e:
                logger.warning(f"Disk cache read failed for {key}: {e}")
                entry = None
            if entry is not None:
                stored_at, value = entry
                await self.memory.set(key, value, stored_at=stored_at)
                self._hits += 1
                logger.debug(f"Disk cache hit for {key}")
                return value

        self._misses += 1
        logger.debug(f"Cache miss for {key}")
        return None

    async def set(self, key: str, value: Any, policy: CachePolicy) -> None:
        if not policy.enabled:
            return
        await self.memory.set(key, value)
        if self.disk is not None:
            try:
                await self.disk.set(key, value)
            except (OSError, pickle.PicklingError) as e:
                logger.warning(f"Disk cache write failed for {key}: {e}")

    async def get_or_fetch(self, key: str, policy: CachePolicy, fetch: Callable[[], Awaitable[T]]) -> T:
        """Return the cached value for key, or await fetch() and cache its result."""
        cached = await self.get(key, policy)
        if cached is not None:
            return cached
        value = await fetch()
        await self.set(key, value, policy)
        return value

    async def remove(self, key: str) -> None:
        await self.memory.remove(key)
        if self.disk is not None:
            await self.disk.remove(key)

    async def clear(self) -> None:
        await self.memory.clear()
        if self.disk is not None:
            await self.disk.clear()
        logger.info("Cleared cache")

    def statistics(self) -> Dict[str, int]:
        stats = {
            "memory_items": len(self.memory),
            "hits": self._hits,
            "misses": self._misses,
        }
        if self.disk is not None:
            stats["disk_items"] = self.disk.count()
            stats["disk_bytes"] = self.disk.size()
        return stats
