"""
Two-tier response cache for metadata API queries.

A durable on-disk store shared by every run in the same output directory is
tried first; a bounded in-process LRU store is always written as a mirror and
answers every read while the durable tier is unavailable.
"""

import asyncio
import hashlib
import json
import logging
import re
import time
from collections import OrderedDict
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 24 * 60 * 60
DEFAULT_MAX_ITEMS = 5000
DEFAULT_MAX_BYTES = 50 * 1024 * 1024
DEFAULT_RECONNECT_INTERVAL = 30.0

_WHITESPACE_RE = re.compile(r"\s+")


def cache_key(endpoint: str, query: str) -> str:
    """
    Fingerprint for an API query.

    Args:
        endpoint: API endpoint name
        query: Query body; whitespace differences do not change the key

    Returns:
        Hex digest
    """
    normalized = _WHITESPACE_RE.sub(' ', query or '').strip()
    return hashlib.sha1(f"{endpoint}:{normalized}".encode('utf-8')).hexdigest()


def _json_size(value: Any) -> int:
    return len(json.dumps(value, ensure_ascii=False, separators=(',', ':')))


class LocalLRUStore:
    """
    In-process cache bounded by item count and total serialized size.

    Size of an entry is the length of its compact JSON encoding. Least
    recently used entries are evicted first; expired entries are dropped on
    access.
    """

    def __init__(
        self,
        max_items: int = DEFAULT_MAX_ITEMS,
        max_bytes: int = DEFAULT_MAX_BYTES,
        clock: Callable[[], float] = time.time
    ):
        self.max_items = max_items
        self.max_bytes = max_bytes
        self._clock = clock
        self._entries: "OrderedDict[str, Tuple[Any, int, float]]" = OrderedDict()
        self._bytes = 0
        self.evictions = 0

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def total_bytes(self) -> int:
        return self._bytes

    def get(self, key: str) -> Tuple[bool, Any]:
        """
        Look up a key.

        Returns:
            (found, value); value is None when not found
        """
        entry = self._entries.get(key)
        if entry is None:
            return False, None

        value, size, expires_at = entry
        if self._clock() >= expires_at:
            self._remove(key)
            return False, None

        self._entries.move_to_end(key)
        return True, value

    def set(self, key: str, value: Any, expires_at: float) -> None:
        size = _json_size(value)
        if size > self.max_bytes:
            logger.debug(f"Value for {key} exceeds local cache size budget, not cached")
            self._remove(key)
            return

        self._remove(key)
        self._entries[key] = (value, size, expires_at)
        self._bytes += size

        while len(self._entries) > self.max_items or self._bytes > self.max_bytes:
            oldest = next(iter(self._entries))
            self._remove(oldest)
            self.evictions += 1

    def _remove(self, key: str) -> None:
        entry = self._entries.pop(key, None)
        if entry is not None:
            self._bytes -= entry[1]

    def clear(self) -> None:
        self._entries.clear()
        self._bytes = 0


class DiskStore:
    """
    Durable cache tier: one JSON file per key under a cache directory.

    Files are sharded by the first two hex characters of the key digest and
    written atomically. Every method raises OSError when the directory is
    unusable; the owning ResponseCache turns that into degraded mode.
    """

    def __init__(self, directory: Path):
        self.directory = Path(directory)

    def _path(self, key: str) -> Path:
        digest = hashlib.sha1(key.encode('utf-8')).hexdigest()
        return self.directory / digest[:2] / f"{digest}.json"

    def _read(self, key: str) -> Optional[Dict[str, Any]]:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            with open(path, 'r', encoding='utf-8') as f:
                entry = json.load(f)
        except ValueError as e:
            # Covers JSONDecodeError and UnicodeDecodeError
            logger.debug(f"Corrupt cache entry {path.name}: {e}")
            return None
        if not isinstance(entry, dict) or entry.get('key') != key:
            return None
        return entry

    def _write(self, key: str, value: Any, expires_at: float) -> None:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = path.with_suffix('.tmp')
        with open(temp_path, 'w', encoding='utf-8') as f:
            json.dump({'key': key, 'value': value, 'expires_at': expires_at}, f, ensure_ascii=False)
        temp_path.replace(path)

    def _delete(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)

    def _ping(self) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        probe = self.directory / '.probe'
        probe.write_text('ok', encoding='utf-8')
        probe.unlink()

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        return await asyncio.to_thread(self._read, key)

    async def set(self, key: str, value: Any, expires_at: float) -> None:
        await asyncio.to_thread(self._write, key, value, expires_at)

    async def delete(self, key: str) -> None:
        await asyncio.to_thread(self._delete, key)

    async def ping(self) -> None:
        await asyncio.to_thread(self._ping)


class ResponseCache:
    """
    Memoizes API responses by query fingerprint.

    Features:
    - Durable tier attempted first, local LRU mirror always written
    - Durable failures flip the cache into degraded mode and schedule
      background reconnection; callers never see the error
    - Fixed TTL for every entry in both tiers
    - Hit/miss metrics

    Example:
        cache = ResponseCache(durable=DiskStore(output_dir / '.cache'))

        key = cache_key('games', query)
        results = await cache.get(key)
        if results is None:
            results = await api.query('games', query)
            await cache.set(key, results)
    """

    def __init__(
        self,
        durable: Optional[DiskStore] = None,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        max_items: int = DEFAULT_MAX_ITEMS,
        max_bytes: int = DEFAULT_MAX_BYTES,
        reconnect_interval: float = DEFAULT_RECONNECT_INTERVAL,
        clock: Callable[[], float] = time.time
    ):
        """
        Initialize response cache.

        Args:
            durable: Durable store, or None for local-only caching
            ttl_seconds: Lifetime of every entry
            max_items: Local tier item cap
            max_bytes: Local tier size cap (serialized bytes)
            reconnect_interval: Seconds between durable reconnection attempts
            clock: Wall-clock time source (epoch seconds)
        """
        self.durable = durable
        self.ttl_seconds = ttl_seconds
        self.reconnect_interval = reconnect_interval
        self._clock = clock
        self.local = LocalLRUStore(max_items=max_items, max_bytes=max_bytes, clock=clock)

        self._degraded = False
        self._reconnect_task: Optional[asyncio.Task] = None

        # Metrics tracking
        self._hits = 0
        self._misses = 0
        self._durable_hits = 0
        self._durable_errors = 0

        logger.debug(
            f"ResponseCache initialized: durable={'yes' if durable else 'no'}, "
            f"ttl={ttl_seconds}s, max_items={max_items}, max_bytes={max_bytes}"
        )

    @property
    def degraded(self) -> bool:
        return self._degraded

    def _durable_available(self) -> bool:
        return self.durable is not None and not self._degraded

    def _mark_degraded(self, error: Exception) -> None:
        self._durable_errors += 1
        if not self._degraded:
            self._degraded = True
            logger.warning(
                f"Durable cache unavailable ({error}); using in-memory cache only"
            )
        self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        try:
            self._reconnect_task = asyncio.get_running_loop().create_task(self._reconnect_loop())
        except RuntimeError:
            # No running loop; the next async access reschedules
            self._reconnect_task = None

    async def _reconnect_loop(self) -> None:
        while self._degraded:
            await asyncio.sleep(self.reconnect_interval)
            try:
                await self.durable.ping()
            except OSError as e:
                logger.debug(f"Durable cache reconnect failed: {e}")
                continue
            self._degraded = False
            logger.info("Durable cache reconnected")

    async def get(self, key: str) -> Optional[Any]:
        """
        Get a cached value.

        Args:
            key: Cache key (see cache_key)

        Returns:
            Cached value, or None if absent or expired
        """
        if self._durable_available():
            try:
                entry = await self.durable.get(key)
            except OSError as e:
                self._mark_degraded(e)
                entry = None
            else:
                if entry is not None:
                    expires_at = entry.get('expires_at', 0)
                    if self._clock() < expires_at:
                        self._hits += 1
                        self._durable_hits += 1
                        self.local.set(key, entry.get('value'), expires_at)
                        return entry.get('value')
                    await self._delete_expired(key)
        elif self._degraded:
            self._schedule_reconnect()

        found, value = self.local.get(key)
        if found:
            self._hits += 1
            return value

        self._misses += 1
        return None

    async def _delete_expired(self, key: str) -> None:
        try:
            await self.durable.delete(key)
        except OSError as e:
            self._mark_degraded(e)

    async def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        """
        Store a value in both tiers.

        Args:
            key: Cache key
            value: JSON-serializable value
            ttl: Lifetime in seconds (defaults to the cache TTL)
        """
        expires_at = self._clock() + (self.ttl_seconds if ttl is None else ttl)
        self.local.set(key, value, expires_at)

        if self._durable_available():
            try:
                await self.durable.set(key, value, expires_at)
            except OSError as e:
                self._mark_degraded(e)

    async def mget(self, keys: List[str]) -> List[Optional[Any]]:
        """Get several keys; result order matches ``keys``."""
        return [await self.get(key) for key in keys]

    async def close(self) -> None:
        if self._reconnect_task is not None and not self._reconnect_task.done():
            self._reconnect_task.cancel()
            await asyncio.gather(self._reconnect_task, return_exceptions=True)
        self._reconnect_task = None

    def get_stats(self) -> Dict[str, Any]:
        """Get cache performance metrics."""
        total = self._hits + self._misses
        return {
            'hits': self._hits,
            'misses': self._misses,
            'hit_rate': (self._hits / total * 100) if total > 0 else 0.0,
            'durable_hits': self._durable_hits,
            'durable_errors': self._durable_errors,
            'degraded': self._degraded,
            'local_entries': len(self.local),
            'local_bytes': self.local.total_bytes,
            'evictions': self.local.evictions,
        }
