"""
Short-TTL in-memory cache for upstream odds payloads.

Coalesces repeated fetches of the same resource (a sport's slate, one game's
odds) inside a short window.  The cache is advisory: a miss is always
satisfied by re-fetching upstream, never treated as an error.

Design:
    - Explicitly constructed and injected; there is no module-level instance.
    - ``get`` expires lazily (``now > expires_at`` → delete, miss).
    - ``cleanup`` sweeps on an APScheduler interval job started by ``start()``
      and stopped by ``stop()``.  The composition root owns that lifecycle.
    - Reads take no lock.  Writes and deletes take a short per-instance
      lock so a sweep never removes an entry refreshed after it was scanned.
      Concurrent writers to one key resolve last-write-wins.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import (
    Any,
    Callable,
    Dict,
    Generic,
    Hashable,
    Iterable,
    List,
    Mapping,
    Optional,
    Tuple,
    TypeVar,
    Union,
)

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

logger = logging.getLogger(__name__)

T = TypeVar("T")

_SWEEP_JOB_ID = "ttl_cache_cleanup"


@dataclass(frozen=True)
class CacheEntry(Generic[T]):
    data: T
    expires_at: float


class TTLCache(Generic[T]):
    """
    Time-expiring key → value store.

    Usage::

        cache = TTLCache(ttl_seconds=60, cleanup_interval_seconds=120)
        cache.start()
        games = cache.get_or_fetch("slate:basketball_ncaab", fetch_slate)
        ...
        cache.stop()
    """

    def __init__(
        self,
        ttl_seconds: float = 60,
        cleanup_interval_seconds: float = 120,
        clock: Callable[[], float] = time.monotonic,
        name: str = "odds",
    ):
        if ttl_seconds <= 0:
            raise ValueError(f"ttl_seconds must be positive, got {ttl_seconds!r}")
        if cleanup_interval_seconds <= 0:
            raise ValueError(
                f"cleanup_interval_seconds must be positive, got {cleanup_interval_seconds!r}"
            )
        self.ttl_seconds = ttl_seconds
        self.cleanup_interval_seconds = cleanup_interval_seconds
        self.name = name
        self._clock = clock
        self._store: Dict[Hashable, CacheEntry[T]] = {}
        self._write_lock = threading.Lock()
        self._scheduler: Optional[BackgroundScheduler] = None
        self._owns_scheduler = False

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def set(self, key: Hashable, value: T) -> None:
        entry = CacheEntry(data=value, expires_at=self._clock() + self.ttl_seconds)
        with self._write_lock:
            self._store[key] = entry

    def set_many(
        self,
        entries: Union[Mapping[Hashable, T], Iterable[Any]],
        key_fn: Optional[Callable[[Any], Hashable]] = None,
    ) -> int:
        """
        Insert several entries sharing one expiry.

        ``entries`` is a mapping, an iterable of ``(key, value)`` pairs, or
        (with ``key_fn``) an iterable of objects keyed by ``key_fn(obj)``.
        Returns the number of entries written.
        """
        if isinstance(entries, Mapping):
            pairs: List[Tuple[Hashable, T]] = list(entries.items())
        elif key_fn is not None:
            pairs = [(key_fn(item), item) for item in entries]
        else:
            pairs = [(k, v) for k, v in entries]

        expires_at = self._clock() + self.ttl_seconds
        with self._write_lock:
            for key, value in pairs:
                self._store[key] = CacheEntry(data=value, expires_at=expires_at)

        logger.debug("%s cache: stored %d entries", self.name, len(pairs))
        return len(pairs)

    def delete(self, key: Hashable) -> None:
        with self._write_lock:
            self._store.pop(key, None)

    def clear(self) -> None:
        with self._write_lock:
            self._store.clear()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, key: Hashable, default: Optional[T] = None) -> Optional[T]:
        entry = self._store.get(key)
        if entry is None:
            return default
        if self._clock() > entry.expires_at:
            self._evict_if_same(key, entry)
            return default
        return entry.data

    def __contains__(self, key: Hashable) -> bool:
        sentinel = object()
        return self.get(key, sentinel) is not sentinel  # type: ignore[arg-type]

    def get_or_fetch(self, key: Hashable, fetch: Callable[[], T]) -> T:
        """
        Return the cached value or call ``fetch`` and cache its result.

        Exceptions from ``fetch`` propagate and nothing is cached.  ``None``
        results are returned but not cached.
        """
        sentinel = object()
        cached = self.get(key, sentinel)  # type: ignore[arg-type]
        if cached is not sentinel:
            return cached  # type: ignore[return-value]
        value = fetch()
        if value is not None:
            self.set(key, value)
        return value

    def stats(self) -> Dict[str, Any]:
        keys = list(self._store.keys())
        return {"size": len(keys), "keys": keys}

    # ------------------------------------------------------------------
    # Eviction
    # ------------------------------------------------------------------

    def _evict_if_same(self, key: Hashable, entry: CacheEntry[T]) -> bool:
        # Only remove the exact entry that was seen expired
        with self._write_lock:
            if self._store.get(key) is entry:
                del self._store[key]
                return True
        return False

    def cleanup(self) -> int:
        """Full-scan eviction of expired entries.  Returns the number removed."""
        now = self._clock()
        removed = 0
        for key, entry in list(self._store.items()):
            if now > entry.expires_at and self._evict_if_same(key, entry):
                removed += 1
        if removed:
            logger.debug("%s cache: swept %d expired entries", self.name, removed)
        return removed

    # ------------------------------------------------------------------
    # Sweep lifecycle
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def start(self, scheduler: Optional[BackgroundScheduler] = None) -> None:
        """Start the periodic sweep.  Idempotent."""
        if self.running:
            return
        self._owns_scheduler = scheduler is None
        self._scheduler = scheduler or BackgroundScheduler()
        self._scheduler.add_job(
            self.cleanup,
            IntervalTrigger(seconds=self.cleanup_interval_seconds),
            id=f"{_SWEEP_JOB_ID}_{self.name}",
            replace_existing=True,
        )
        if not self._scheduler.running:
            self._scheduler.start()
        logger.info(
            "%s cache sweep started (ttl=%ss, every %ss)",
            self.name, self.ttl_seconds, self.cleanup_interval_seconds,
        )

    def stop(self) -> None:
        """Stop the periodic sweep.  Idempotent."""
        if self._scheduler is None:
            return
        if self._owns_scheduler and self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        elif self._scheduler.get_job(f"{_SWEEP_JOB_ID}_{self.name}"):
            self._scheduler.remove_job(f"{_SWEEP_JOB_ID}_{self.name}")
        self._scheduler = None
        logger.info("%s cache sweep stopped", self.name)
