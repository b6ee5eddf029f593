from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Tuple

from field_sync.core.errors import QuotaExceededError
from field_sync.core.events import CacheWriteFailed, EventBus
from field_sync.core.locks import KeyedLock
from field_sync.core.models import CacheEntry, StrategyKind
from field_sync.core.utils import ResourceKey, hash_key, utc_now
from field_sync.storage.codec import decode_entry, decode_json, encode_entry, encode_json
from field_sync.storage.interfaces import KeyValueStore

logger = logging.getLogger(__name__)

ENTRY_PREFIX = "cache/"
ACTIVE_GENERATION_KEY = "meta/active_generation"
INITIAL_GENERATION = 1

PendingSince = Callable[[ResourceKey], Optional[datetime]]


@dataclass(slots=True)
class CacheStats:
    active_generation: int
    entries: int
    entries_by_generation: Dict[int, int] = field(default_factory=dict)
    payload_bytes: int = 0
    stored_bytes: int = 0
    budget_bytes: Optional[int] = None
    storage_usage_bytes: int = 0
    storage_capacity_bytes: int = 0
    write_failures: int = 0


def _storage_key(generation: int, key: ResourceKey) -> str:
    return f"{ENTRY_PREFIX}{generation:08d}/{hash_key(key)}"


class CacheStore:
    """
    Generation-tagged cache of server responses backed by durable storage.

    Reads are served from an in-memory index that is only updated after the durable
    write has committed, so a reader sees either the previous entry or the new one.

    The active and older generations share one budget of max_entries entries and
    max_bytes stored bytes; a staged generation gets the same budget of its own.
    """

    def __init__(
        self,
        store: KeyValueStore,
        *,
        max_entries: int,
        max_bytes: Optional[int] = None,
        events: Optional[EventBus] = None,
        pending_since: Optional[PendingSince] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._store = store
        self._max_entries = max_entries
        self._max_bytes = max_bytes
        self._events = events
        self._pending_since = pending_since
        self._clock = clock
        self._locks = KeyedLock()
        self._index_lock = threading.Lock()
        self._entries: Dict[Tuple[int, ResourceKey], CacheEntry] = {}
        self._sizes: Dict[Tuple[int, ResourceKey], int] = {}
        self._active_generation = INITIAL_GENERATION
        self._write_failures = 0

    def open(self) -> None:
        raw_generation = self._store.get(ACTIVE_GENERATION_KEY)
        if raw_generation is not None:
            self._active_generation = int(decode_json(raw_generation))

        loaded: Dict[Tuple[int, ResourceKey], CacheEntry] = {}
        sizes: Dict[Tuple[int, ResourceKey], int] = {}
        for storage_key in self._store.keys(ENTRY_PREFIX):
            raw = self._store.get(storage_key)
            if raw is None:
                continue
            try:
                entry = decode_entry(raw)
            except (ValueError, KeyError):
                logger.warning("Dropping unreadable cache entry. storage_key=%s", storage_key)
                self._store.delete(storage_key)
                continue
            loaded[(entry.generation, entry.key)] = entry
            sizes[(entry.generation, entry.key)] = len(raw)

        with self._index_lock:
            self._entries = loaded
            self._sizes = sizes
        logger.info(
            "Cache store opened. active_generation=%d entries=%d",
            self._active_generation,
            len(loaded),
        )

    def set_pending_since(self, pending_since: Optional[PendingSince]) -> None:
        self._pending_since = pending_since

    @property
    def active_generation(self) -> int:
        return self._active_generation

    def set_active_generation(self, generation: int) -> None:
        if generation < self._active_generation:
            raise ValueError(
                f"Cache generation must not decrease: active={self._active_generation} requested={generation}"
            )
        self._store.put(ACTIVE_GENERATION_KEY, encode_json(generation))
        self._active_generation = generation
        logger.info("Cache generation activated. generation=%d", generation)

    def generations(self) -> list[int]:
        with self._index_lock:
            return sorted({generation for generation, _ in self._entries})

    def get(self, key: ResourceKey, *, generation: Optional[int] = None) -> Optional[CacheEntry]:
        target = self._active_generation if generation is None else generation
        return self._entries.get((target, key))

    def is_fresh(self, entry: CacheEntry, ttl_seconds: float, *, now: Optional[datetime] = None) -> bool:
        current = now or self._clock()
        return current - entry.stored_at <= timedelta(seconds=ttl_seconds)

    def put(
        self,
        key: ResourceKey,
        payload: bytes,
        strategy: StrategyKind,
        *,
        generation: Optional[int] = None,
    ) -> bool:
        """
        Store payload for key, replacing the previous entry of the same generation.

        Returns False when the write could not be made durable; the previous entry, if
        any, stays visible and the failure is logged and published, never raised.

        A write into the active generation that hits the storage quota first reclaims
        space from the oldest unpinned entries and is retried once. A write into a staged
        generation never displaces active entries: it is skipped when the staged
        generation has used up its own budget or storage is full.
        """
        target = self._active_generation if generation is None else generation
        entry = CacheEntry(
            key=key,
            payload=bytes(payload),
            stored_at=self._clock(),
            strategy=strategy,
            generation=target,
        )
        record = encode_entry(entry)
        staged = target > self._active_generation
        if staged and not self._admits_staged(target, key, len(record)):
            return self._skip_write(key, target, "staged generation budget exhausted")

        try:
            self._commit(entry, record)
        except QuotaExceededError as e:
            if staged:
                return self._skip_write(key, target, str(e))
            if self.reclaim(e.required_bytes - e.capacity_bytes, exclude=key) == 0:
                return self._skip_write(key, target, str(e))
            try:
                self._commit(entry, record)
            except (QuotaExceededError, OSError) as retry_error:
                return self._skip_write(key, target, str(retry_error))
        except OSError as e:
            return self._skip_write(key, target, str(e))

        if not staged:
            self._enforce_capacity()
        return True

    def reclaim(self, nbytes: int, *, exclude: Optional[ResourceKey] = None) -> int:
        """
        Evict the oldest unpinned entries of the active and older generations until at
        least nbytes of storage have been released. Returns the bytes actually released.
        """
        if nbytes <= 0:
            return 0
        evicted, freed = self._evict(self._live_entries(), count=0, nbytes=nbytes, exclude=exclude)
        logger.info("Cache space reclaimed. requested_bytes=%d freed_bytes=%d evicted=%d", nbytes, freed, evicted)
        return freed

    def invalidate(self, key: ResourceKey) -> None:
        with self._locks.hold(key):
            for generation in self.generations():
                self._remove_locked(generation, key)

    def evict_generation(self, generation: int) -> int:
        with self._index_lock:
            keys = [key for entry_generation, key in self._entries if entry_generation == generation]
        removed = 0
        for key in keys:
            with self._locks.hold(key):
                if self._remove_locked(generation, key):
                    removed += 1
        logger.info("Cache generation evicted. generation=%d entries=%d", generation, removed)
        return removed

    def clear(self) -> None:
        for generation in self.generations():
            self.evict_generation(generation)

    def stats(self) -> CacheStats:
        with self._index_lock:
            entries = list(self._entries.values())
            stored_bytes = sum(self._sizes.values())
        by_generation: Dict[int, int] = {}
        for entry in entries:
            by_generation[entry.generation] = by_generation.get(entry.generation, 0) + 1
        return CacheStats(
            active_generation=self._active_generation,
            entries=len(entries),
            entries_by_generation=by_generation,
            payload_bytes=sum(len(entry.payload) for entry in entries),
            stored_bytes=stored_bytes,
            budget_bytes=self._max_bytes,
            storage_usage_bytes=self._store.usage(),
            storage_capacity_bytes=self._store.capacity_bytes,
            write_failures=self._write_failures,
        )

    def _commit(self, entry: CacheEntry, record: bytes) -> None:
        slot = (entry.generation, entry.key)
        with self._locks.hold(entry.key):
            self._store.put(_storage_key(*slot), record)
            with self._index_lock:
                self._entries[slot] = entry
                self._sizes[slot] = len(record)

    def _skip_write(self, key: ResourceKey, generation: int, reason: str) -> bool:
        self._write_failures += 1
        logger.warning("Cache write skipped. key=%s generation=%d error=%s", key, generation, reason)
        if self._events:
            self._events.publish(CacheWriteFailed(key=key, reason=reason))
        return False

    def _admits_staged(self, generation: int, key: ResourceKey, size: int) -> bool:
        with self._index_lock:
            others = [
                self._sizes.get(slot, 0)
                for slot in self._entries
                if slot[0] == generation and slot[1] != key
            ]
        if len(others) + 1 > self._max_entries:
            return False
        return self._max_bytes is None or sum(others) + size <= self._max_bytes

    def _live_entries(self) -> list[Tuple[CacheEntry, int]]:
        with self._index_lock:
            active = self._active_generation
            # Staged generations are budgeted on their own and never evicted for space.
            return [
                (entry, self._sizes.get(slot, 0))
                for slot, entry in self._entries.items()
                if entry.generation <= active
            ]

    def _remove_locked(self, generation: int, key: ResourceKey) -> bool:
        with self._index_lock:
            if (generation, key) not in self._entries:
                return False
        self._store.delete(_storage_key(generation, key))
        with self._index_lock:
            self._entries.pop((generation, key), None)
            self._sizes.pop((generation, key), None)
        return True

    def _is_pinned(self, entry: CacheEntry) -> bool:
        if self._pending_since is None:
            return False
        oldest_pending = self._pending_since(entry.key)
        return oldest_pending is not None and entry.stored_at >= oldest_pending

    def _evict(
        self,
        candidates: list[Tuple[CacheEntry, int]],
        *,
        count: int,
        nbytes: int,
        exclude: Optional[ResourceKey] = None,
    ) -> Tuple[int, int]:
        active = self._active_generation
        candidates.sort(key=lambda item: (item[0].generation == active, item[0].stored_at))
        evicted = 0
        freed = 0
        for entry, size in candidates:
            if evicted >= count and freed >= nbytes:
                break
            if entry.key == exclude or self._is_pinned(entry):
                continue
            with self._locks.hold(entry.key):
                if self._entries.get((entry.generation, entry.key)) is not entry:
                    continue
                if self._remove_locked(entry.generation, entry.key):
                    evicted += 1
                    freed += size
        return evicted, freed

    def _enforce_capacity(self) -> None:
        live = self._live_entries()
        count_overflow = len(live) - self._max_entries
        byte_overflow = 0
        if self._max_bytes is not None:
            byte_overflow = sum(size for _, size in live) - self._max_bytes
        if count_overflow <= 0 and byte_overflow <= 0:
            return

        evicted, freed = self._evict(live, count=count_overflow, nbytes=byte_overflow)
        if evicted < count_overflow or freed < byte_overflow:
            logger.warning(
                "Cache over budget after eviction. max_entries=%d max_bytes=%s evicted=%d freed_bytes=%d",
                self._max_entries,
                self._max_bytes,
                evicted,
                freed,
            )
        else:
            logger.debug("Cache budget enforced. evicted=%d freed_bytes=%d", evicted, freed)
