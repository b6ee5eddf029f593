from __future__ import annotations

import logging
import threading
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Callable, Collection, Dict, Optional, Union

from field_sync.core.errors import ErrorKind, QuotaExceededError, error_kind_for
from field_sync.core.events import EventBus, MutationNeedsResolution, QueueChanged
from field_sync.core.locks import KeyedLock
from field_sync.core.models import MutationOperation, MutationPriority, QueuedMutation, RetryDecision
from field_sync.core.utils import ResourceKey, utc_now
from field_sync.storage.codec import decode_mutation, encode_mutation
from field_sync.storage.interfaces import KeyValueStore
from field_sync.sync.backoff import RetryPolicy

logger = logging.getLogger(__name__)

MUTATION_PREFIX = "queue/"

SpaceReclaimer = Callable[[int], int]


def _storage_key(mutation_id: str) -> str:
    return f"{MUTATION_PREFIX}{mutation_id}"


def priority_for(operation: MutationOperation, *, critical: bool) -> MutationPriority:
    if operation is MutationOperation.DELETE:
        return MutationPriority.LOW
    if critical:
        return MutationPriority.CRITICAL
    return MutationPriority.NORMAL


class MutationQueue:
    """
    Durable log of writes waiting to reach the server.

    Mutations on the same resource key are delivered strictly in enqueue order; the
    head of a key's stream blocks everything behind it, including while it is backing
    off or waiting for manual resolution. Nothing leaves the queue except through
    ack() (server accepted) or discard() (explicit user decision).
    """

    def __init__(
        self,
        store: KeyValueStore,
        *,
        policy: RetryPolicy,
        events: Optional[EventBus] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._store = store
        self._policy = policy
        self._events = events
        self._clock = clock
        self._locks = KeyedLock()
        self._index_lock = threading.Lock()
        self._mutations: Dict[str, QueuedMutation] = {}
        self._next_sequence = 1
        self._reclaim: Optional[SpaceReclaimer] = None

    def open(self) -> None:
        loaded: Dict[str, QueuedMutation] = {}
        for storage_key in self._store.keys(MUTATION_PREFIX):
            raw = self._store.get(storage_key)
            if raw is None:
                continue
            try:
                mutation = decode_mutation(raw)
            except (ValueError, KeyError):
                # Kept on disk for manual inspection; never silently deleted.
                logger.error("Unreadable queued mutation left in storage. storage_key=%s", storage_key)
                continue
            loaded[mutation.id] = mutation

        with self._index_lock:
            self._mutations = loaded
            self._next_sequence = max((m.sequence for m in loaded.values()), default=0) + 1
        logger.info(
            "Mutation queue opened. pending=%d failed=%d",
            len(loaded),
            sum(1 for m in loaded.values() if m.is_terminal),
        )

    def set_space_reclaimer(self, reclaim: Optional[SpaceReclaimer]) -> None:
        """Register a callback that releases at least the given number of bytes held by cached data."""
        self._reclaim = reclaim

    def __len__(self) -> int:
        return len(self._mutations)

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    def enqueue(self, mutation: QueuedMutation) -> str:
        """
        Persist mutation durably and return its id.

        When storage is full, cached data is reclaimed once and the write retried;
        any remaining storage error propagates to the caller.
        """
        with self._locks.hold(mutation.resource_key):
            with self._index_lock:
                if mutation.id in self._mutations:
                    raise ValueError(f"Mutation id already queued: {mutation.id}")
                sequence = self._next_sequence
                self._next_sequence += 1
            queued = replace(mutation, sequence=sequence)
            try:
                self._persist(queued)
            except QuotaExceededError as e:
                if self._reclaim is None:
                    raise
                freed = self._reclaim(e.required_bytes - e.capacity_bytes)
                logger.warning(
                    "Storage full while queueing mutation; reclaimed cached data. id=%s freed_bytes=%d",
                    queued.id,
                    freed,
                )
                self._persist(queued)
            with self._index_lock:
                self._mutations[queued.id] = queued

        logger.info(
            "Mutation queued. id=%s key=%s operation=%s sequence=%d",
            queued.id,
            queued.resource_key,
            queued.operation.value,
            sequence,
        )
        self._publish_size()
        return queued.id

    def get(self, mutation_id: str) -> Optional[QueuedMutation]:
        return self._mutations.get(mutation_id)

    def head(self, key: ResourceKey) -> Optional[QueuedMutation]:
        stream = [m for m in self._snapshot() if m.resource_key == key]
        if not stream:
            return None
        return min(stream, key=lambda m: m.sequence)

    def peek_ready(
        self,
        *,
        exclude_keys: Collection[ResourceKey] = (),
        now: Optional[datetime] = None,
    ) -> Optional[QueuedMutation]:
        current = now or self._clock()
        heads: Dict[ResourceKey, QueuedMutation] = {}
        for mutation in self._snapshot():
            head = heads.get(mutation.resource_key)
            if head is None or mutation.sequence < head.sequence:
                heads[mutation.resource_key] = mutation

        ready = [
            head
            for key, head in heads.items()
            if key not in exclude_keys and not head.is_terminal and head.is_due(current)
        ]
        if not ready:
            return None
        return min(ready, key=lambda m: (m.priority.rank, m.sequence))

    def ack(self, mutation_id: str) -> None:
        """Remove an acknowledged mutation. Acknowledging an unknown id is a no-op."""
        mutation = self._mutations.get(mutation_id)
        if mutation is None:
            logger.debug("Ignoring ack for unknown mutation. id=%s", mutation_id)
            return
        with self._locks.hold(mutation.resource_key):
            if mutation_id not in self._mutations:
                return
            self._store.delete(_storage_key(mutation_id))
            with self._index_lock:
                self._mutations.pop(mutation_id, None)
        logger.info("Mutation acknowledged. id=%s key=%s", mutation_id, mutation.resource_key)
        self._publish_size()

    def fail(self, mutation_id: str, error: Union[BaseException, ErrorKind]) -> RetryDecision:
        """
        Record a failed delivery attempt and decide whether the mutation is retried later
        or parked for manual resolution. Storage errors propagate and leave the queued
        state unchanged.
        """
        mutation = self._mutations.get(mutation_id)
        if mutation is None:
            raise KeyError(f"Unknown mutation id: {mutation_id}")
        kind = error if isinstance(error, ErrorKind) else error_kind_for(error)

        with self._locks.hold(mutation.resource_key):
            current = self._mutations.get(mutation_id, mutation)
            attempts = current.attempts + 1
            delay = 0.0
            next_attempt_at = None
            if kind in (ErrorKind.CONFLICT_REJECTED, ErrorKind.TERMINAL_RETRY_EXHAUSTED):
                terminal = True
            elif self._policy.is_exhausted(attempts):
                kind = ErrorKind.TERMINAL_RETRY_EXHAUSTED
                terminal = True
            else:
                terminal = False
                delay = self._policy.delay_for(attempts)
                next_attempt_at = self._clock() + timedelta(seconds=delay)

            updated = replace(current, attempts=attempts, last_error=kind, next_attempt_at=next_attempt_at)
            self._persist(updated)
            with self._index_lock:
                self._mutations[mutation_id] = updated

        if terminal:
            logger.warning(
                "Mutation requires manual resolution. id=%s key=%s error=%s attempts=%d",
                mutation_id,
                updated.resource_key,
                kind.value,
                attempts,
            )
            if self._events:
                self._events.publish(MutationNeedsResolution(mutation=updated, error=kind))
        else:
            logger.info(
                "Mutation will be retried. id=%s attempts=%d delay_seconds=%.2f error=%s",
                mutation_id,
                attempts,
                delay,
                kind.value,
            )
        return RetryDecision(terminal=terminal, delay_seconds=delay, attempts=attempts, error=kind)

    def retry(self, mutation_id: str) -> QueuedMutation:
        """Put a mutation back into automatic draining with a fresh attempt budget."""
        mutation = self._mutations.get(mutation_id)
        if mutation is None:
            raise KeyError(f"Unknown mutation id: {mutation_id}")
        with self._locks.hold(mutation.resource_key):
            updated = replace(
                self._mutations.get(mutation_id, mutation),
                attempts=0,
                last_error=None,
                next_attempt_at=None,
            )
            self._persist(updated)
            with self._index_lock:
                self._mutations[mutation_id] = updated
        logger.info("Mutation manually retried. id=%s key=%s", mutation_id, mutation.resource_key)
        return updated

    def discard(self, mutation_id: str) -> Optional[QueuedMutation]:
        """Remove a mutation at the user's explicit request."""
        mutation = self._mutations.get(mutation_id)
        if mutation is None:
            return None
        with self._locks.hold(mutation.resource_key):
            self._store.delete(_storage_key(mutation_id))
            with self._index_lock:
                removed = self._mutations.pop(mutation_id, None)
        logger.warning(
            "Mutation discarded by user. id=%s key=%s last_error=%s",
            mutation_id,
            mutation.resource_key,
            mutation.last_error.value if mutation.last_error else None,
        )
        self._publish_size()
        return removed

    def pending(self) -> list[QueuedMutation]:
        return sorted(self._snapshot(), key=lambda m: m.sequence)

    def failed(self) -> list[QueuedMutation]:
        return [m for m in self.pending() if m.is_terminal]

    def oldest_pending_at(self, key: ResourceKey) -> Optional[datetime]:
        times = [m.enqueued_at for m in self._snapshot() if m.resource_key == key]
        return min(times) if times else None

    def _snapshot(self) -> list[QueuedMutation]:
        with self._index_lock:
            return list(self._mutations.values())

    def _persist(self, mutation: QueuedMutation) -> None:
        self._store.put(_storage_key(mutation.id), encode_mutation(mutation))

    def _publish_size(self) -> None:
        if self._events:
            self._events.publish(QueueChanged(size=len(self._mutations)))
