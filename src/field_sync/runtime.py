from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Optional, Type

from field_sync.cache.router import ResourceClassifier, StrategyRouter
from field_sync.cache.store import CacheStats, CacheStore
from field_sync.config.models import AppConfig
from field_sync.core.events import EventBus, Handler
from field_sync.core.models import (
    FetchResult,
    MutationOperation,
    QueuedMutation,
    StrategyKind,
    SyncReport,
    SyncStatus,
    new_mutation,
)
from field_sync.core.utils import normalize_resource_key, utc_now
from field_sync.storage.file_store import FileKeyValueStore
from field_sync.storage.interfaces import KeyValueStore
from field_sync.sync.backoff import RetryPolicy
from field_sync.sync.connectivity import ConnectivityMonitor
from field_sync.sync.orchestrator import SyncOrchestrator
from field_sync.sync.queue import MutationQueue, priority_for
from field_sync.transport.http import AiohttpTransport
from field_sync.transport.interfaces import Transport
from field_sync.updates.manager import UpdateManager
from field_sync.updates.manifest import ManifestClient

logger = logging.getLogger(__name__)


class FieldSyncRuntime:
    """
    Process-scoped owner of the offline cache, the write queue and their workers.

    open() binds durable storage and loads persisted state; close() stops background
    work, waits for in-flight cache refreshes and releases storage. The application
    talks to this object instead of to the individual components.
    """

    def __init__(
        self,
        config: AppConfig,
        *,
        store: Optional[KeyValueStore] = None,
        transport: Optional[Transport] = None,
        clock: Callable[[], datetime] = utc_now,
        initial_online: bool = True,
    ):
        self._config = config
        self._store_override = store
        self._transport_override = transport
        self._clock = clock
        self._initial_online = initial_online
        self.events = EventBus()
        self._opened = False
        self._background_started = False

    async def __aenter__(self) -> FieldSyncRuntime:
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def open(self) -> None:
        if self._opened:
            return
        config = self._config

        self._store = self._store_override or FileKeyValueStore(
            config.storage.path,
            capacity_bytes=config.storage.capacity_bytes,
            fsync=config.storage.fsync,
        )
        self._owned_transport: Optional[AiohttpTransport] = None
        if self._transport_override is not None:
            self._transport = self._transport_override
        else:
            self._owned_transport = AiohttpTransport(config.network)
            self._transport = self._owned_transport

        self._classifier = ResourceClassifier.from_settings(config.cache)
        self.queue = MutationQueue(
            self._store,
            policy=RetryPolicy.from_settings(config.sync),
            events=self.events,
            clock=self._clock,
        )
        self.cache = CacheStore(
            self._store,
            max_entries=config.cache.max_entries,
            max_bytes=int(self._store.capacity_bytes * config.cache.max_storage_fraction),
            events=self.events,
            pending_since=self.queue.oldest_pending_at,
            clock=self._clock,
        )
        self.queue.set_space_reclaimer(self.cache.reclaim)
        self.cache.open()
        self.queue.open()

        self.connectivity = ConnectivityMonitor(
            transport=self._transport,
            probe_path=config.sync.probe_path,
            probe_interval_seconds=config.sync.probe_interval_seconds,
            probe_timeout_seconds=config.network.request_timeout_seconds,
            events=self.events,
            initial_online=self._initial_online,
        )
        self.router = StrategyRouter(
            cache=self.cache,
            transport=self._transport,
            classifier=self._classifier,
            request_timeout_seconds=config.network.request_timeout_seconds,
            is_online=self.connectivity.is_online,
        )
        self.orchestrator = SyncOrchestrator(
            queue=self.queue,
            transport=self._transport,
            cache=self.cache,
            classifier=self._classifier,
            connectivity=self.connectivity,
            config=config.sync,
            events=self.events,
            clock=self._clock,
        )
        self.updates = UpdateManager(
            cache=self.cache,
            store=self._store,
            transport=self._transport,
            manifests=ManifestClient(
                transport=self._transport,
                manifest_path=config.updates.manifest_path,
                timeout_seconds=config.network.request_timeout_seconds,
            ),
            classifier=self._classifier,
            request_timeout_seconds=config.network.request_timeout_seconds,
            poll_interval_seconds=config.updates.poll_interval_seconds,
            events=self.events,
        )
        self.updates.open()
        self._opened = True
        logger.info(
            "Runtime opened. generation=%d queued=%d online=%s",
            self.cache.active_generation,
            len(self.queue),
            self.connectivity.is_online(),
        )

    def start_background(self) -> None:
        """Start connectivity probing, periodic sync and update polling."""
        self._require_open()
        self.connectivity.start()
        self.orchestrator.start()
        self.updates.start_polling()
        self._background_started = True

    async def close(self) -> None:
        if not self._opened:
            return
        if self._background_started:
            await self.updates.stop_polling()
            await self.connectivity.stop()
        await self.orchestrator.stop()
        await self.router.aclose()
        if self._owned_transport is not None:
            await self._owned_transport.close()
        self._store.close()
        self._opened = False
        self._background_started = False
        logger.info("Runtime closed.")

    def _require_open(self) -> None:
        if not self._opened:
            raise RuntimeError("FieldSyncRuntime is not open")

    @property
    def status(self) -> SyncStatus:
        self._require_open()
        return self.orchestrator.status

    def subscribe(self, handler: Handler, event_type: Optional[Type] = None) -> Callable[[], None]:
        return self.events.subscribe(handler, event_type)

    def set_online(self, online: bool) -> None:
        self._require_open()
        self.connectivity.set_online(online)

    async def request(self, address: str, strategy: Optional[StrategyKind] = None) -> bytes:
        self._require_open()
        return await self.router.request(normalize_resource_key(address), strategy)

    async def fetch(self, address: str, strategy: Optional[StrategyKind] = None) -> FetchResult:
        self._require_open()
        return await self.router.fetch(normalize_resource_key(address), strategy)

    def enqueue_mutation(
        self,
        address: str,
        operation: MutationOperation,
        payload: bytes = b"",
        *,
        mutation_id: Optional[str] = None,
    ) -> str:
        """
        Durably queue a write and return its id.

        When online a drain pass is started in the background, so the write usually
        reaches the server right away; otherwise it waits for connectivity.
        """
        self._require_open()
        key = normalize_resource_key(address)
        resource_class = self._classifier.classify(key)
        mutation = new_mutation(
            key,
            operation,
            payload,
            mutation_id=mutation_id,
            priority=priority_for(operation, critical=resource_class.critical),
            now=self._clock(),
        )
        mutation_id = self.queue.enqueue(mutation)
        if self.connectivity.is_online():
            self.orchestrator.trigger()
        return mutation_id

    async def sync_now(self) -> Optional[SyncReport]:
        self._require_open()
        return await self.orchestrator.sync_now()

    def pending_mutations(self) -> list[QueuedMutation]:
        self._require_open()
        return self.queue.pending()

    def failed_mutations(self) -> list[QueuedMutation]:
        self._require_open()
        return self.queue.failed()

    def retry_mutation(self, mutation_id: str) -> QueuedMutation:
        self._require_open()
        mutation = self.queue.retry(mutation_id)
        if self.connectivity.is_online():
            self.orchestrator.trigger()
        return mutation

    def discard_mutation(self, mutation_id: str) -> Optional[QueuedMutation]:
        self._require_open()
        return self.queue.discard(mutation_id)

    async def check_for_update(self) -> bool:
        self._require_open()
        return await self.updates.check_for_update()

    async def activate_new_generation(self) -> None:
        self._require_open()
        await self.updates.activate_new_generation()

    def cache_stats(self) -> CacheStats:
        self._require_open()
        return self.cache.stats()

    def clear_cache(self) -> None:
        self._require_open()
        self.cache.clear()
