from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime
from typing import Callable, Dict, Optional, Set

from field_sync.cache.router import ResourceClassifier
from field_sync.cache.store import CacheStore
from field_sync.config.models import SyncSettings
from field_sync.core.errors import AuthenticationRequiredError, ConflictRejectedError, NetworkError
from field_sync.core.events import ConflictDetected, EventBus, SyncCompleted, SyncStatusChanged
from field_sync.core.models import MutationOperation, QueuedMutation, RetryDecision, SyncReport, SyncStatus
from field_sync.core.utils import ResourceKey, utc_now
from field_sync.sync.connectivity import ConnectivityMonitor
from field_sync.sync.queue import MutationQueue
from field_sync.transport.interfaces import Transport, TransportResponse, is_transient_status

logger = logging.getLogger(__name__)

IDEMPOTENCY_HEADER = "Idempotency-Key"
CONFLICT_POLICY_HEADER = "X-Conflict-Policy"


class SyncOrchestrator:
    """
    Drains the mutation queue against the network and owns the process-wide SyncStatus.

    At most one drain pass runs at a time; triggers that arrive while a pass is running
    are dropped rather than queued. Within a pass, different resource keys drain
    concurrently while each key's mutations go out one at a time in enqueue order.
    """

    def __init__(
        self,
        *,
        queue: MutationQueue,
        transport: Transport,
        cache: CacheStore,
        classifier: ResourceClassifier,
        connectivity: ConnectivityMonitor,
        config: SyncSettings,
        events: Optional[EventBus] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._queue = queue
        self._transport = transport
        self._cache = cache
        self._classifier = classifier
        self._connectivity = connectivity
        self._config = config
        self._events = events
        self._clock = clock
        self._status = SyncStatus.ONLINE if connectivity.is_online() else SyncStatus.OFFLINE
        self._interrupt = asyncio.Event()
        self._auth_required = False
        self._runtime_task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self._triggered: set[asyncio.Task] = set()
        connectivity.add_listener(self._handle_connectivity)

    @property
    def status(self) -> SyncStatus:
        return self._status

    def _set_status(self, status: SyncStatus) -> None:
        previous = self._status
        if previous is status:
            return
        self._status = status
        logger.info("Sync status changed. previous=%s current=%s", previous.value, status.value)
        if self._events:
            self._events.publish(SyncStatusChanged(previous=previous, current=status))

    def _handle_connectivity(self, online: bool) -> None:
        if not online:
            self._interrupt.set()
            if self._status is not SyncStatus.SYNCING:
                self._set_status(SyncStatus.OFFLINE)
            return
        if self._status is not SyncStatus.SYNCING:
            self._set_status(SyncStatus.ONLINE)
        self.trigger()

    def trigger(self) -> None:
        """Start a drain pass in the background; coalesced if one is already running."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        task = loop.create_task(self.sync_now())
        self._triggered.add(task)
        task.add_done_callback(self._on_triggered_done)

    def _on_triggered_done(self, task: asyncio.Task) -> None:
        self._triggered.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Triggered sync pass failed.", exc_info=error)

    async def sync_now(self) -> Optional[SyncReport]:
        """
        Run one drain pass.

        Returns None without doing anything when a pass is already running or the
        device is offline.
        """
        if self._status is SyncStatus.SYNCING:
            logger.debug("Sync already in progress, trigger coalesced.")
            return None
        if self._stop_event.is_set():
            logger.debug("Sync orchestrator stopped, trigger ignored.")
            return None
        if not self._connectivity.is_online():
            logger.info("Sync skipped while offline. queued=%d", len(self._queue))
            return None

        self._set_status(SyncStatus.SYNCING)
        self._interrupt.clear()
        self._auth_required = False
        report = SyncReport()
        started = time.monotonic()
        try:
            await self._drain(report)
        finally:
            report.remaining = len(self._queue)
            self._set_status(SyncStatus.ONLINE if self._connectivity.is_online() else SyncStatus.OFFLINE)

        logger.info(
            "Sync pass finished. synced=%d failed=%d remaining=%d interrupted=%s duration=%.2fs",
            report.synced,
            report.failed,
            report.remaining,
            report.interrupted,
            time.monotonic() - started,
        )
        if self._events:
            self._events.publish(SyncCompleted(report=report))
        return report

    def _should_stop(self) -> bool:
        return self._interrupt.is_set() or not self._connectivity.is_online()

    async def _drain(self, report: SyncReport) -> None:
        in_flight: Dict[ResourceKey, asyncio.Task] = {}
        # Keys whose worker crashed sit out the rest of this pass.
        crashed: Set[ResourceKey] = set()
        try:
            while not self._should_stop():
                while len(in_flight) < self._config.max_parallel_keys:
                    mutation = self._queue.peek_ready(exclude_keys=crashed.union(in_flight))
                    if mutation is None:
                        break
                    key = mutation.resource_key
                    in_flight[key] = asyncio.create_task(self._drain_key(key, report))
                if not in_flight:
                    break
                done, _ = await asyncio.wait(in_flight.values(), return_when=asyncio.FIRST_COMPLETED)
                for key, task in list(in_flight.items()):
                    if task in done:
                        del in_flight[key]
                        if not self._worker_succeeded(key, task):
                            crashed.add(key)
        finally:
            if in_flight:
                await asyncio.gather(*in_flight.values(), return_exceptions=True)
        if self._should_stop():
            report.interrupted = True

    def _worker_succeeded(self, key: ResourceKey, task: asyncio.Task) -> bool:
        error = task.exception()
        if error is None:
            return True
        logger.error("Sync worker failed, key skipped for this pass. key=%s", key, exc_info=error)
        return False

    async def _drain_key(self, key: ResourceKey, report: SyncReport) -> None:
        retrying = False
        while not self._should_stop():
            mutation = self._queue.head(key)
            if mutation is None or mutation.is_terminal:
                return
            # A head still backing off from an earlier pass waits for a later trigger.
            if not retrying and not mutation.is_due(self._clock()):
                return

            try:
                decision = await self._attempt(mutation)
            except AuthenticationRequiredError:
                logger.warning(
                    "Server requires authentication, stopping sync pass. key=%s queued=%d",
                    key,
                    len(self._queue),
                )
                self._auth_required = True
                self._interrupt.set()
                return

            if decision is None:
                report.synced += 1
                retrying = False
                continue
            if decision.terminal:
                report.failed += 1
                return
            if await self._wait_backoff(decision.delay_seconds):
                return
            retrying = True

    async def _wait_backoff(self, delay_seconds: float) -> bool:
        """Sleep for the backoff delay. Returns True when the pass was interrupted meanwhile."""
        if delay_seconds <= 0:
            return self._should_stop()
        try:
            await asyncio.wait_for(self._interrupt.wait(), timeout=delay_seconds)
        except asyncio.TimeoutError:
            pass
        return self._should_stop()

    async def _send(self, mutation: QueuedMutation, *, overwrite: bool) -> TransportResponse:
        headers = {IDEMPOTENCY_HEADER: mutation.id}
        if overwrite:
            headers[CONFLICT_POLICY_HEADER] = "overwrite"
        payload = mutation.payload if mutation.operation is not MutationOperation.DELETE else None
        try:
            return await asyncio.wait_for(
                self._transport.send(mutation.operation.http_method, mutation.resource_key, payload, headers),
                timeout=self._config.retry_timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise NetworkError(f"Mutation request timed out: id={mutation.id}") from e

    async def _attempt(self, mutation: QueuedMutation) -> Optional[RetryDecision]:
        """
        Send one mutation.

        Returns None once the server has accepted it, otherwise the queue's retry
        decision. Version conflicts are resolved last-writer-wins by resending with an
        overwrite policy; only an outright refusal fails the mutation terminally.
        """
        overwrite = False
        while True:
            try:
                response = await self._send(mutation, overwrite=overwrite)
            except NetworkError as e:
                logger.warning("Mutation send failed. id=%s key=%s error=%s", mutation.id, mutation.resource_key, e)
                return self._queue.fail(mutation.id, e)
            except Exception as e:
                logger.exception(
                    "Unexpected error while sending mutation. id=%s key=%s",
                    mutation.id,
                    mutation.resource_key,
                )
                return self._queue.fail(mutation.id, NetworkError(f"Unexpected send failure: {e!r}"))

            status = response.status
            if response.ok:
                return self._complete(mutation, response)
            if status == 401:
                raise AuthenticationRequiredError(f"Authentication required to sync mutation {mutation.id}")
            if status == 409 and not overwrite:
                logger.warning(
                    "Version conflict, resending with last-writer-wins. id=%s key=%s",
                    mutation.id,
                    mutation.resource_key,
                )
                if self._events:
                    self._events.publish(ConflictDetected(mutation=mutation, status=status))
                overwrite = True
                continue
            if status in (404, 410) and mutation.operation is MutationOperation.DELETE:
                # Already gone: a previous delivery whose acknowledgment was lost.
                return self._complete(mutation, response)
            if is_transient_status(status):
                return self._queue.fail(mutation.id, NetworkError("Transient response status", status=status))
            return self._queue.fail(mutation.id, ConflictRejectedError(mutation.id, status))

    def _complete(self, mutation: QueuedMutation, response: TransportResponse) -> Optional[RetryDecision]:
        try:
            self._queue.ack(mutation.id)
        except OSError as e:
            # Redelivery is deduplicated by the server through the idempotency key.
            logger.error(
                "Failed to remove acknowledged mutation. id=%s key=%s error=%s",
                mutation.id,
                mutation.resource_key,
                e,
            )
            return self._queue.fail(mutation.id, NetworkError(f"Acknowledgment not persisted: {e}"))

        key = mutation.resource_key
        try:
            if mutation.operation is MutationOperation.UPDATE and response.body:
                strategy = self._classifier.classify(key).strategy
                self._cache.put(key, response.body, strategy)
            else:
                self._cache.invalidate(key)
        except OSError:
            logger.exception("Cache reconcile after sync failed. id=%s key=%s", mutation.id, key)
        return None

    @property
    def auth_required(self) -> bool:
        return self._auth_required

    def start(self) -> None:
        if self._runtime_task and not self._runtime_task.done():
            return
        self._stop_event.clear()
        self._runtime_task = asyncio.create_task(self._runtime_loop())

    async def stop(self) -> None:
        self._stop_event.set()
        self._interrupt.set()
        if self._runtime_task:
            await self._runtime_task
            self._runtime_task = None
        if self._triggered:
            await asyncio.gather(*list(self._triggered), return_exceptions=True)

    async def _runtime_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._config.periodic_interval_seconds)
            except asyncio.TimeoutError:
                pass
            if self._stop_event.is_set():
                break
            try:
                await self.sync_now()
            except Exception:
                logger.exception("Periodic sync pass failed.")
