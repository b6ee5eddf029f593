import asyncio
import unittest

from fakes import FailingWritesStore, FakeClock, FakeTransport, response

from field_sync.cache.router import ResourceClassifier
from field_sync.cache.store import CacheStore
from field_sync.config.models import CacheSettings, SyncSettings
from field_sync.core.errors import ErrorKind
from field_sync.core.events import ConflictDetected, EventBus, SyncCompleted, SyncStatusChanged
from field_sync.core.models import MutationOperation, StrategyKind, SyncStatus, new_mutation
from field_sync.core.utils import ResourceKey
from field_sync.sync.backoff import RetryPolicy
from field_sync.sync.connectivity import ConnectivityMonitor
from field_sync.sync.orchestrator import CONFLICT_POLICY_HEADER, IDEMPOTENCY_HEADER, SyncOrchestrator
from field_sync.sync.queue import MutationQueue

JOB_1 = ResourceKey("/api/jobs/1")
JOB_2 = ResourceKey("/api/jobs/2")


class SyncOrchestratorTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.clock = FakeClock()
        self.transport = FakeTransport()
        self.events = EventBus()
        self.published = []
        self.events.subscribe(self.published.append)
        self.store = store = FailingWritesStore()
        settings = SyncSettings(
            backoff_base_seconds=0.001,
            backoff_max_seconds=0.01,
            retry_timeout_seconds=1,
            probe_path="",
        )
        self.queue = MutationQueue(
            store,
            policy=RetryPolicy.from_settings(settings),
            events=self.events,
            clock=self.clock,
        )
        self.queue.open()
        self.cache = CacheStore(store, max_entries=50, events=self.events, clock=self.clock)
        self.cache.open()
        self.connectivity = ConnectivityMonitor(events=self.events)
        self.orchestrator = SyncOrchestrator(
            queue=self.queue,
            transport=self.transport,
            cache=self.cache,
            classifier=ResourceClassifier.from_settings(CacheSettings()),
            connectivity=self.connectivity,
            config=settings,
            events=self.events,
            clock=self.clock,
        )

    async def asyncTearDown(self) -> None:
        await self.orchestrator.stop()

    def _enqueue(self, key, operation=MutationOperation.UPDATE, payload=b"{}") -> str:
        return self.queue.enqueue(new_mutation(key, operation, payload, now=self.clock()))

    async def _until(self, predicate) -> None:
        for _ in range(100):
            if predicate():
                return
            await asyncio.sleep(0)
        self.fail("condition not reached")

    async def test_offline_writes_drain_in_order_after_reconnect(self) -> None:
        self.connectivity.set_online(False)
        self.assertIs(self.orchestrator.status, SyncStatus.OFFLINE)
        create = self._enqueue(JOB_1, MutationOperation.CREATE, b'{"title":"Roof"}')
        first = self._enqueue(JOB_1, payload=b'{"status":"started"}')
        second = self._enqueue(JOB_1, payload=b'{"status":"done"}')
        self.transport.ok("POST", JOB_1, status=201)
        self.transport.ok("PUT", JOB_1)

        self.assertIsNone(await self.orchestrator.sync_now())

        completed = asyncio.Event()
        self.events.subscribe(lambda _: completed.set(), SyncCompleted)
        self.connectivity.set_online(True)
        await asyncio.wait_for(completed.wait(), timeout=2)

        sent = [call.headers[IDEMPOTENCY_HEADER] for call in self.transport.calls]
        self.assertEqual(sent, [create, first, second])
        self.assertEqual(len(self.queue), 0)
        self.assertIs(self.orchestrator.status, SyncStatus.ONLINE)
        statuses = [e.current for e in self.published if isinstance(e, SyncStatusChanged)]
        self.assertEqual(statuses, [SyncStatus.OFFLINE, SyncStatus.ONLINE, SyncStatus.SYNCING, SyncStatus.ONLINE])

    async def test_report_counts_synced_mutations(self) -> None:
        self._enqueue(JOB_1)
        self._enqueue(JOB_2)
        self.transport.ok("PUT", JOB_1)
        self.transport.ok("PUT", JOB_2)

        report = await self.orchestrator.sync_now()
        self.assertEqual((report.synced, report.failed, report.remaining), (2, 0, 0))
        self.assertFalse(report.interrupted)

    async def test_concurrent_trigger_is_coalesced(self) -> None:
        self._enqueue(JOB_1)
        self.transport.ok("PUT", JOB_1)
        self.transport.gate = asyncio.Event()

        running = asyncio.create_task(self.orchestrator.sync_now())
        await self._until(lambda: self.transport.calls)
        self.assertIs(self.orchestrator.status, SyncStatus.SYNCING)
        self.assertIsNone(await self.orchestrator.sync_now())

        self.transport.gate.set()
        report = await running
        self.assertEqual(report.synced, 1)
        self.assertEqual(len(self.transport.calls), 1)

    async def test_different_keys_drain_concurrently(self) -> None:
        self._enqueue(JOB_1)
        self._enqueue(JOB_2)
        self.transport.ok("PUT", JOB_1)
        self.transport.ok("PUT", JOB_2)
        self.transport.gate = asyncio.Event()

        running = asyncio.create_task(self.orchestrator.sync_now())
        await self._until(lambda: len(self.transport.calls) == 2)
        self.transport.gate.set()
        self.assertEqual((await running).synced, 2)

    async def test_update_response_refreshes_cache(self) -> None:
        self.cache.put(JOB_1, b'{"status":"open"}', StrategyKind.NETWORK_FIRST)
        self._enqueue(JOB_1, payload=b'{"status":"done"}')
        self.transport.ok("PUT", JOB_1, b'{"status":"done","version":2}')

        await self.orchestrator.sync_now()
        self.assertEqual(self.cache.get(JOB_1).payload, b'{"status":"done","version":2}')

    async def test_create_invalidates_cached_entry(self) -> None:
        self.cache.put(JOB_1, b"old", StrategyKind.NETWORK_FIRST)
        self._enqueue(JOB_1, MutationOperation.CREATE)
        self.transport.ok("POST", JOB_1, b"created", status=201)

        await self.orchestrator.sync_now()
        self.assertIsNone(self.cache.get(JOB_1))

    async def test_version_conflict_resolves_last_writer_wins(self) -> None:
        mutation_id = self._enqueue(JOB_1)
        self.transport.script("PUT", JOB_1, response(409), response(200))

        report = await self.orchestrator.sync_now()
        self.assertEqual(report.synced, 1)
        calls = self.transport.calls_for("PUT", JOB_1)
        self.assertNotIn(CONFLICT_POLICY_HEADER, calls[0].headers)
        self.assertEqual(calls[1].headers[CONFLICT_POLICY_HEADER], "overwrite")
        self.assertEqual(calls[1].headers[IDEMPOTENCY_HEADER], mutation_id)
        self.assertTrue(any(isinstance(e, ConflictDetected) for e in self.published))

    async def test_refused_mutation_is_retained_and_blocks_its_key(self) -> None:
        rejected = self._enqueue(JOB_1)
        self._enqueue(JOB_1)
        self.transport.script("PUT", JOB_1, response(404))

        report = await self.orchestrator.sync_now()
        self.assertEqual(report.failed, 1)
        self.assertEqual(report.remaining, 2)
        self.assertEqual(self.queue.get(rejected).last_error, ErrorKind.CONFLICT_REJECTED)
        self.assertEqual(len(self.transport.calls), 1)

    async def test_repeated_transient_failures_become_terminal(self) -> None:
        mutation_id = self._enqueue(JOB_1)
        self.transport.script("PUT", JOB_1, response(503))

        report = await self.orchestrator.sync_now()
        self.assertEqual(report.failed, 1)
        mutation = self.queue.get(mutation_id)
        self.assertEqual(mutation.attempts, 5)
        self.assertEqual(mutation.last_error, ErrorKind.TERMINAL_RETRY_EXHAUSTED)
        self.assertEqual(len(self.transport.calls), 5)

    async def test_unexpected_send_error_consumes_attempts(self) -> None:
        mutation_id = self._enqueue(JOB_1)
        self.transport.script("PUT", JOB_1, RuntimeError("request body could not be encoded"))

        report = await asyncio.wait_for(self.orchestrator.sync_now(), timeout=2)

        self.assertEqual(report.failed, 1)
        mutation = self.queue.get(mutation_id)
        self.assertEqual(mutation.attempts, 5)
        self.assertEqual(mutation.last_error, ErrorKind.TERMINAL_RETRY_EXHAUSTED)
        self.assertEqual(len(self.transport.calls), 5)
        self.assertIs(self.orchestrator.status, SyncStatus.ONLINE)

    async def test_crashed_key_is_skipped_for_rest_of_pass(self) -> None:
        stuck = self._enqueue(JOB_1)
        self._enqueue(JOB_2)
        self.transport.script("PUT", JOB_1, response(503))
        self.transport.ok("PUT", JOB_2)
        self.store.failing_prefix = f"queue/{stuck}"

        report = await asyncio.wait_for(self.orchestrator.sync_now(), timeout=2)

        self.assertEqual(report.synced, 1)
        self.assertEqual(report.remaining, 1)
        self.assertEqual(len(self.transport.calls_for("PUT", JOB_1)), 1)
        self.assertEqual(self.queue.get(stuck).attempts, 0)
        self.assertIs(self.orchestrator.status, SyncStatus.ONLINE)

    async def test_acknowledgment_storage_failure_keeps_mutation_queued(self) -> None:
        mutation_id = self._enqueue(JOB_1)
        self.transport.ok("PUT", JOB_1)
        self.store.failing_prefix = f"queue/{mutation_id}"

        report = await asyncio.wait_for(self.orchestrator.sync_now(), timeout=2)

        self.assertEqual(report.synced, 0)
        self.assertEqual(report.remaining, 1)
        self.assertEqual(len(self.transport.calls_for("PUT", JOB_1)), 1)

    async def test_transient_failure_then_success(self) -> None:
        self._enqueue(JOB_1)
        self.transport.script("PUT", JOB_1, response(502), response(200))

        report = await self.orchestrator.sync_now()
        self.assertEqual(report.synced, 1)
        self.assertEqual(len(self.queue), 0)

    async def test_delete_of_missing_resource_is_acknowledged(self) -> None:
        self.cache.put(JOB_1, b"old", StrategyKind.NETWORK_FIRST)
        self._enqueue(JOB_1, MutationOperation.DELETE, b"")
        self.transport.script("DELETE", JOB_1, response(404))

        report = await self.orchestrator.sync_now()
        self.assertEqual(report.synced, 1)
        self.assertIsNone(self.cache.get(JOB_1))
        self.assertIsNone(self.transport.calls[0].payload)

    async def test_authentication_required_stops_pass_without_consuming_attempts(self) -> None:
        mutation_id = self._enqueue(JOB_1)
        self.transport.script("PUT", JOB_1, response(401))

        report = await self.orchestrator.sync_now()
        self.assertTrue(report.interrupted)
        self.assertTrue(self.orchestrator.auth_required)
        self.assertEqual(self.queue.get(mutation_id).attempts, 0)
        self.assertIs(self.orchestrator.status, SyncStatus.ONLINE)

    async def test_going_offline_interrupts_pass(self) -> None:
        mutation_id = self._enqueue(JOB_1)
        self._enqueue(JOB_2)
        self.transport.gate = asyncio.Event()

        running = asyncio.create_task(self.orchestrator.sync_now())
        await self._until(lambda: len(self.transport.calls) == 2)
        self.transport.online = False
        self.connectivity.set_online(False)
        self.transport.gate.set()

        report = await running
        self.assertTrue(report.interrupted)
        self.assertEqual(report.synced, 0)
        self.assertEqual(report.remaining, 2)
        self.assertEqual(self.queue.get(mutation_id).attempts, 1)
        self.assertIs(self.orchestrator.status, SyncStatus.OFFLINE)


if __name__ == "__main__":
    unittest.main()
