import json
import unittest

from fakes import FakeClock, FakeTransport, response

from field_sync.cache.router import ResourceClassifier
from field_sync.cache.store import CacheStore
from field_sync.config.models import CacheSettings
from field_sync.core.errors import ManifestError, NetworkError
from field_sync.core.events import EventBus, GenerationActivated, UpdateAvailable
from field_sync.core.models import StrategyKind
from field_sync.core.utils import ResourceKey
from field_sync.storage import MemoryKeyValueStore
from field_sync.updates.manager import UpdateManager
from field_sync.updates.manifest import ManifestClient

MANIFEST = ResourceKey("/asset-manifest.json")
APP_JS = ResourceKey("/app.js")
INDEX = ResourceKey("/index.html")


def _manifest(generation: int, *assets: str) -> bytes:
    return json.dumps({"generation": generation, "assets": list(assets)}).encode("utf-8")


class UpdateManagerTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.store = MemoryKeyValueStore()
        self.transport = FakeTransport()
        self.events = EventBus()
        self.published = []
        self.events.subscribe(self.published.append)
        self.cache = self._open_cache()
        self.cache.put(APP_JS, b"bundle-v1", StrategyKind.CACHE_FIRST)
        self.manager = self._open_manager()

    def _open_cache(self, max_entries: int = 50) -> CacheStore:
        cache = CacheStore(self.store, max_entries=max_entries, events=self.events, clock=FakeClock())
        cache.open()
        return cache

    def _open_manager(self) -> UpdateManager:
        manager = UpdateManager(
            cache=self.cache,
            store=self.store,
            transport=self.transport,
            manifests=ManifestClient(transport=self.transport, manifest_path="/asset-manifest.json", timeout_seconds=1),
            classifier=ResourceClassifier.from_settings(CacheSettings()),
            request_timeout_seconds=1,
            poll_interval_seconds=60,
            events=self.events,
        )
        manager.open()
        return manager

    def _publish(self, generation: int) -> None:
        self.transport.ok("GET", MANIFEST, _manifest(generation, "/app.js", "/index.html"))
        self.transport.ok("GET", APP_JS, f"bundle-v{generation}".encode("ascii"))
        self.transport.ok("GET", INDEX, f"index-v{generation}".encode("ascii"))

    async def test_same_generation_is_up_to_date(self) -> None:
        self._publish(1)
        self.assertFalse(await self.manager.check_for_update())
        self.assertIsNone(self.manager.staged_generation)

    async def test_staging_leaves_active_generation_untouched(self) -> None:
        self._publish(2)

        self.assertTrue(await self.manager.check_for_update())
        self.assertEqual(self.manager.staged_generation, 2)
        self.assertEqual(self.cache.active_generation, 1)
        self.assertEqual(self.cache.get(APP_JS).payload, b"bundle-v1")
        self.assertEqual(self.cache.get(APP_JS, generation=2).payload, b"bundle-v2")

        event = next(e for e in self.published if isinstance(e, UpdateAvailable))
        self.assertEqual((event.current_generation, event.new_generation), (1, 2))

    async def test_staging_into_full_cache_keeps_active_entries(self) -> None:
        self.cache = self._open_cache(max_entries=3)
        jobs = [ResourceKey("/api/jobs/1"), ResourceKey("/api/jobs/2")]
        for key in jobs:
            self.cache.put(key, b"job", StrategyKind.NETWORK_FIRST)
        self.manager = self._open_manager()
        self._publish(2)

        self.assertTrue(await self.manager.check_for_update())

        self.assertEqual(self.cache.get(APP_JS).payload, b"bundle-v1")
        for key in jobs:
            self.assertEqual(self.cache.get(key).payload, b"job")
        self.assertEqual(self.cache.get(INDEX, generation=2).payload, b"index-v2")
        self.assertEqual(self.cache.stats().entries_by_generation, {1: 3, 2: 2})

    async def test_repeated_check_does_not_refetch_staged_assets(self) -> None:
        self._publish(2)
        await self.manager.check_for_update()
        self.assertTrue(await self.manager.check_for_update())
        self.assertEqual(len(self.transport.calls_for("GET", APP_JS)), 1)

    async def test_activation_switches_generation_and_evicts_old_entries(self) -> None:
        self._publish(2)
        await self.manager.check_for_update()

        await self.manager.activate_new_generation()
        self.assertEqual(self.cache.active_generation, 2)
        self.assertEqual(self.cache.get(APP_JS).payload, b"bundle-v2")
        self.assertEqual(self.cache.generations(), [2])
        self.assertIsNone(self.manager.staged_generation)
        self.assertEqual(self.manager.active_manifest().generation, 2)
        self.assertTrue(any(isinstance(e, GenerationActivated) for e in self.published))

    async def test_activation_without_staged_generation_is_noop(self) -> None:
        await self.manager.activate_new_generation()
        self.assertEqual(self.cache.active_generation, 1)
        self.assertEqual(self.cache.get(APP_JS).payload, b"bundle-v1")

    async def test_failed_prefetch_discards_partial_generation(self) -> None:
        self._publish(2)
        self.transport.script("GET", INDEX, response(500))

        with self.assertRaises(ManifestError):
            await self.manager.check_for_update()
        self.assertEqual(self.cache.generations(), [1])
        self.assertIsNone(self.manager.staged_generation)

    async def test_network_failure_during_manifest_fetch_propagates(self) -> None:
        self.transport.online = False
        with self.assertRaises(NetworkError):
            await self.manager.check_for_update()

    async def test_invalid_manifest_is_rejected(self) -> None:
        self.transport.ok("GET", MANIFEST, b'{"assets": []}')
        with self.assertRaises(ManifestError):
            await self.manager.check_for_update()

    async def test_newer_publication_supersedes_staged_generation(self) -> None:
        self._publish(2)
        await self.manager.check_for_update()
        self._publish(3)

        self.assertTrue(await self.manager.check_for_update())
        self.assertEqual(self.manager.staged_generation, 3)
        self.assertEqual(self.cache.generations(), [1, 3])

    async def test_staged_generation_survives_restart(self) -> None:
        self._publish(2)
        await self.manager.check_for_update()

        self.cache = self._open_cache()
        restarted = self._open_manager()
        self.assertEqual(restarted.staged_generation, 2)
        self.assertEqual(self.cache.get(APP_JS).payload, b"bundle-v1")

        await restarted.activate_new_generation()
        self.assertEqual(self.cache.get(APP_JS).payload, b"bundle-v2")


if __name__ == "__main__":
    unittest.main()
