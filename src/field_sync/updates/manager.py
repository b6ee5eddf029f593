from __future__ import annotations

import asyncio
import logging
import time
from typing import Optional

from field_sync.cache.router import ResourceClassifier
from field_sync.cache.store import CacheStore
from field_sync.core.errors import ManifestError, NetworkError
from field_sync.core.events import EventBus, GenerationActivated, UpdateAvailable
from field_sync.core.utils import normalize_resource_key
from field_sync.storage.codec import decode_json, encode_json
from field_sync.storage.interfaces import KeyValueStore
from field_sync.transport.interfaces import Transport
from field_sync.updates.manifest import AssetManifest, ManifestClient

logger = logging.getLogger(__name__)

ACTIVE_MANIFEST_KEY = "meta/active_manifest"
STAGED_MANIFEST_KEY = "meta/staged_manifest"


class UpdateManager:
    """
    Stages newly deployed asset generations and swaps them in on request.

    Staging never touches the active generation, so pages already running keep the
    assets they started with until activate_new_generation() is called.
    """

    def __init__(
        self,
        *,
        cache: CacheStore,
        store: KeyValueStore,
        transport: Transport,
        manifests: ManifestClient,
        classifier: ResourceClassifier,
        request_timeout_seconds: float,
        poll_interval_seconds: float,
        events: Optional[EventBus] = None,
    ):
        self._cache = cache
        self._store = store
        self._transport = transport
        self._manifests = manifests
        self._classifier = classifier
        self._timeout = request_timeout_seconds
        self._poll_interval = poll_interval_seconds
        self._events = events
        self._staged: Optional[AssetManifest] = None
        self._check_lock = asyncio.Lock()
        self._runtime_task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    def open(self) -> None:
        raw = self._store.get(STAGED_MANIFEST_KEY)
        if raw is None:
            return
        staged = AssetManifest.model_validate(decode_json(raw))
        if staged.generation <= self._cache.active_generation:
            self._store.delete(STAGED_MANIFEST_KEY)
            return
        self._staged = staged
        logger.info("Staged asset generation restored. generation=%d", staged.generation)

    @property
    def staged_generation(self) -> Optional[int]:
        return self._staged.generation if self._staged else None

    def active_manifest(self) -> Optional[AssetManifest]:
        raw = self._store.get(ACTIVE_MANIFEST_KEY)
        if raw is None:
            return None
        return AssetManifest.model_validate(decode_json(raw))

    async def check_for_update(self) -> bool:
        """
        Compare the published manifest with the active generation.

        Returns True when a newer generation is staged and ready for activation.
        Manifest and prefetch failures propagate; a partially staged generation is
        discarded first.
        """
        async with self._check_lock:
            latest = await self._manifests.fetch_latest()
            active = self._cache.active_generation
            if latest.generation <= active:
                logger.debug("Assets up to date. active=%d published=%d", active, latest.generation)
                return False
            if self._staged and self._staged.generation == latest.generation:
                return True
            if self._staged:
                logger.info(
                    "Discarding superseded staged generation. staged=%d published=%d",
                    self._staged.generation,
                    latest.generation,
                )
                self._cache.evict_generation(self._staged.generation)
                self._staged = None

            try:
                await self._prefetch(latest)
            except Exception:
                self._cache.evict_generation(latest.generation)
                raise

            self._store.put(STAGED_MANIFEST_KEY, encode_json(latest.model_dump(mode="json")))
            self._staged = latest

        logger.info("Update available. active=%d new=%d assets=%d", active, latest.generation, len(latest.assets))
        if self._events:
            self._events.publish(UpdateAvailable(current_generation=active, new_generation=latest.generation))
        return True

    async def _prefetch(self, manifest: AssetManifest) -> None:
        skipped = 0
        for asset in manifest.assets:
            key = normalize_resource_key(asset)
            try:
                response = await asyncio.wait_for(self._transport.send("GET", key), timeout=self._timeout)
            except asyncio.TimeoutError as e:
                raise NetworkError(f"Asset prefetch timed out: {key}") from e
            if not response.ok:
                raise ManifestError(f"Asset prefetch failed: key={key} status={response.status}")
            strategy = self._classifier.classify(key).strategy
            if not self._cache.put(key, response.body, strategy, generation=manifest.generation):
                skipped += 1
        if skipped:
            # Assets that did not fit are fetched from the network on first use.
            logger.warning(
                "Some assets were not staged. generation=%d skipped=%d",
                manifest.generation,
                skipped,
            )

    async def activate_new_generation(self) -> None:
        async with self._check_lock:
            staged = self._staged
            if staged is None:
                logger.info("No staged asset generation to activate.")
                return

            self._cache.set_active_generation(staged.generation)
            self._store.put(ACTIVE_MANIFEST_KEY, encode_json(staged.model_dump(mode="json")))
            self._store.delete(STAGED_MANIFEST_KEY)
            self._staged = None
            for generation in self._cache.generations():
                if generation < staged.generation:
                    self._cache.evict_generation(generation)

        if self._events:
            self._events.publish(GenerationActivated(generation=staged.generation))

    def start_polling(self) -> None:
        if self._runtime_task and not self._runtime_task.done():
            return
        self._stop_event.clear()
        self._runtime_task = asyncio.create_task(self._runtime_loop())

    async def stop_polling(self) -> None:
        if not self._runtime_task:
            return
        self._stop_event.set()
        await self._runtime_task
        self._runtime_task = None

    async def _runtime_loop(self) -> None:
        while not self._stop_event.is_set():
            started = time.monotonic()
            try:
                await self.check_for_update()
            except NetworkError as e:
                logger.info("Update check skipped, network unavailable. error=%s", e)
            except Exception:
                logger.exception("Update check failed.")
            elapsed = time.monotonic() - started
            sleep_seconds = max(0.0, self._poll_interval - elapsed)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=sleep_seconds)
            except asyncio.TimeoutError:
                continue
