from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Sequence

from field_sync.cache.store import CacheStore
from field_sync.config.models import CacheSettings, ResourceClassSettings
from field_sync.core.errors import NetworkError, ResponseStatusError, UnreachableError
from field_sync.core.models import CacheEntry, FetchResult, StrategyKind
from field_sync.core.utils import ResourceKey, key_path
from field_sync.transport.interfaces import Transport, is_transient_status

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ResourceClass:
    name: str
    pattern: re.Pattern
    strategy: StrategyKind
    ttl_seconds: float
    critical: bool = False

    @classmethod
    def from_settings(cls, settings: ResourceClassSettings) -> ResourceClass:
        return cls(
            name=settings.name,
            pattern=re.compile(settings.pattern),
            strategy=settings.strategy,
            ttl_seconds=settings.ttl_seconds,
            critical=settings.critical,
        )


class ResourceClassifier:
    """Assigns each resource key to the first configured class whose pattern matches its path."""

    def __init__(self, classes: Sequence[ResourceClass], default: ResourceClass):
        self._classes = list(classes)
        self._default = default

    @classmethod
    def from_settings(cls, settings: CacheSettings) -> ResourceClassifier:
        return cls(
            [ResourceClass.from_settings(item) for item in settings.resource_classes],
            ResourceClass.from_settings(settings.default_class),
        )

    def classify(self, key: ResourceKey) -> ResourceClass:
        path = key_path(key)
        for resource_class in self._classes:
            if resource_class.pattern.search(path):
                return resource_class
        return self._default


class StrategyRouter:
    def __init__(
        self,
        *,
        cache: CacheStore,
        transport: Transport,
        classifier: ResourceClassifier,
        request_timeout_seconds: float,
        is_online: Optional[Callable[[], bool]] = None,
    ):
        self._cache = cache
        self._transport = transport
        self._classifier = classifier
        self._timeout = request_timeout_seconds
        self._is_online = is_online
        self._revalidations: Dict[ResourceKey, asyncio.Task] = {}

    @property
    def classifier(self) -> ResourceClassifier:
        return self._classifier

    async def request(self, key: ResourceKey, strategy: Optional[StrategyKind] = None) -> bytes:
        result = await self.fetch(key, strategy)
        return result.payload

    async def fetch(self, key: ResourceKey, strategy: Optional[StrategyKind] = None) -> FetchResult:
        resource_class = self._classifier.classify(key)
        kind = strategy or resource_class.strategy

        if kind is StrategyKind.CACHE_FIRST:
            return await self._cache_first(key, resource_class)
        if kind is StrategyKind.NETWORK_FIRST:
            return await self._network_first(key, resource_class, kind)
        if kind is StrategyKind.STALE_WHILE_REVALIDATE:
            return await self._stale_while_revalidate(key, resource_class)
        raise ValueError(f"Unsupported strategy: {kind}")

    async def aclose(self) -> None:
        """Wait for background revalidations so their cache writes land before teardown."""
        pending = list(self._revalidations.values())
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def _cache_first(self, key: ResourceKey, resource_class: ResourceClass) -> FetchResult:
        cached = self._cache.get(key)
        if cached is not None and self._cache.is_fresh(cached, resource_class.ttl_seconds):
            logger.debug("Serving fresh cached resource. key=%s", key)
            return FetchResult(payload=cached.payload, source="cache")

        try:
            payload = await self._fetch_and_store(key, StrategyKind.CACHE_FIRST)
        except NetworkError as e:
            return self._fallback(key, cached, resource_class, e)
        return FetchResult(payload=payload, source="network")

    async def _network_first(
        self,
        key: ResourceKey,
        resource_class: ResourceClass,
        kind: StrategyKind,
    ) -> FetchResult:
        cached = self._cache.get(key)
        try:
            payload = await self._fetch_and_store(key, kind)
        except NetworkError as e:
            return self._fallback(key, cached, resource_class, e)
        return FetchResult(payload=payload, source="network")

    async def _stale_while_revalidate(self, key: ResourceKey, resource_class: ResourceClass) -> FetchResult:
        cached = self._cache.get(key)
        if cached is None:
            return await self._network_first(key, resource_class, StrategyKind.STALE_WHILE_REVALIDATE)

        self._start_revalidation(key)
        return FetchResult(
            payload=cached.payload,
            source="cache",
            stale=not self._cache.is_fresh(cached, resource_class.ttl_seconds),
        )

    def _start_revalidation(self, key: ResourceKey) -> None:
        """
        Refresh key in a detached task.

        The task outlives the caller: cancelling the originating request does not cancel
        it, and its outcome only feeds the cache. Failures are logged and never reach
        the caller that triggered the refresh.
        """
        existing = self._revalidations.get(key)
        if existing is not None and not existing.done():
            return
        task = asyncio.create_task(self._revalidate(key))
        self._revalidations[key] = task
        task.add_done_callback(lambda done, k=key: self._forget_revalidation(k, done))

    def _forget_revalidation(self, key: ResourceKey, task: asyncio.Task) -> None:
        if self._revalidations.get(key) is task:
            del self._revalidations[key]

    async def _revalidate(self, key: ResourceKey) -> None:
        try:
            await self._fetch_and_store(key, StrategyKind.STALE_WHILE_REVALIDATE)
            logger.debug("Background revalidation refreshed cache. key=%s", key)
        except Exception as e:
            logger.warning("Background revalidation failed. key=%s error=%s", key, e)

    async def _fetch_and_store(self, key: ResourceKey, strategy: StrategyKind) -> bytes:
        if self._is_online is not None and not self._is_online():
            raise NetworkError(f"Offline, network skipped: {key}")

        try:
            response = await asyncio.wait_for(self._transport.send("GET", key), timeout=self._timeout)
        except asyncio.TimeoutError as e:
            raise NetworkError(f"Request timed out: {key}") from e

        if response.ok:
            self._cache.put(key, response.body, strategy)
            return response.body
        if is_transient_status(response.status):
            raise NetworkError(f"Transient response status: {key}", status=response.status)
        raise ResponseStatusError(key, response.status)

    def _fallback(
        self,
        key: ResourceKey,
        cached: Optional[CacheEntry],
        resource_class: ResourceClass,
        error: NetworkError,
    ) -> FetchResult:
        if cached is None:
            logger.info("Resource unreachable. key=%s error=%s", key, error)
            raise UnreachableError(key, error) from error
        stale = not self._cache.is_fresh(cached, resource_class.ttl_seconds)
        logger.info("Serving cached resource after network failure. key=%s stale=%s", key, stale)
        return FetchResult(payload=cached.payload, source="cache", stale=stale)
