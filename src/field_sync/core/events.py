"""
In-process publish/subscribe for state changes the application layer reacts to
(status banners, reload prompts, manual resolution lists).
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Callable, Optional, Type, Union

from field_sync.core.errors import ErrorKind
from field_sync.core.models import QueuedMutation, SyncReport, SyncStatus
from field_sync.core.utils import ResourceKey

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class SyncStatusChanged:
    previous: SyncStatus
    current: SyncStatus


@dataclass(frozen=True, slots=True)
class ConnectivityChanged:
    online: bool


@dataclass(frozen=True, slots=True)
class SyncCompleted:
    report: SyncReport


@dataclass(frozen=True, slots=True)
class QueueChanged:
    size: int


@dataclass(frozen=True, slots=True)
class MutationNeedsResolution:
    mutation: QueuedMutation
    error: ErrorKind


@dataclass(frozen=True, slots=True)
class ConflictDetected:
    mutation: QueuedMutation
    status: int


@dataclass(frozen=True, slots=True)
class CacheWriteFailed:
    key: ResourceKey
    reason: str


@dataclass(frozen=True, slots=True)
class UpdateAvailable:
    current_generation: int
    new_generation: int


@dataclass(frozen=True, slots=True)
class GenerationActivated:
    generation: int


Event = Union[
    SyncStatusChanged,
    ConnectivityChanged,
    SyncCompleted,
    QueueChanged,
    MutationNeedsResolution,
    ConflictDetected,
    CacheWriteFailed,
    UpdateAvailable,
    GenerationActivated,
]
Handler = Callable[[Event], None]


class EventBus:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: list[tuple[Optional[Type], Handler]] = []

    def subscribe(self, handler: Handler, event_type: Optional[Type] = None) -> Callable[[], None]:
        """
        Register a handler for one event type, or for every event when event_type is None.

        Returns a callable that removes the subscription.
        """
        entry = (event_type, handler)
        with self._lock:
            self._subscribers.append(entry)

        def _unsubscribe() -> None:
            with self._lock:
                if entry in self._subscribers:
                    self._subscribers.remove(entry)

        return _unsubscribe

    def publish(self, event: Event) -> None:
        with self._lock:
            handlers = [
                handler
                for event_type, handler in self._subscribers
                if event_type is None or isinstance(event, event_type)
            ]
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.exception("Event handler failed. event=%s", type(event).__name__)
