from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Literal, Optional

from field_sync.core.errors import TERMINAL_ERROR_KINDS, ErrorKind
from field_sync.core.utils import ResourceKey, utc_now


class StrategyKind(str, Enum):
    CACHE_FIRST = "CacheFirst"
    NETWORK_FIRST = "NetworkFirst"
    STALE_WHILE_REVALIDATE = "StaleWhileRevalidate"


class MutationOperation(str, Enum):
    CREATE = "Create"
    UPDATE = "Update"
    DELETE = "Delete"

    @property
    def http_method(self) -> str:
        if self is MutationOperation.CREATE:
            return "POST"
        if self is MutationOperation.UPDATE:
            return "PUT"
        return "DELETE"


class MutationPriority(str, Enum):
    CRITICAL = "critical"
    NORMAL = "normal"
    LOW = "low"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    MutationPriority.CRITICAL: 0,
    MutationPriority.NORMAL: 1,
    MutationPriority.LOW: 2,
}


class SyncStatus(str, Enum):
    ONLINE = "Online"
    OFFLINE = "Offline"
    SYNCING = "Syncing"


@dataclass(frozen=True, slots=True)
class CacheEntry:
    key: ResourceKey
    payload: bytes
    stored_at: datetime
    strategy: StrategyKind
    generation: int


@dataclass(frozen=True, slots=True)
class QueuedMutation:
    id: str
    resource_key: ResourceKey
    operation: MutationOperation
    payload: bytes
    enqueued_at: datetime
    attempts: int = 0
    last_error: Optional[ErrorKind] = None
    sequence: int = 0
    priority: MutationPriority = MutationPriority.NORMAL
    next_attempt_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.last_error in TERMINAL_ERROR_KINDS

    def is_due(self, now: datetime) -> bool:
        return self.next_attempt_at is None or self.next_attempt_at <= now


def new_mutation(
    resource_key: ResourceKey,
    operation: MutationOperation,
    payload: bytes = b"",
    *,
    mutation_id: Optional[str] = None,
    priority: MutationPriority = MutationPriority.NORMAL,
    now: Optional[datetime] = None,
) -> QueuedMutation:
    return QueuedMutation(
        id=mutation_id or str(uuid.uuid4()),
        resource_key=resource_key,
        operation=operation,
        payload=payload,
        enqueued_at=now or utc_now(),
        priority=priority,
    )


@dataclass(frozen=True, slots=True)
class RetryDecision:
    terminal: bool
    delay_seconds: float
    attempts: int
    error: ErrorKind


@dataclass(frozen=True, slots=True)
class FetchResult:
    payload: bytes
    source: Literal["network", "cache"]
    stale: bool = False


@dataclass(slots=True)
class SyncReport:
    synced: int = 0
    failed: int = 0
    remaining: int = 0
    interrupted: bool = False
