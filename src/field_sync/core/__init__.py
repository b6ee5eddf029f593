"""Shared models, errors and primitives."""

from field_sync.core.errors import (
    AuthenticationRequiredError,
    ConflictRejectedError,
    ErrorKind,
    FieldSyncError,
    ManifestError,
    NetworkError,
    QuotaExceededError,
    ResponseStatusError,
    TerminalRetryExhaustedError,
    UnreachableError,
)
from field_sync.core.models import (
    CacheEntry,
    FetchResult,
    MutationOperation,
    MutationPriority,
    QueuedMutation,
    RetryDecision,
    StrategyKind,
    SyncReport,
    SyncStatus,
    new_mutation,
)
from field_sync.core.utils import ResourceKey, normalize_resource_key

__all__ = [
    "AuthenticationRequiredError",
    "CacheEntry",
    "ConflictRejectedError",
    "ErrorKind",
    "FetchResult",
    "FieldSyncError",
    "ManifestError",
    "MutationOperation",
    "MutationPriority",
    "NetworkError",
    "QueuedMutation",
    "QuotaExceededError",
    "ResourceKey",
    "ResponseStatusError",
    "RetryDecision",
    "StrategyKind",
    "SyncReport",
    "SyncStatus",
    "TerminalRetryExhaustedError",
    "UnreachableError",
    "new_mutation",
    "normalize_resource_key",
]
