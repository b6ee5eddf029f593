"""Offline-first caching and write synchronization for the field operations client."""

from __future__ import annotations

from typing import TYPE_CHECKING

from field_sync.core import (
    FieldSyncError,
    MutationOperation,
    StrategyKind,
    SyncStatus,
    UnreachableError,
    normalize_resource_key,
)

if TYPE_CHECKING:
    from field_sync.runtime import FieldSyncRuntime

__version__ = "0.1.0"

__all__ = [
    "FieldSyncError",
    "FieldSyncRuntime",
    "MutationOperation",
    "StrategyKind",
    "SyncStatus",
    "UnreachableError",
    "normalize_resource_key",
]


def __getattr__(name: str):
    if name == "FieldSyncRuntime":
        from field_sync.runtime import FieldSyncRuntime as _FieldSyncRuntime

        return _FieldSyncRuntime
    raise AttributeError(name)
