"""Offline write queue and its reconciliation with the server."""

from field_sync.sync.backoff import RetryPolicy
from field_sync.sync.connectivity import ConnectivityMonitor
from field_sync.sync.orchestrator import SyncOrchestrator
from field_sync.sync.queue import MutationQueue

__all__ = ["ConnectivityMonitor", "MutationQueue", "RetryPolicy", "SyncOrchestrator"]
