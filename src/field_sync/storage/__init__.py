"""Durable byte-oriented storage backing the cache store and the mutation queue."""

from field_sync.storage.file_store import FileKeyValueStore
from field_sync.storage.interfaces import KeyValueStore
from field_sync.storage.memory_store import MemoryKeyValueStore

__all__ = ["FileKeyValueStore", "KeyValueStore", "MemoryKeyValueStore"]
