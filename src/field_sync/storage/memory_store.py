from __future__ import annotations

import threading
from typing import Dict, Optional

from field_sync.core.errors import QuotaExceededError


class MemoryKeyValueStore:
    """Non-durable store with the same quota semantics as FileKeyValueStore."""

    def __init__(self, *, capacity_bytes: int = 50 * 1024 * 1024) -> None:
        self.capacity_bytes = capacity_bytes
        self._lock = threading.Lock()
        self._data: Dict[str, bytes] = {}
        self._usage = 0

    def get(self, key: str) -> Optional[bytes]:
        return self._data.get(key)

    def put(self, key: str, value: bytes) -> None:
        with self._lock:
            previous = self._data.get(key)
            required = self._usage - (len(previous) if previous is not None else 0) + len(value)
            if required > self.capacity_bytes:
                raise QuotaExceededError(key=key, required_bytes=required, capacity_bytes=self.capacity_bytes)
            self._data[key] = bytes(value)
            self._usage = required

    def delete(self, key: str) -> None:
        with self._lock:
            previous = self._data.pop(key, None)
            if previous is not None:
                self._usage -= len(previous)

    def keys(self, prefix: str = "") -> list[str]:
        with self._lock:
            return sorted(key for key in self._data if key.startswith(prefix))

    def usage(self) -> int:
        return self._usage

    def close(self) -> None:
        return None
