from __future__ import annotations

from typing import Optional, Protocol


class KeyValueStore(Protocol):
    """Byte-oriented durable key-value storage with a bounded capacity."""

    capacity_bytes: int

    def get(self, key: str) -> Optional[bytes]:
        """Return the stored value, or None when the key is absent."""
        ...

    def put(self, key: str, value: bytes) -> None:
        """
        Store value under key, replacing any previous value atomically.

        Raises QuotaExceededError when the write would exceed capacity_bytes. A failed
        write leaves the previous value intact.
        """
        ...

    def delete(self, key: str) -> None:
        """Remove key. Removing an absent key is a no-op."""
        ...

    def keys(self, prefix: str = "") -> list[str]:
        """Return every stored key starting with prefix, sorted."""
        ...

    def usage(self) -> int:
        """Return the number of bytes currently stored."""
        ...

    def close(self) -> None:
        ...
