from __future__ import annotations

import base64
import logging
import os
import threading
from pathlib import Path
from typing import Dict, Optional

from field_sync.core.errors import QuotaExceededError

logger = logging.getLogger(__name__)

_TMP_SUFFIX = ".tmp"


def _encode_name(key: str) -> str:
    return base64.urlsafe_b64encode(key.encode("utf-8")).decode("ascii").rstrip("=")


def _decode_name(name: str) -> str:
    padding = "=" * (-len(name) % 4)
    return base64.urlsafe_b64decode(name + padding).decode("utf-8")


def atomic_write_bytes(path: Path, data: bytes, *, fsync: bool = True) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(path.name + _TMP_SUFFIX)
    with open(tmp_path, "wb") as handle:
        handle.write(data)
        if fsync:
            handle.flush()
            os.fsync(handle.fileno())
    tmp_path.replace(path)


class FileKeyValueStore:
    """
    One file per key under a root directory.

    Writes go to a temporary sibling and are renamed into place, so a crash leaves
    either the old or the new value. Capacity is accounted in payload bytes.
    """

    def __init__(self, root: str | Path, *, capacity_bytes: int, fsync: bool = True) -> None:
        self.root = Path(root)
        self.capacity_bytes = capacity_bytes
        self._fsync = fsync
        self._lock = threading.Lock()
        self._sizes: Dict[str, int] = {}
        self._usage = 0
        self._open()

    def _open(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        for path in self.root.iterdir():
            if not path.is_file():
                continue
            if path.name.endswith(_TMP_SUFFIX):
                logger.warning("Removing incomplete storage write. path=%s", path)
                path.unlink(missing_ok=True)
                continue
            try:
                key = _decode_name(path.name)
            except ValueError:
                logger.warning("Ignoring unrecognized file in storage directory. path=%s", path)
                continue
            size = path.stat().st_size
            self._sizes[key] = size
            self._usage += size
        logger.info(
            "File storage opened. root=%s keys=%d usage=%d capacity=%d",
            self.root,
            len(self._sizes),
            self._usage,
            self.capacity_bytes,
        )

    def _path(self, key: str) -> Path:
        return self.root / _encode_name(key)

    def get(self, key: str) -> Optional[bytes]:
        path = self._path(key)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None

    def put(self, key: str, value: bytes) -> None:
        size = len(value)
        with self._lock:
            existed = key in self._sizes
            previous = self._sizes.get(key, 0)
            required = self._usage - previous + size
            if required > self.capacity_bytes:
                raise QuotaExceededError(key=key, required_bytes=required, capacity_bytes=self.capacity_bytes)
            # Reserve before writing so concurrent writers on other keys see the space as taken.
            self._usage = required
            self._sizes[key] = size
        try:
            atomic_write_bytes(self._path(key), value, fsync=self._fsync)
        except OSError:
            with self._lock:
                self._usage += previous - size
                if existed:
                    self._sizes[key] = previous
                else:
                    self._sizes.pop(key, None)
            raise

    def delete(self, key: str) -> None:
        with self._lock:
            size = self._sizes.pop(key, None)
            if size is None:
                return
            self._usage -= size
        self._path(key).unlink(missing_ok=True)

    def keys(self, prefix: str = "") -> list[str]:
        with self._lock:
            return sorted(key for key in self._sizes if key.startswith(prefix))

    def usage(self) -> int:
        with self._lock:
            return self._usage

    def close(self) -> None:
        logger.debug("File storage closed. root=%s", self.root)
