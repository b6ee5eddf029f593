from __future__ import annotations

import hashlib
import posixpath
from datetime import datetime, timezone
from typing import NewType
from urllib.parse import parse_qsl, urlencode, urlsplit

ResourceKey = NewType("ResourceKey", str)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_rfc3339(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_rfc3339(value: str) -> datetime:
    raw = value.strip()
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    return datetime.fromisoformat(raw)


def normalize_resource_key(address: str) -> ResourceKey:
    """
    Normalize a logical resource address (path + query) into a stable key.

    Scheme, host and fragment are dropped. Repeated slashes collapse, dot segments
    resolve, the trailing slash is removed except for the root, and query parameters
    are sorted so that `/jobs?b=2&a=1` and `/jobs?a=1&b=2` map to the same key.
    """
    raw = address.strip()
    if not raw:
        raise ValueError("Resource address must not be empty")

    parts = urlsplit(raw)
    path = parts.path or "/"
    if not path.startswith("/"):
        path = "/" + path
    path = posixpath.normpath(path)
    # normpath keeps a leading double slash as POSIX allows it
    while path.startswith("//"):
        path = path[1:]
    if path == ".":
        path = "/"

    params = parse_qsl(parts.query, keep_blank_values=True)
    if not params:
        return ResourceKey(path)
    query = urlencode(sorted(params))
    return ResourceKey(f"{path}?{query}")


def key_path(key: ResourceKey) -> str:
    return key.split("?", 1)[0]


def hash_key(key: str) -> str:
    return hashlib.sha256(key.encode("utf-8")).hexdigest()
