from __future__ import annotations

import base64
import json
from typing import Any, Optional

from field_sync.core.errors import ErrorKind
from field_sync.core.models import (
    CacheEntry,
    MutationOperation,
    MutationPriority,
    QueuedMutation,
    StrategyKind,
)
from field_sync.core.utils import ResourceKey, format_rfc3339, parse_rfc3339

SchemaVersion = 1


def _dump(payload: dict) -> bytes:
    return json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")


def _load(raw: bytes) -> dict:
    payload = json.loads(raw.decode("utf-8"))
    if not isinstance(payload, dict):
        raise ValueError(f"Stored record must be a JSON object, got: {type(payload).__name__}")
    version = int(payload.get("schema_version", SchemaVersion))
    if version != SchemaVersion:
        raise ValueError(f"Unsupported stored record schema version: {version}")
    return payload


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _unb64(data: str) -> bytes:
    return base64.b64decode(data.encode("ascii"))


def _optional_time(value: Optional[str]):
    if not value:
        return None
    return parse_rfc3339(value)


def encode_entry(entry: CacheEntry) -> bytes:
    return _dump(
        {
            "schema_version": SchemaVersion,
            "key": entry.key,
            "payload": _b64(entry.payload),
            "stored_at": format_rfc3339(entry.stored_at),
            "strategy": entry.strategy.value,
            "generation": entry.generation,
        }
    )


def decode_entry(raw: bytes) -> CacheEntry:
    payload = _load(raw)
    return CacheEntry(
        key=ResourceKey(payload["key"]),
        payload=_unb64(payload["payload"]),
        stored_at=parse_rfc3339(payload["stored_at"]),
        strategy=StrategyKind(payload["strategy"]),
        generation=int(payload["generation"]),
    )


def encode_mutation(mutation: QueuedMutation) -> bytes:
    record: dict[str, Any] = {
        "schema_version": SchemaVersion,
        "id": mutation.id,
        "resource_key": mutation.resource_key,
        "operation": mutation.operation.value,
        "payload": _b64(mutation.payload),
        "enqueued_at": format_rfc3339(mutation.enqueued_at),
        "attempts": mutation.attempts,
        "last_error": mutation.last_error.value if mutation.last_error else None,
        "sequence": mutation.sequence,
        "priority": mutation.priority.value,
        "next_attempt_at": format_rfc3339(mutation.next_attempt_at) if mutation.next_attempt_at else None,
    }
    return _dump(record)


def decode_mutation(raw: bytes) -> QueuedMutation:
    payload = _load(raw)
    last_error = payload.get("last_error")
    return QueuedMutation(
        id=payload["id"],
        resource_key=ResourceKey(payload["resource_key"]),
        operation=MutationOperation(payload["operation"]),
        payload=_unb64(payload.get("payload", "")),
        enqueued_at=parse_rfc3339(payload["enqueued_at"]),
        attempts=int(payload.get("attempts", 0)),
        last_error=ErrorKind(last_error) if last_error else None,
        sequence=int(payload.get("sequence", 0)),
        priority=MutationPriority(payload.get("priority", MutationPriority.NORMAL.value)),
        next_attempt_at=_optional_time(payload.get("next_attempt_at")),
    )


def encode_json(value: Any) -> bytes:
    return _dump({"schema_version": SchemaVersion, "value": value})


def decode_json(raw: bytes) -> Any:
    return _load(raw).get("value")
