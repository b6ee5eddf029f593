from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Deque, Dict, Mapping, Optional, Tuple, Union

from field_sync.core.errors import NetworkError
from field_sync.storage import MemoryKeyValueStore
from field_sync.transport.interfaces import TransportResponse

Outcome = Union[TransportResponse, BaseException]


class FakeClock:
    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime(2026, 1, 5, 8, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class FailingWritesStore(MemoryKeyValueStore):
    """Memory store whose writes and deletes under `failing_prefix` raise OSError."""

    def __init__(self, **kwargs) -> None:
        super().__init__(**kwargs)
        self.failing_prefix: Optional[str] = None

    def _check(self, key: str) -> None:
        if self.failing_prefix is not None and key.startswith(self.failing_prefix):
            raise OSError(f"storage unavailable: {key}")

    def put(self, key: str, value: bytes) -> None:
        self._check(key)
        super().put(key, value)

    def delete(self, key: str) -> None:
        self._check(key)
        super().delete(key)


@dataclass
class RecordedCall:
    method: str
    key: str
    payload: Optional[bytes]
    headers: Dict[str, str] = field(default_factory=dict)


class FakeTransport:
    """
    Scripted transport.

    Outcomes are queued per (method, key); the last queued outcome repeats. Unknown
    routes answer 404. While `online` is False every call raises NetworkError.
    """

    def __init__(self) -> None:
        self.online = True
        self.calls: list[RecordedCall] = []
        self._routes: Dict[Tuple[str, str], Deque[Outcome]] = {}
        self.gate: Optional[asyncio.Event] = None

    def script(self, method: str, key: str, *outcomes: Outcome) -> None:
        self._routes[(method, key)] = deque(outcomes)

    def ok(self, method: str, key: str, body: bytes = b"", status: int = 200) -> None:
        self.script(method, key, TransportResponse(status=status, body=body))

    def calls_for(self, method: str, key: str) -> list[RecordedCall]:
        return [call for call in self.calls if call.method == method and call.key == key]

    async def send(
        self,
        method: str,
        key: str,
        payload: Optional[bytes] = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> TransportResponse:
        self.calls.append(RecordedCall(method, key, payload, dict(headers or {})))
        if self.gate is not None:
            await self.gate.wait()
        if not self.online:
            raise NetworkError(f"offline: {method} {key}")
        outcomes = self._routes.get((method, key))
        if not outcomes:
            return TransportResponse(status=404)
        outcome = outcomes[0] if len(outcomes) == 1 else outcomes.popleft()
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


def response(status: int = 200, body: bytes = b"") -> TransportResponse:
    return TransportResponse(status=status, body=body)
