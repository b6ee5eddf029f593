from __future__ import annotations

from dataclasses import dataclass, field
from typing import Mapping, Optional, Protocol


@dataclass(frozen=True, slots=True)
class TransportResponse:
    status: int
    body: bytes = b""
    headers: Mapping[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


class Transport(Protocol):
    async def send(
        self,
        method: str,
        key: str,
        payload: Optional[bytes] = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> TransportResponse:
        """
        Issue one request for the resource addressed by key.

        Any HTTP status is returned as a response. Connection failures and timeouts
        raise NetworkError. Writes carrying an Idempotency-Key header must be safe to
        repeat: the server de-duplicates them by that key.
        """
        ...


def is_transient_status(status: int) -> bool:
    return status in (408, 429) or status >= 500
