from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Failure classification persisted on a queued mutation."""

    NETWORK_ERROR = "NetworkError"
    CONFLICT_REJECTED = "ConflictRejected"
    TERMINAL_RETRY_EXHAUSTED = "TerminalRetryExhausted"


TERMINAL_ERROR_KINDS = frozenset({ErrorKind.CONFLICT_REJECTED, ErrorKind.TERMINAL_RETRY_EXHAUSTED})


class FieldSyncError(Exception):
    """Base class for every error raised by this package."""


class UnreachableError(FieldSyncError):
    """No network and no usable cached entry for the requested resource."""

    def __init__(self, key: str, cause: Optional[BaseException] = None) -> None:
        super().__init__(f"Resource unreachable: {key}")
        self.key = key
        self.cause = cause


class NetworkError(FieldSyncError):
    """Transient transport failure: connection error, timeout or retryable status."""

    def __init__(self, message: str, *, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class QuotaExceededError(FieldSyncError):
    """Durable storage refused a write because its capacity would be exceeded."""

    def __init__(self, *, key: str, required_bytes: int, capacity_bytes: int) -> None:
        super().__init__(
            f"Storage quota exceeded: key={key} required={required_bytes} capacity={capacity_bytes}"
        )
        self.key = key
        self.required_bytes = required_bytes
        self.capacity_bytes = capacity_bytes


class ResponseStatusError(FieldSyncError):
    """The server answered a read with a non-retryable status."""

    def __init__(self, key: str, status: int) -> None:
        super().__init__(f"Unexpected response status: key={key} status={status}")
        self.key = key
        self.status = status


class ConflictRejectedError(FieldSyncError):
    """The server permanently refused a queued mutation."""

    def __init__(self, mutation_id: str, status: int) -> None:
        super().__init__(f"Mutation rejected by server: id={mutation_id} status={status}")
        self.mutation_id = mutation_id
        self.status = status


class TerminalRetryExhaustedError(FieldSyncError):
    """A queued mutation reached the retry ceiling."""

    def __init__(self, mutation_id: str, attempts: int) -> None:
        super().__init__(f"Mutation retry ceiling reached: id={mutation_id} attempts={attempts}")
        self.mutation_id = mutation_id
        self.attempts = attempts


class AuthenticationRequiredError(FieldSyncError):
    """The server requires the user to log in again before queued writes can be sent."""


class ManifestError(FieldSyncError):
    """The asset manifest endpoint returned something that is not a valid manifest."""


def error_kind_for(error: BaseException) -> ErrorKind:
    if isinstance(error, ConflictRejectedError):
        return ErrorKind.CONFLICT_REJECTED
    if isinstance(error, TerminalRetryExhaustedError):
        return ErrorKind.TERMINAL_RETRY_EXHAUSTED
    return ErrorKind.NETWORK_ERROR
