from __future__ import annotations

from dataclasses import dataclass

from field_sync.config.models import SyncSettings


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Exponential backoff with a ceiling on both the delay and the number of attempts."""

    max_attempts: int = 5
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 60.0

    @classmethod
    def from_settings(cls, settings: SyncSettings) -> RetryPolicy:
        return cls(
            max_attempts=settings.max_attempts,
            base_delay_seconds=settings.backoff_base_seconds,
            max_delay_seconds=settings.backoff_max_seconds,
        )

    def delay_for(self, attempts: int) -> float:
        if attempts <= 0:
            return 0.0
        return min(self.max_delay_seconds, self.base_delay_seconds * (2 ** (attempts - 1)))

    def is_exhausted(self, attempts: int) -> bool:
        return attempts >= self.max_attempts
