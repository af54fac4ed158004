from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

from tenacity import stop_after_attempt, wait_fixed, wait_none

if TYPE_CHECKING:
    from flakeguard.config import Settings


class Backoff(str, Enum):
    FIXED = "fixed"
    NONE = "none"


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    max_attempts: int = 3
    backoff: Backoff = Backoff.NONE
    timeout_per_attempt: float = 10.0
    backoff_interval: float = 0.25

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.timeout_per_attempt <= 0:
            raise ValueError(f"timeout_per_attempt must be > 0, got {self.timeout_per_attempt}")
        if self.backoff_interval < 0:
            raise ValueError(f"backoff_interval must be >= 0, got {self.backoff_interval}")
        object.__setattr__(self, "backoff", Backoff(self.backoff))

    @classmethod
    def from_settings(cls, settings: Settings) -> RetryPolicy:
        return cls(
            max_attempts=settings.max_attempts,
            backoff=settings.backoff,
            timeout_per_attempt=settings.timeout_per_attempt,
            backoff_interval=settings.backoff_interval,
        )

    @property
    def worst_case_seconds(self) -> float:
        pause = self.backoff_interval if self.backoff is Backoff.FIXED else 0.0
        return self.max_attempts * self.timeout_per_attempt + (self.max_attempts - 1) * pause

    def stop_strategy(self):
        return stop_after_attempt(self.max_attempts)

    def wait_strategy(self):
        if self.backoff is Backoff.FIXED:
            return wait_fixed(self.backoff_interval)
        return wait_none()


def should_retry(attempt: int, max_attempts: int, postcondition_held: bool) -> bool:
    if postcondition_held:
        return False
    return attempt < max_attempts
