"""
Utility functions for the anonbox API.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Generic, Optional, TypeVar

T = TypeVar("T")

# A clock returns the current time as an aware UTC datetime
Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Default clock."""
    return datetime.now(timezone.utc)


def epoch_millis(moment: datetime) -> int:
    """Milliseconds since the Unix epoch, used as record id."""
    return int(moment.timestamp() * 1000)


def iso_timestamp(moment: datetime) -> str:
    """
    Format a datetime as ISO-8601 UTC with millisecond precision and a Z
    suffix (e.g. 2025-12-14T10:15:30.123Z).
    """
    moment = moment.astimezone(timezone.utc)
    return moment.strftime('%Y-%m-%dT%H:%M:%S.%f')[:-3] + 'Z'


def count_digits(value: str) -> int:
    return sum(1 for char in value if char.isdigit())


@dataclass(frozen=True)
class StepResult(Generic[T]):
    """
    Outcome of one best-effort step.

    A failed result carries a short error description instead of raising,
    so callers decide the fallback value themselves.
    """
    value: Optional[T] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def value_or(self, default: T) -> T:
        if self.ok and self.value is not None:
            return self.value
        return default

    @classmethod
    def success(cls, value: Optional[T]) -> "StepResult[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: str) -> "StepResult[T]":
        return cls(error=error)
