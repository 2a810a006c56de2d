"""
Run-scoped clock and id generation.

MAS identifies rows with ULIDs stored in UUID columns: a 48-bit
millisecond timestamp followed by 80 random bits. Ids generated from the
same run share one clock and one random source, which makes them
reproducible in tests.
"""

from __future__ import annotations

import random
from datetime import UTC, datetime, timedelta
from typing import Protocol, runtime_checkable
from uuid import UUID

_TIMESTAMP_MAX = (1 << 48) - 1
_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)
_MILLISECOND = timedelta(milliseconds=1)


class InvalidTimestampError(ValueError):
    """A timestamp that cannot be represented in an id."""


@runtime_checkable
class Clock(Protocol):
    """A source of the current time."""

    def now(self) -> datetime: ...


class SystemClock:
    """Clock backed by the system time."""

    def now(self) -> datetime:
        return datetime.now(UTC)


class MockClock:
    """
    Clock that only moves when told to.

    Example:
        >>> clock = MockClock(datetime(2024, 1, 1, tzinfo=UTC))
        >>> clock.advance(seconds=5)
    """

    def __init__(self, start: datetime | None = None) -> None:
        self._now = start or datetime(2024, 1, 1, tzinfo=UTC)

    def now(self) -> datetime:
        return self._now

    def advance(self, *, seconds: float) -> None:
        self._now += timedelta(seconds=seconds)


def generate_ulid(timestamp: datetime, rng: random.Random) -> UUID:
    """
    Generate a time-ordered, collision-resistant id.

    Args:
        timestamp: Creation time encoded in the top 48 bits; must be
            timezone-aware
        rng: Random source for the remaining 80 bits

    Returns:
        The id as a UUID
    """
    millis = (timestamp - _EPOCH) // _MILLISECOND
    if not 0 <= millis <= _TIMESTAMP_MAX:
        raise InvalidTimestampError(f"timestamp out of range for an id: {timestamp.isoformat()}")
    return UUID(int=(millis << 80) | rng.getrandbits(80))


def ulid_timestamp(value: UUID) -> datetime:
    """Extract the creation time from an id made by generate_ulid."""
    return _EPOCH + (value.int >> 80) * _MILLISECOND


__all__ = [
    "Clock",
    "InvalidTimestampError",
    "MockClock",
    "SystemClock",
    "generate_ulid",
    "ulid_timestamp",
]
