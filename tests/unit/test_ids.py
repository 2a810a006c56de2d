"""
Unit tests for run-scoped clocks and id generation.
"""

from __future__ import annotations

import random
from datetime import UTC, datetime

import pytest

from syn2mas.ids import (
    Clock,
    InvalidTimestampError,
    MockClock,
    SystemClock,
    generate_ulid,
    ulid_timestamp,
)


class TestClocks:
    """Tests for SystemClock and MockClock."""

    def test_system_clock_is_timezone_aware(self) -> None:
        assert SystemClock().now().tzinfo is not None

    def test_clocks_satisfy_protocol(self) -> None:
        assert isinstance(SystemClock(), Clock)
        assert isinstance(MockClock(), Clock)

    def test_mock_clock_only_moves_when_advanced(self) -> None:
        clock = MockClock(datetime(2024, 5, 1, tzinfo=UTC))
        assert clock.now() == clock.now()

        clock.advance(seconds=90)

        assert clock.now() == datetime(2024, 5, 1, 0, 1, 30, tzinfo=UTC)


class TestGenerateUlid:
    """Tests for generate_ulid."""

    def test_timestamp_round_trips_to_the_millisecond(self) -> None:
        timestamp = datetime(2024, 1, 2, 3, 4, 5, 678000, tzinfo=UTC)

        value = generate_ulid(timestamp, random.Random(1))

        assert ulid_timestamp(value) == timestamp

    def test_ids_sort_by_time(self) -> None:
        """Ids from later timestamps sort after ids from earlier ones."""
        rng = random.Random(7)
        earlier = generate_ulid(datetime(2024, 1, 1, tzinfo=UTC), rng)
        later = generate_ulid(datetime(2024, 1, 1, 0, 0, 0, 1000, tzinfo=UTC), rng)

        assert earlier.int < later.int

    def test_same_timestamp_gives_distinct_ids(self) -> None:
        rng = random.Random(3)
        timestamp = datetime(2024, 1, 1, tzinfo=UTC)

        ids = {generate_ulid(timestamp, rng) for _ in range(1000)}

        assert len(ids) == 1000

    def test_seeded_rng_is_reproducible(self) -> None:
        timestamp = datetime(2024, 1, 1, tzinfo=UTC)
        assert generate_ulid(timestamp, random.Random(5)) == generate_ulid(
            timestamp, random.Random(5)
        )

    def test_rejects_timestamps_before_epoch(self) -> None:
        with pytest.raises(InvalidTimestampError):
            generate_ulid(datetime(1960, 1, 1, tzinfo=UTC), random.Random(1))
