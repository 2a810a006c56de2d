"""
Progress tracking for a migration run.

A run is always in exactly one ProgressStage. Stage transitions replace an
immutable stage object in a single assignment, so a reader calling
``Progress.current_stage()`` sees either the old or the new stage, never a
mix. While data is migrating, the stage embeds an EntityCounter that the
writer path increments without touching the stage itself.

There is no history: once a stage is replaced, it is gone. The
``occasional_progress_logger`` task polls the current stage on a fixed
interval and logs a line describing it.

Example:
    >>> progress = Progress()
    >>> counter = EntityCounter()
    >>> progress.set_stage(MigratingData("users", counter, approx_count=120))
    >>> counter.increment_migrated()
    >>> describe_stage(progress.current_stage())
    'migrating users: 1 (0 skipped) /~120 (~0.8%)'
"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)


class CountKind(Enum):
    """Which counter of an EntityCounter to increment."""

    MIGRATED = "migrated"
    SKIPPED = "skipped"


class EntityCounter:
    """
    Migrated/skipped counters for one entity type.

    Both counters only ever increase. Each counter update takes a private
    lock, so increments stay exact even if a reporter reads from another
    thread, and never contend with stage transitions.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._migrated = 0
        self._skipped = 0

    def increment_migrated(self, n: int = 1) -> None:
        self._increment(CountKind.MIGRATED, n)

    def increment_skipped(self, n: int = 1) -> None:
        self._increment(CountKind.SKIPPED, n)

    def increment(self, kind: CountKind, n: int = 1) -> None:
        self._increment(kind, n)

    def _increment(self, kind: CountKind, n: int) -> None:
        if n < 0:
            raise ValueError(f"counters only increase, got increment of {n}")
        with self._lock:
            if kind is CountKind.MIGRATED:
                self._migrated += n
            else:
                self._skipped += n

    @property
    def migrated(self) -> int:
        return self._migrated

    @property
    def skipped(self) -> int:
        return self._skipped

    @property
    def processed(self) -> int:
        with self._lock:
            return self._migrated + self._skipped


@dataclass(frozen=True)
class SettingUp:
    """The run is acquiring resources and running checks."""


@dataclass(frozen=True)
class MigratingData:
    """
    Rows of one entity type are being migrated.

    Attributes:
        entity: Legacy entity type name
        counter: Live counters for this entity
        approx_count: Estimated number of source rows; informational only
    """

    entity: str
    counter: EntityCounter = field(compare=False)
    approx_count: int = 0

    @property
    def approx_percent(self) -> float | None:
        """
        Percentage of the estimated row count processed so far.

        The estimate can be wrong in either direction, so this may exceed
        100 and must never be used to decide that an entity is done.
        """
        if self.approx_count <= 0:
            return None
        return self.counter.processed / self.approx_count * 100


@dataclass(frozen=True)
class RebuildIndex:
    """A dropped index is being recreated."""

    index_name: str


@dataclass(frozen=True)
class RebuildConstraint:
    """A dropped constraint is being recreated and validated."""

    constraint_name: str


ProgressStage = SettingUp | MigratingData | RebuildIndex | RebuildConstraint


class Progress:
    """
    Holder for the current stage of a run.

    Safe to read from a reporting task while the migration path mutates it.
    """

    def __init__(self) -> None:
        self._stage: ProgressStage = SettingUp()

    def current_stage(self) -> ProgressStage:
        return self._stage

    def set_stage(self, stage: ProgressStage) -> None:
        previous = self._stage
        self._stage = stage
        logger.debug("Progress stage %s -> %s", type(previous).__name__, type(stage).__name__)

    def increment(self, entity: str, kind: CountKind, n: int = 1) -> None:
        """
        Increment a counter of the entity currently being migrated.

        Raises:
            ValueError: If ``entity`` is not the entity currently migrating
        """
        stage = self._stage
        if not isinstance(stage, MigratingData) or stage.entity != entity:
            raise ValueError(f"not currently migrating {entity!r}")
        stage.counter.increment(kind, n)


def describe_stage(stage: ProgressStage) -> str:
    """Render a one-line, human-readable description of a stage."""
    match stage:
        case SettingUp():
            return "still setting up"
        case MigratingData(entity=entity, counter=counter, approx_count=approx_count):
            line = f"migrating {entity}: {counter.migrated} ({counter.skipped} skipped)"
            percent = stage.approx_percent
            if percent is None:
                return line
            return f"{line} /~{approx_count} (~{percent:.1f}%)"
        case RebuildIndex(index_name=name):
            return f"still waiting for rebuild of index {name}"
        case RebuildConstraint(constraint_name=name):
            return f"still waiting for rebuild of constraint {name}"
    raise TypeError(f"unknown progress stage: {stage!r}")


async def occasional_progress_logger(progress: Progress, interval: float = 30.0) -> None:
    """
    Log the current stage every ``interval`` seconds, forever.

    A lightweight alternative to a progress bar. Most migrations finish
    before the first line is logged. The task has no effect on the run and
    is cancelled by the orchestrator when the run ends.
    """
    while True:
        await asyncio.sleep(interval)
        logger.info("%s", describe_stage(progress.current_stage()))


__all__ = [
    "CountKind",
    "EntityCounter",
    "MigratingData",
    "Progress",
    "ProgressStage",
    "RebuildConstraint",
    "RebuildIndex",
    "SettingUp",
    "describe_stage",
    "occasional_progress_logger",
]
