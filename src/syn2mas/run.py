"""
Run-scoped state of a migration.

A MigrationRun is created when a migration starts and discarded when it
ends. It owns everything that would otherwise be global: the id
translation table, the progress holder, the provider mapping, and the clock
and random source ids are generated from.
"""

from __future__ import annotations

import random
from collections import Counter
from collections.abc import Hashable
from dataclasses import dataclass, field
from typing import Any
from uuid import UUID

from syn2mas.exceptions import IdTranslationError
from syn2mas.ids import Clock, SystemClock
from syn2mas.progress import Progress
from syn2mas.reader import SynapseEntity


class IdTranslationTable:
    """
    Maps legacy Synapse ids to newly generated MAS ids, per entity type.

    Ids for an entity type may only be recorded until the entity is sealed,
    and only looked up after it is sealed. The orchestrator seals an entity
    once every row of it has been committed, so a row can never be written
    with a reference to an id that is not yet in the database.

    Example:
        >>> ids = IdTranslationTable()
        >>> ids.record(SynapseEntity.USERS, "@alice:example.com", alice_id)
        >>> ids.seal(SynapseEntity.USERS)
        >>> ids.resolve(SynapseEntity.USERS, "@alice:example.com")
        UUID('...')
    """

    def __init__(self) -> None:
        self._ids: dict[SynapseEntity, dict[Hashable, UUID]] = {
            entity: {} for entity in SynapseEntity
        }
        self._sealed: set[SynapseEntity] = set()

    def record(self, entity: SynapseEntity, legacy_id: Hashable, new_id: UUID) -> None:
        """
        Record the MAS id generated for a legacy row.

        Raises:
            IdTranslationError: If the entity is sealed or the legacy id is
                already recorded
        """
        if entity in self._sealed:
            raise IdTranslationError(
                f"Cannot record id {legacy_id!r}: entity is sealed", entity=entity.value
            )
        ids = self._ids[entity]
        if legacy_id in ids:
            raise IdTranslationError(f"Duplicate legacy id {legacy_id!r}", entity=entity.value)
        ids[legacy_id] = new_id

    def resolve(self, entity: SynapseEntity, legacy_id: Hashable) -> UUID | None:
        """
        Look up the MAS id of a legacy row of an earlier entity type.

        Returns:
            The MAS id, or None if the row was not migrated

        Raises:
            IdTranslationError: If the entity has not been sealed yet
        """
        if entity not in self._sealed:
            raise IdTranslationError(
                "Cannot resolve ids of an entity that is still being migrated",
                entity=entity.value,
            )
        return self._ids[entity].get(legacy_id)

    def seal(self, entity: SynapseEntity) -> None:
        """Close an entity type for writes once all its rows are committed."""
        self._sealed.add(entity)

    def is_sealed(self, entity: SynapseEntity) -> bool:
        return entity in self._sealed

    def count(self, entity: SynapseEntity) -> int:
        return len(self._ids[entity])


@dataclass
class EntitySummary:
    """
    Outcome of migrating one entity type.

    Attributes:
        entity: Legacy entity type name
        migrated: Source rows written to MAS
        skipped: Source rows left behind
        skip_reasons: Skipped rows counted by reason
    """

    entity: str
    migrated: int = 0
    skipped: int = 0
    skip_reasons: Counter[str] = field(default_factory=Counter)

    @property
    def total(self) -> int:
        return self.migrated + self.skipped

    def record_migrated(self) -> None:
        self.migrated += 1

    def record_skipped(self, reason: str) -> None:
        self.skipped += 1
        self.skip_reasons[reason] += 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity": self.entity,
            "migrated": self.migrated,
            "skipped": self.skipped,
            "skip_reasons": dict(sorted(self.skip_reasons.items())),
        }


class MigrationRun:
    """
    State owned by one migration run.

    Attributes:
        homeserver: Server name local user ids are qualified with
        provider_mapping: Synapse identity provider id -> MAS provider id
        ids: Legacy-to-MAS id translation table
        progress: Current stage of the run
        clock: Clock ids and timestamps are derived from
        rng: Random source for ids and generated device ids
        synapse_admins: Legacy user ids of Synapse server admins
        summaries: Outcome per entity type, in migration order
    """

    def __init__(
        self,
        *,
        homeserver: str,
        provider_mapping: dict[str, UUID],
        clock: Clock | None = None,
        rng: random.Random | None = None,
        progress: Progress | None = None,
    ) -> None:
        self.homeserver = homeserver
        self.provider_mapping = dict(provider_mapping)
        self.ids = IdTranslationTable()
        self.progress = progress or Progress()
        self.clock: Clock = clock or SystemClock()
        self.rng = rng or random.SystemRandom()
        self.synapse_admins: set[str] = set()
        self.summaries: dict[str, EntitySummary] = {}

    def summary_for(self, entity: SynapseEntity) -> EntitySummary:
        if entity.value not in self.summaries:
            self.summaries[entity.value] = EntitySummary(entity=entity.value)
        return self.summaries[entity.value]


__all__ = [
    "EntitySummary",
    "IdTranslationTable",
    "MigrationRun",
]
