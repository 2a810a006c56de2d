"""
Migration orchestration.

The orchestrator drives one run from start to finish:

    1. Take the migration lock on the MAS database
    2. Run the consistency checks; stop if any error is found
    3. Open the Synapse reader and the MAS writer
    4. Migrate each entity type in foreign-key order:
       stream -> transform -> load, then wait for the writer barrier
       and seal the entity's ids before the next type starts
    5. Rebuild indexes and constraints
    6. Report per-entity totals

Failures are final. A run that fails after the writer opened leaves the
MAS database partially written; it has to be restored from backup and the
migration rerun from scratch.

Usage:
    >>> orchestrator = MigrationOrchestrator(synapse_config, mas_config)
    >>> result = await orchestrator.run(synapse_conn, mas_conn, worker_conns)
    >>> if result.success:
    ...     print(render_summary(result.summaries))
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import random
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection

from syn2mas.checks import CheckReport, ConsistencyChecker
from syn2mas.config import DEFAULT_BATCH_SIZE, MasConfig, MigrationOptions, SynapseConfig
from syn2mas.exceptions import ChecksFailedError, MigrationAbortedError, Syn2MasError
from syn2mas.ids import Clock
from syn2mas.locks import AlreadyHeld, try_lock_mas_database
from syn2mas.observability import (
    ATTR_DRY_RUN,
    ATTR_ENTITY,
    ATTR_ROWS_MIGRATED,
    ATTR_ROWS_SKIPPED,
    ATTR_WORKER_COUNT,
    Tracer,
    create_tracer,
)
from syn2mas.progress import CountKind, EntityCounter, MigratingData, occasional_progress_logger
from syn2mas.reader import SynapseEntity, SynapseReader
from syn2mas.run import EntitySummary, MigrationRun
from syn2mas.transform import Skipped, transform
from syn2mas.writer import MasTable, MasWriter

logger = logging.getLogger(__name__)

MIGRATION_ORDER: tuple[SynapseEntity, ...] = (
    SynapseEntity.USERS,
    SynapseEntity.THREEPIDS,
    SynapseEntity.EXTERNAL_IDS,
    SynapseEntity.DEVICES,
    SynapseEntity.ACCESS_TOKENS,
    SynapseEntity.REFRESH_TOKENS,
)


class MigrationOutcome(Enum):
    """How a run ended."""

    SUCCEEDED = "succeeded"
    ALREADY_RUNNING = "already_running"
    CHECKS_FAILED = "checks_failed"
    FAILED = "failed"


@dataclass
class MigrationResult:
    """
    Result of a migration run, for the caller to report.

    Attributes:
        outcome: How the run ended
        report: Check findings, if the checks ran
        summaries: Per-entity totals for the entity types that were reached
        error: The error that ended the run, if any
    """

    outcome: MigrationOutcome
    report: CheckReport | None = None
    summaries: dict[str, EntitySummary] = field(default_factory=dict)
    error: Syn2MasError | None = None

    @property
    def success(self) -> bool:
        return self.outcome is MigrationOutcome.SUCCEEDED

    def to_dict(self) -> dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "errors": self.report.errors if self.report else [],
            "warnings": self.report.warnings if self.report else [],
            "summaries": [summary.to_dict() for summary in self.summaries.values()],
            "error": self.error.to_dict() if self.error else None,
        }


async def migrate_entity(
    entity: SynapseEntity,
    reader: SynapseReader,
    writer: MasWriter,
    run: MigrationRun,
    *,
    batch_size: int = DEFAULT_BATCH_SIZE,
    tracer: Tracer | None = None,
) -> EntitySummary:
    """
    Migrate every row of one entity type.

    Returns once every row of the entity is committed and its ids are
    sealed in the translation table.

    Raises:
        SourceReadError: If rows cannot be read
        TargetWriteError: If a batch fails to insert
        MigrationAbortedError: If a transformer fails on something other than
            row data
    """
    tracer = tracer or create_tracer(__name__)
    summary = run.summary_for(entity)
    approx_count = await reader.count_rows_approx(entity)
    run.progress.set_stage(MigratingData(entity.value, EntityCounter(), approx_count))
    logger.info("Migrating %s (~%d rows)", entity.value, approx_count)

    pending: dict[MasTable, list[Any]] = {}

    with tracer.span("syn2mas.migration.entity", {ATTR_ENTITY: entity.value}) as span:
        async with contextlib.aclosing(reader.stream(entity)) as rows:
            async for row in rows:
                try:
                    result = transform(entity, row, run)
                except ValueError as e:
                    raise MigrationAbortedError(
                        f"Cannot transform row {row.legacy_id!r}: {e}", entity=entity.value
                    ) from e
                if isinstance(result, Skipped):
                    summary.record_skipped(result.reason.value)
                    run.progress.increment(entity.value, CountKind.SKIPPED)
                    logger.debug(
                        "Skipping %s %r: %s", entity.value, row.legacy_id, result.reason.value
                    )
                    continue

                # Recorded before the row is queued, so nothing can reference an unknown id
                run.ids.record(entity, result.legacy_id, result.new_id)
                for target in result.rows:
                    batch = pending.setdefault(target.table, [])
                    batch.append(target.values)
                    if len(batch) >= batch_size:
                        await writer.load_batch(target.table, batch)
                        pending[target.table] = []
                summary.record_migrated()
                run.progress.increment(entity.value, CountKind.MIGRATED)

        for table, batch in pending.items():
            if batch:
                await writer.load_batch(table, batch)
        await writer.barrier()
        run.ids.seal(entity)

        if span is not None:
            span.set_attribute(ATTR_ROWS_MIGRATED, summary.migrated)
            span.set_attribute(ATTR_ROWS_SKIPPED, summary.skipped)

    logger.info(
        "Migrated %d %s (%d skipped)",
        summary.migrated,
        entity.value,
        summary.skipped,
    )
    if summary.skipped:
        logger.warning(
            "Skipped %d %s: %s",
            summary.skipped,
            entity.value,
            ", ".join(
                f"{reason} ({count})" for reason, count in sorted(summary.skip_reasons.items())
            ),
        )
    return summary


async def migrate(
    reader: SynapseReader,
    writer: MasWriter,
    run: MigrationRun,
    *,
    batch_size: int = DEFAULT_BATCH_SIZE,
    tracer: Tracer | None = None,
) -> dict[str, EntitySummary]:
    """
    Migrate every entity type in order, then finalize the writer.

    Returns:
        Per-entity summaries, in migration order
    """
    tracer = tracer or create_tracer(__name__)
    for entity in MIGRATION_ORDER:
        await migrate_entity(entity, reader, writer, run, batch_size=batch_size, tracer=tracer)
    await writer.finalize(run.progress)
    return run.summaries


def render_summary(summaries: dict[str, EntitySummary]) -> str:
    """Render per-entity totals, one line per entity and skip reason."""
    lines = ["===== Summary ====="]
    for summary in summaries.values():
        lines.append(f"{summary.entity}: {summary.migrated} migrated, {summary.skipped} skipped")
        for reason, count in sorted(summary.skip_reasons.items()):
            lines.append(f"    {count} {reason}")
    return "\n".join(lines)


class MigrationOrchestrator:
    """
    Runs a complete migration.

    Attributes:
        _synapse_config: Resolved Synapse configuration
        _mas_config: Resolved MAS configuration
        _options: Run options
    """

    def __init__(
        self,
        synapse_config: SynapseConfig,
        mas_config: MasConfig,
        options: MigrationOptions | None = None,
        *,
        clock: Clock | None = None,
        rng: random.Random | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._synapse_config = synapse_config
        self._mas_config = mas_config
        self._options = options or MigrationOptions()
        self._clock = clock
        self._rng = rng

    def _new_run(self) -> MigrationRun:
        return MigrationRun(
            homeserver=self._mas_config.homeserver,
            provider_mapping=self._mas_config.provider_id_mapping(),
            clock=self._clock,
            rng=self._rng,
        )

    async def run(
        self,
        synapse_connection: AsyncConnection,
        mas_connection: AsyncConnection,
        worker_connections: Sequence[AsyncConnection],
    ) -> MigrationResult:
        """
        Run the migration.

        Args:
            synapse_connection: Connection to the Synapse database
            mas_connection: Connection to the MAS database; it takes the
                migration lock and keeps it until the caller closes it
            worker_connections: Extra MAS connections used for inserts; at
                most `options.writer_connections` of them are used

        Returns:
            The result; errors that end the run are reported in it rather
            than raised
        """
        workers = list(worker_connections[: self._options.writer_connections])
        if len(workers) < self._options.writer_connections:
            logger.warning(
                "Only %d writer connection(s) available, %d configured",
                len(workers),
                self._options.writer_connections,
            )

        with self._tracer.span(
            "syn2mas.migration.run",
            {
                ATTR_DRY_RUN: self._options.dry_run,
                ATTR_WORKER_COUNT: len(workers),
            },
        ):
            try:
                lock = await try_lock_mas_database(mas_connection, tracer=self._tracer)
                if isinstance(lock, AlreadyHeld):
                    logger.error("Failed to acquire syn2mas lock on the database.")
                    logger.error(
                        "This likely means that another syn2mas instance is already running!"
                    )
                    return MigrationResult(outcome=MigrationOutcome.ALREADY_RUNNING)

                checker = ConsistencyChecker(
                    self._synapse_config, self._mas_config, tracer=self._tracer
                )
                report = await checker.run_all(synapse_connection, lock.connection)
            except Syn2MasError as e:
                logger.log(e.severity.log_level, "Migration could not start: %s", e)
                return MigrationResult(outcome=MigrationOutcome.FAILED, error=e)

            if report.has_errors:
                error = ChecksFailedError(report)
                logger.error("%s; nothing was written", error)
                return MigrationResult(
                    outcome=MigrationOutcome.CHECKS_FAILED, report=report, error=error
                )
            if report.has_warnings:
                logger.warning(
                    "Proceeding despite %d check warning(s)", len(report.warnings)
                )

            run = self._new_run()
            try:
                await self._migrate(run, synapse_connection, lock.connection, workers)
            except Syn2MasError as e:
                logger.log(e.severity.log_level, "Migration failed: %s", e)
                logger.log(e.severity.log_level, "%s", e.suggested_action)
                return MigrationResult(
                    outcome=MigrationOutcome.FAILED,
                    report=report,
                    summaries=run.summaries,
                    error=e,
                )

        logger.info("Migration completed successfully")
        return MigrationResult(
            outcome=MigrationOutcome.SUCCEEDED, report=report, summaries=run.summaries
        )

    async def _migrate(
        self,
        run: MigrationRun,
        synapse_connection: AsyncConnection,
        mas_connection: AsyncConnection,
        worker_connections: Sequence[AsyncConnection],
    ) -> None:
        options = self._options
        reporter = asyncio.create_task(
            occasional_progress_logger(run.progress, options.progress_interval)
        )
        reader: SynapseReader | None = None
        writer: MasWriter | None = None
        try:
            reader = await SynapseReader.open(
                synapse_connection,
                dry_run=options.dry_run,
                batch_size=options.batch_size,
                tracer=self._tracer,
            )
            writer = await MasWriter.open(mas_connection, worker_connections, tracer=self._tracer)
            await migrate(reader, writer, run, batch_size=options.batch_size, tracer=self._tracer)
        except SQLAlchemyError as e:
            raise MigrationAbortedError(f"Database error during migration: {e}") from e
        finally:
            reporter.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await reporter
            if writer is not None:
                await writer.close()
            if reader is not None:
                await reader.close()


__all__ = [
    "MIGRATION_ORDER",
    "MigrationOrchestrator",
    "MigrationOutcome",
    "MigrationResult",
    "migrate",
    "migrate_entity",
    "render_summary",
]
