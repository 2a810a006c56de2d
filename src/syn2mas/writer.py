"""
MasWriter - Loads transformed rows into the MAS database.

The writer owns two kinds of connections:

- the control connection, which holds the migration lock and performs
  schema operations (relaxing and later rebuilding indexes/constraints);
- a fixed pool of worker connections used only for bulk inserts.

Batches are handed to the pool through a bounded queue. Each worker drains
the queue and inserts every batch in its own transaction. If any insert
fails, the transaction rolls back and the failure is raised to the caller on
its next call; there is no partial-success mode, the whole run aborts.

Before loading, every constraint and index on the migrated tables (and
every foreign key pointing at them) is recorded in two restore tables and
dropped, so bulk inserts are not slowed down by index maintenance and can
arrive in any order. ``finalize()`` rebuilds them one by one, reporting each
as its own progress stage.

If a run aborts, the restore tables stay behind. Their presence marks the
database as half-migrated: it must be restored from backup.

Usage:
    >>> writer = await MasWriter.open(locked_connection, worker_connections)
    >>> try:
    ...     await writer.load_batch(MasTable.USERS, rows)
    ...     await writer.barrier()
    ...     await writer.finalize(progress)
    ... finally:
    ...     await writer.close()
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection

from syn2mas.exceptions import TargetWriteError
from syn2mas.observability import (
    ATTR_BATCH_SIZE,
    ATTR_CONSTRAINT_NAME,
    ATTR_DB_OPERATION,
    ATTR_INDEX_NAME,
    ATTR_TABLE,
    ATTR_WORKER_COUNT,
    Tracer,
    create_tracer,
)
from syn2mas.progress import Progress, RebuildConstraint, RebuildIndex

logger = logging.getLogger(__name__)


class MasTable(Enum):
    """Tables of the MAS database that the migration writes into."""

    USERS = "users"
    USER_PASSWORDS = "user_passwords"
    USER_EMAILS = "user_emails"
    UPSTREAM_OAUTH_LINKS = "upstream_oauth_links"
    COMPAT_SESSIONS = "compat_sessions"
    COMPAT_ACCESS_TOKENS = "compat_access_tokens"
    COMPAT_REFRESH_TOKENS = "compat_refresh_tokens"


TABLE_COLUMNS: dict[MasTable, tuple[str, ...]] = {
    MasTable.USERS: (
        "user_id",
        "username",
        "created_at",
        "locked_at",
        "deactivated_at",
        "can_request_admin",
    ),
    MasTable.USER_PASSWORDS: (
        "user_password_id",
        "user_id",
        "hashed_password",
        "version",
        "upgraded_from_id",
        "created_at",
    ),
    MasTable.USER_EMAILS: (
        "user_email_id",
        "user_id",
        "email",
        "created_at",
    ),
    MasTable.UPSTREAM_OAUTH_LINKS: (
        "upstream_oauth_link_id",
        "upstream_oauth_provider_id",
        "user_id",
        "subject",
        "created_at",
    ),
    MasTable.COMPAT_SESSIONS: (
        "compat_session_id",
        "user_id",
        "device_id",
        "human_name",
        "created_at",
        "is_synapse_admin",
        "last_active_at",
        "last_active_ip",
        "user_agent",
    ),
    MasTable.COMPAT_ACCESS_TOKENS: (
        "compat_access_token_id",
        "compat_session_id",
        "access_token",
        "created_at",
        "expires_at",
    ),
    MasTable.COMPAT_REFRESH_TOKENS: (
        "compat_refresh_token_id",
        "compat_session_id",
        "compat_access_token_id",
        "refresh_token",
        "created_at",
    ),
}

RESTORE_CONSTRAINTS_TABLE = "syn2mas_restore_constraints"
RESTORE_INDICES_TABLE = "syn2mas_restore_indices"


@dataclass(frozen=True)
class TargetRow:
    """A transformed row destined for one MAS table."""

    table: MasTable
    values: Mapping[str, Any]


@dataclass(frozen=True)
class ConstraintDescription:
    """A dropped constraint, as recorded for rebuilding."""

    table_name: str
    name: str
    definition: str
    is_foreign_key: bool


@dataclass(frozen=True)
class IndexDescription:
    """A dropped index, as recorded for rebuilding."""

    table_name: str
    name: str
    definition: str


@dataclass(frozen=True)
class _Batch:
    table: MasTable
    rows: list[Mapping[str, Any]]


def _insert_statement(table: MasTable) -> str:
    columns = TABLE_COLUMNS[table]
    return (
        f"INSERT INTO {table.value} ({', '.join(columns)}) "
        f"VALUES ({', '.join(':' + column for column in columns)})"
    )


_TABLE_NAMES = [table.value for table in MasTable]

_CREATE_RESTORE_TABLES = (
    f"""
    CREATE TABLE {RESTORE_CONSTRAINTS_TABLE} (
        table_name TEXT NOT NULL,
        name TEXT NOT NULL,
        definition TEXT NOT NULL,
        is_foreign_key BOOLEAN NOT NULL
    )
    """,
    f"""
    CREATE TABLE {RESTORE_INDICES_TABLE} (
        table_name TEXT NOT NULL,
        name TEXT NOT NULL,
        definition TEXT NOT NULL
    )
    """,
)

# Constraints on the migrated tables, plus foreign keys elsewhere pointing at them
_DESCRIBE_CONSTRAINTS = """
    SELECT c.conrelid::regclass::text AS table_name,
           quote_ident(c.conname) AS name,
           pg_get_constraintdef(c.oid) AS definition,
           c.contype = 'f' AS is_foreign_key
    FROM pg_constraint AS c
    WHERE c.contype IN ('p', 'u', 'f', 'x')
      AND (
          c.conrelid = ANY(CAST(CAST(:tables AS text[]) AS regclass[]))
          OR (c.contype = 'f' AND c.confrelid = ANY(CAST(CAST(:tables AS text[]) AS regclass[])))
      )
    ORDER BY c.contype = 'f' DESC, c.conname
"""

# Indexes that do not back a constraint; those go away with their constraint
_DESCRIBE_INDICES = """
    SELECT x.indrelid::regclass::text AS table_name,
           quote_ident(i.relname) AS name,
           pg_get_indexdef(x.indexrelid) AS definition
    FROM pg_index AS x
    JOIN pg_class AS i ON i.oid = x.indexrelid
    WHERE x.indrelid = ANY(CAST(CAST(:tables AS text[]) AS regclass[]))
      AND NOT EXISTS (
          SELECT 1 FROM pg_constraint AS c
          WHERE c.conindid = x.indexrelid AND c.contype IN ('p', 'u', 'x')
      )
    ORDER BY i.relname
"""


class MasWriter:
    """
    Parallel bulk loader for the MAS database.

    Attributes:
        _control: Connection holding the migration lock.
        _workers: Worker connections, one insert task each.
        _queue: Bounded queue of batches waiting for a worker.
        _failure: First worker failure, re-raised to the caller.
        _rows_written: Rows committed per table.
    """

    def __init__(
        self,
        control_connection: AsyncConnection,
        worker_connections: Sequence[AsyncConnection],
        *,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        if not worker_connections:
            raise ValueError("MasWriter needs at least one worker connection")
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._control = control_connection
        self._workers = list(worker_connections)
        self._queue: asyncio.Queue[_Batch] = asyncio.Queue(maxsize=len(self._workers))
        self._tasks: list[asyncio.Task[None]] = []
        self._failure: TargetWriteError | None = None
        self._rows_written: dict[MasTable, int] = dict.fromkeys(MasTable, 0)
        self._dropped_constraints: list[ConstraintDescription] = []
        self._dropped_indices: list[IndexDescription] = []

    @classmethod
    async def open(
        cls,
        control_connection: AsyncConnection,
        worker_connections: Sequence[AsyncConnection],
        *,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> MasWriter:
        """
        Prepare the MAS database for bulk loading and start the workers.

        Args:
            control_connection: Connection already holding the migration lock
            worker_connections: Connections used for inserts

        Raises:
            TargetWriteError: If constraints/indexes cannot be relaxed
        """
        writer = cls(
            control_connection,
            worker_connections,
            tracer=tracer,
            enable_tracing=enable_tracing,
        )
        await writer._relax_constraints()
        writer._start_workers()
        return writer

    @property
    def worker_count(self) -> int:
        return len(self._workers)

    @property
    def rows_written(self) -> dict[MasTable, int]:
        """Rows committed so far, per table."""
        return dict(self._rows_written)

    @property
    def dropped_constraints(self) -> list[ConstraintDescription]:
        return list(self._dropped_constraints)

    @property
    def dropped_indices(self) -> list[IndexDescription]:
        return list(self._dropped_indices)

    async def _relax_constraints(self) -> None:
        with self._tracer.span(
            "syn2mas.writer.relax_constraints",
            {ATTR_WORKER_COUNT: len(self._workers)},
        ):
            try:
                async with self._control.begin():
                    for statement in _CREATE_RESTORE_TABLES:
                        await self._control.execute(text(statement))

                    result = await self._control.execute(
                        text(_DESCRIBE_CONSTRAINTS), {"tables": _TABLE_NAMES}
                    )
                    constraints = [
                        ConstraintDescription(**row._mapping) for row in result.fetchall()
                    ]
                    result = await self._control.execute(
                        text(_DESCRIBE_INDICES), {"tables": _TABLE_NAMES}
                    )
                    indices = [IndexDescription(**row._mapping) for row in result.fetchall()]

                    for constraint in constraints:
                        await self._control.execute(
                            text(
                                f"INSERT INTO {RESTORE_CONSTRAINTS_TABLE} "
                                "(table_name, name, definition, is_foreign_key) "
                                "VALUES (:table_name, :name, :definition, :is_foreign_key)"
                            ),
                            {
                                "table_name": constraint.table_name,
                                "name": constraint.name,
                                "definition": constraint.definition,
                                "is_foreign_key": constraint.is_foreign_key,
                            },
                        )
                    for index in indices:
                        await self._control.execute(
                            text(
                                f"INSERT INTO {RESTORE_INDICES_TABLE} "
                                "(table_name, name, definition) "
                                "VALUES (:table_name, :name, :definition)"
                            ),
                            {
                                "table_name": index.table_name,
                                "name": index.name,
                                "definition": index.definition,
                            },
                        )

                    # Foreign keys come first in the list, before the keys they reference
                    for constraint in constraints:
                        await self._control.execute(
                            text(
                                f"ALTER TABLE {constraint.table_name} "
                                f"DROP CONSTRAINT {constraint.name}"
                            )
                        )
                    for index in indices:
                        await self._control.execute(text(f"DROP INDEX {index.name}"))
            except SQLAlchemyError as e:
                raise TargetWriteError(
                    f"Failed to relax constraints on the MAS database: {e}"
                ) from e

        self._dropped_constraints = constraints
        self._dropped_indices = indices
        logger.info(
            "Dropped %d constraints and %d indexes for bulk loading",
            len(constraints),
            len(indices),
        )

    def _start_workers(self) -> None:
        self._tasks = [
            asyncio.create_task(self._worker(connection), name=f"syn2mas_writer_{i}")
            for i, connection in enumerate(self._workers)
        ]

    async def _worker(self, connection: AsyncConnection) -> None:
        while True:
            batch = await self._queue.get()
            try:
                # Keep draining after a failure so producers never block forever
                if self._failure is None:
                    await self._insert(connection, batch)
            except Exception as e:
                if self._failure is None:
                    failure = TargetWriteError(
                        f"Failed to insert batch: {e}",
                        table=batch.table.value,
                        batch_size=len(batch.rows),
                    )
                    failure.__cause__ = e
                    self._failure = failure
                logger.error(
                    "Writer transaction failed on %s (%d rows): %s",
                    batch.table.value,
                    len(batch.rows),
                    e,
                )
            finally:
                self._queue.task_done()

    async def _insert(self, connection: AsyncConnection, batch: _Batch) -> None:
        with self._tracer.span(
            "syn2mas.writer.insert",
            {
                ATTR_TABLE: batch.table.value,
                ATTR_BATCH_SIZE: len(batch.rows),
                ATTR_DB_OPERATION: "INSERT",
            },
        ):
            async with connection.begin():
                await connection.execute(text(_insert_statement(batch.table)), batch.rows)
        self._rows_written[batch.table] += len(batch.rows)
        logger.debug("Inserted %d rows into %s", len(batch.rows), batch.table.value)

    def _raise_if_failed(self) -> None:
        if self._failure is not None:
            raise self._failure

    async def load_batch(self, table: MasTable, rows: Sequence[Mapping[str, Any]]) -> None:
        """
        Queue a batch of rows for insertion.

        Waits while every worker is busy and the queue is full.

        Raises:
            TargetWriteError: If an earlier batch failed
        """
        self._raise_if_failed()
        if not rows:
            return
        await self._queue.put(_Batch(table=table, rows=list(rows)))

    async def barrier(self) -> None:
        """
        Wait until every queued batch is committed.

        Raises:
            TargetWriteError: If any batch failed
        """
        await self._queue.join()
        self._raise_if_failed()

    async def finalize(self, progress: Progress) -> None:
        """
        Rebuild dropped indexes and constraints, then clean up.

        Indexes are rebuilt first, then constraints with foreign keys last
        so the keys they reference exist. Each object is reported as its
        own progress stage.

        Raises:
            TargetWriteError: If loading failed or an object cannot be rebuilt
        """
        await self.barrier()

        with self._tracer.span("syn2mas.writer.finalize"):
            try:
                async with self._control.begin():
                    indices = await self._control.execute(
                        text(
                            f"SELECT table_name, name, definition FROM {RESTORE_INDICES_TABLE} "
                            "ORDER BY name"
                        )
                    )
                    for row in indices.fetchall():
                        index = IndexDescription(**row._mapping)
                        progress.set_stage(RebuildIndex(index_name=index.name))
                        with self._tracer.span(
                            "syn2mas.writer.rebuild_index",
                            {ATTR_INDEX_NAME: index.name},
                        ):
                            await self._control.execute(text(index.definition))

                    constraints = await self._control.execute(
                        text(
                            "SELECT table_name, name, definition, is_foreign_key "
                            f"FROM {RESTORE_CONSTRAINTS_TABLE} "
                            "ORDER BY is_foreign_key, name"
                        )
                    )
                    for row in constraints.fetchall():
                        constraint = ConstraintDescription(**row._mapping)
                        progress.set_stage(RebuildConstraint(constraint_name=constraint.name))
                        with self._tracer.span(
                            "syn2mas.writer.rebuild_constraint",
                            {ATTR_CONSTRAINT_NAME: constraint.name},
                        ):
                            await self._control.execute(
                                text(
                                    f"ALTER TABLE {constraint.table_name} "
                                    f"ADD CONSTRAINT {constraint.name} {constraint.definition}"
                                )
                            )

                    await self._control.execute(text(f"DROP TABLE {RESTORE_INDICES_TABLE}"))
                    await self._control.execute(text(f"DROP TABLE {RESTORE_CONSTRAINTS_TABLE}"))
            except SQLAlchemyError as e:
                raise TargetWriteError(f"Failed to rebuild indexes and constraints: {e}") from e

        logger.info("Rebuilt all indexes and constraints")
        await self.close()

    async def close(self) -> None:
        """Stop the worker tasks. Connections are owned by the caller."""
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks = []


__all__ = [
    "RESTORE_CONSTRAINTS_TABLE",
    "RESTORE_INDICES_TABLE",
    "TABLE_COLUMNS",
    "ConstraintDescription",
    "IndexDescription",
    "MasTable",
    "MasWriter",
    "TargetRow",
]
