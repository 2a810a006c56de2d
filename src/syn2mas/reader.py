"""
SynapseReader - Streams rows out of the Synapse database.

The reader opens one snapshot transaction on the Synapse connection and
keeps it for the whole run, so every entity stream sees the same consistent
state of the database. Rows are fetched through a server-side cursor in
partitions of ``batch_size``; an entity's rows are never materialized in
memory at once.

Each entity type can be streamed exactly once per run, ordered by its
primary key.

Dry run:
    In dry-run mode the snapshot transaction is READ ONLY. Outside dry-run
    mode the reader additionally locks the Synapse tables it reads against
    concurrent writes (EXCLUSIVE mode, NOWAIT), so a Synapse instance that
    was accidentally left running cannot change data mid-run. The reader
    never writes in either mode.

Usage:
    >>> reader = await SynapseReader.open(synapse_connection, dry_run=True)
    >>> try:
    ...     async for user in reader.stream(SynapseEntity.USERS):
    ...         print(user.name)
    ... finally:
    ...     await reader.close()
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any, ClassVar

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncTransaction

from syn2mas.config import DEFAULT_BATCH_SIZE
from syn2mas.exceptions import SourceReadError
from syn2mas.observability import (
    ATTR_BATCH_SIZE,
    ATTR_DB_OPERATION,
    ATTR_DB_SYSTEM,
    ATTR_DRY_RUN,
    ATTR_ENTITY,
    Tracer,
    create_tracer,
)

logger = logging.getLogger(__name__)


class SynapseEntity(Enum):
    """
    Entity types read from Synapse, in foreign-key dependency order.

    The value is the Synapse table the entity is read from.
    """

    USERS = "users"
    THREEPIDS = "user_threepids"
    EXTERNAL_IDS = "user_external_ids"
    DEVICES = "devices"
    ACCESS_TOKENS = "access_tokens"
    REFRESH_TOKENS = "refresh_tokens"

    @property
    def table(self) -> str:
        return self.value


@dataclass(frozen=True)
class SynapseUser:
    """A row of the Synapse ``users`` table."""

    name: str
    password_hash: str | None
    admin: bool
    is_guest: bool
    deactivated: bool
    creation_ts: int
    appservice_id: str | None

    @property
    def legacy_id(self) -> str:
        return self.name

    @classmethod
    def from_mapping(cls, row: Mapping[str, Any]) -> SynapseUser:
        return cls(
            name=row["name"],
            password_hash=row["password_hash"],
            admin=bool(row["admin"]),
            is_guest=bool(row["is_guest"]),
            deactivated=bool(row["deactivated"]),
            creation_ts=int(row["creation_ts"] or 0),
            appservice_id=row["appservice_id"],
        )


@dataclass(frozen=True)
class SynapseThreepid:
    """A row of the Synapse ``user_threepids`` table."""

    user_id: str
    medium: str
    address: str
    validated_at: int | None
    added_at: int | None

    @property
    def legacy_id(self) -> tuple[str, str]:
        return (self.medium, self.address)

    @classmethod
    def from_mapping(cls, row: Mapping[str, Any]) -> SynapseThreepid:
        return cls(
            user_id=row["user_id"],
            medium=row["medium"],
            address=row["address"],
            validated_at=row["validated_at"],
            added_at=row["added_at"],
        )


@dataclass(frozen=True)
class SynapseExternalId:
    """A row of the Synapse ``user_external_ids`` table."""

    auth_provider: str
    external_id: str
    user_id: str

    @property
    def legacy_id(self) -> tuple[str, str]:
        return (self.auth_provider, self.external_id)

    @classmethod
    def from_mapping(cls, row: Mapping[str, Any]) -> SynapseExternalId:
        return cls(
            auth_provider=row["auth_provider"],
            external_id=row["external_id"],
            user_id=row["user_id"],
        )


@dataclass(frozen=True)
class SynapseDevice:
    """A row of the Synapse ``devices`` table."""

    user_id: str
    device_id: str
    display_name: str | None
    last_seen: int | None
    ip: str | None
    user_agent: str | None
    hidden: bool

    @property
    def legacy_id(self) -> tuple[str, str]:
        return (self.user_id, self.device_id)

    @classmethod
    def from_mapping(cls, row: Mapping[str, Any]) -> SynapseDevice:
        return cls(
            user_id=row["user_id"],
            device_id=row["device_id"],
            display_name=row["display_name"],
            last_seen=row["last_seen"],
            ip=row["ip"],
            user_agent=row["user_agent"],
            hidden=bool(row["hidden"]),
        )


@dataclass(frozen=True)
class SynapseAccessToken:
    """A row of the Synapse ``access_tokens`` table."""

    id: int
    user_id: str
    device_id: str | None
    token: str
    valid_until_ms: int | None
    last_validated: int | None
    refresh_token_id: int | None
    puppets_user_id: str | None

    @property
    def legacy_id(self) -> int:
        return self.id

    @classmethod
    def from_mapping(cls, row: Mapping[str, Any]) -> SynapseAccessToken:
        return cls(
            id=int(row["id"]),
            user_id=row["user_id"],
            device_id=row["device_id"],
            token=row["token"],
            valid_until_ms=row["valid_until_ms"],
            last_validated=row["last_validated"],
            refresh_token_id=row["refresh_token_id"],
            puppets_user_id=row["puppets_user_id"],
        )


@dataclass(frozen=True)
class SynapseRefreshToken:
    """
    A row of the Synapse ``refresh_tokens`` table.

    ``access_token_id`` is not a column of the table: it is the access token
    that was issued alongside this refresh token, looked up when reading.
    """

    id: int
    user_id: str
    device_id: str
    token: str
    next_token_id: int | None
    expiry_ts: int | None
    ultimate_session_expiry_ts: int | None
    access_token_id: int | None

    @property
    def legacy_id(self) -> int:
        return self.id

    @classmethod
    def from_mapping(cls, row: Mapping[str, Any]) -> SynapseRefreshToken:
        return cls(
            id=int(row["id"]),
            user_id=row["user_id"],
            device_id=row["device_id"],
            token=row["token"],
            next_token_id=row["next_token_id"],
            expiry_ts=row["expiry_ts"],
            ultimate_session_expiry_ts=row["ultimate_session_expiry_ts"],
            access_token_id=row["access_token_id"],
        )


SourceRow = (
    SynapseUser
    | SynapseThreepid
    | SynapseExternalId
    | SynapseDevice
    | SynapseAccessToken
    | SynapseRefreshToken
)


@dataclass(frozen=True)
class _EntityQuery:
    sql: str
    row_type: Any


_QUERIES: dict[SynapseEntity, _EntityQuery] = {
    SynapseEntity.USERS: _EntityQuery(
        """
        SELECT name, password_hash, admin, is_guest, deactivated, creation_ts, appservice_id
        FROM users
        ORDER BY name
        """,
        SynapseUser,
    ),
    SynapseEntity.THREEPIDS: _EntityQuery(
        """
        SELECT user_id, medium, address, validated_at, added_at
        FROM user_threepids
        ORDER BY medium, address
        """,
        SynapseThreepid,
    ),
    SynapseEntity.EXTERNAL_IDS: _EntityQuery(
        """
        SELECT auth_provider, external_id, user_id
        FROM user_external_ids
        ORDER BY auth_provider, external_id
        """,
        SynapseExternalId,
    ),
    SynapseEntity.DEVICES: _EntityQuery(
        """
        SELECT user_id, device_id, display_name, last_seen, ip, user_agent, hidden
        FROM devices
        ORDER BY user_id, device_id
        """,
        SynapseDevice,
    ),
    SynapseEntity.ACCESS_TOKENS: _EntityQuery(
        """
        SELECT id, user_id, device_id, token, valid_until_ms, last_validated,
               refresh_token_id, puppets_user_id
        FROM access_tokens
        ORDER BY id
        """,
        SynapseAccessToken,
    ),
    SynapseEntity.REFRESH_TOKENS: _EntityQuery(
        """
        SELECT rt.id, rt.user_id, rt.device_id, rt.token, rt.next_token_id,
               rt.expiry_ts, rt.ultimate_session_expiry_ts,
               (SELECT MIN(at.id) FROM access_tokens AS at
                WHERE at.refresh_token_id = rt.id) AS access_token_id
        FROM refresh_tokens AS rt
        ORDER BY rt.id
        """,
        SynapseRefreshToken,
    ),
}


class SynapseReader:
    """
    Streams entity rows from the Synapse database.

    Attributes:
        _connection: Connection to the Synapse database.
        _transaction: The snapshot transaction held for the whole run.
        _consumed: Entity types already streamed.
    """

    LOCKED_TABLES: ClassVar[tuple[str, ...]] = tuple(entity.table for entity in SynapseEntity)

    def __init__(
        self,
        connection: AsyncConnection,
        *,
        dry_run: bool,
        batch_size: int = DEFAULT_BATCH_SIZE,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._connection = connection
        self._dry_run = dry_run
        self._batch_size = batch_size
        self._transaction: AsyncTransaction | None = None
        self._consumed: set[SynapseEntity] = set()

    @classmethod
    async def open(
        cls,
        connection: AsyncConnection,
        *,
        dry_run: bool,
        batch_size: int = DEFAULT_BATCH_SIZE,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> SynapseReader:
        """
        Open a reader and start its snapshot transaction.

        Args:
            connection: Connection to the Synapse database (no transaction open)
            dry_run: Whether to skip locking the Synapse tables
            batch_size: Rows fetched from the server-side cursor at a time

        Raises:
            SourceReadError: If the transaction cannot be started, or the
                tables cannot be locked because Synapse is still using them
        """
        reader = cls(
            connection,
            dry_run=dry_run,
            batch_size=batch_size,
            tracer=tracer,
            enable_tracing=enable_tracing,
        )
        await reader._begin()
        return reader

    @property
    def dry_run(self) -> bool:
        return self._dry_run

    async def _begin(self) -> None:
        with self._tracer.span(
            "syn2mas.reader.begin",
            {ATTR_DRY_RUN: self._dry_run, ATTR_DB_SYSTEM: "postgresql"},
        ):
            try:
                self._transaction = await self._connection.begin()
                if self._dry_run:
                    await self._connection.execute(
                        text("SET TRANSACTION ISOLATION LEVEL REPEATABLE READ, READ ONLY")
                    )
                else:
                    await self._connection.execute(
                        text("SET TRANSACTION ISOLATION LEVEL REPEATABLE READ")
                    )
                    # Blocks writers, not readers; fails at once if Synapse is active
                    await self._connection.execute(
                        text(
                            f"LOCK TABLE {', '.join(self.LOCKED_TABLES)} IN EXCLUSIVE MODE NOWAIT"
                        )
                    )
            except SQLAlchemyError as e:
                await self.close()
                raise SourceReadError(
                    f"Could not open snapshot transaction on the Synapse database: {e}"
                ) from e

        logger.info(
            "Opened Synapse snapshot transaction (dry_run=%s)",
            self._dry_run,
        )

    async def count_rows_approx(self, entity: SynapseEntity) -> int:
        """
        Estimate the number of rows of an entity type.

        Uses the planner statistics, which can be stale or missing. The
        result is only suitable as a progress denominator.
        """
        try:
            result = await self._connection.execute(
                text(
                    "SELECT reltuples::bigint FROM pg_class "
                    "WHERE oid = CAST(CAST(:table AS text) AS regclass)"
                ),
                {"table": entity.table},
            )
            estimate = result.scalar()
        except SQLAlchemyError as e:
            raise SourceReadError(
                f"Could not estimate row count: {e}", entity=entity.value
            ) from e
        # reltuples is -1 for tables that were never analyzed
        return max(int(estimate or 0), 0)

    async def stream(self, entity: SynapseEntity) -> AsyncIterator[SourceRow]:
        """
        Stream every row of an entity type, ordered by primary key.

        Args:
            entity: The entity type to stream

        Yields:
            Typed rows

        Raises:
            SourceReadError: If the entity was already streamed in this run,
                or rows cannot be fetched or decoded
        """
        if self._transaction is None:
            raise SourceReadError("Reader is not open", entity=entity.value)
        if entity in self._consumed:
            raise SourceReadError("Entity was already streamed in this run", entity=entity.value)
        self._consumed.add(entity)

        query = _QUERIES[entity]
        fetched = 0

        with self._tracer.span(
            "syn2mas.reader.stream",
            {
                ATTR_ENTITY: entity.value,
                ATTR_BATCH_SIZE: self._batch_size,
                ATTR_DB_OPERATION: "SELECT",
            },
        ):
            try:
                result = await self._connection.stream(text(query.sql))
                async for partition in result.partitions(self._batch_size):
                    for row in partition:
                        yield query.row_type.from_mapping(row._mapping)
                    fetched += len(partition)
                    logger.debug("Fetched %d %s rows so far", fetched, entity.value)
            except SQLAlchemyError as e:
                raise SourceReadError(f"Failed to read rows: {e}", entity=entity.value) from e
            except (KeyError, TypeError, ValueError) as e:
                raise SourceReadError(f"Failed to decode row: {e}", entity=entity.value) from e

    async def close(self) -> None:
        """End the snapshot transaction. Nothing is ever committed."""
        if self._transaction is not None and self._transaction.is_active:
            await self._transaction.rollback()
        self._transaction = None


__all__ = [
    "SourceRow",
    "SynapseAccessToken",
    "SynapseDevice",
    "SynapseEntity",
    "SynapseExternalId",
    "SynapseReader",
    "SynapseRefreshToken",
    "SynapseThreepid",
    "SynapseUser",
]
