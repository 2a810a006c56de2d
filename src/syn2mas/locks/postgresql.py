"""
PostgreSQL advisory lock guarding the MAS database during a migration.

Advisory locks are application-level locks that:
- Are independent of table/row locks
- Persist for session duration
- Support non-blocking acquisition attempts
- Are automatically released on connection close

The migration lock is session-scoped on purpose: there is no release call.
It is held for as long as the connection that took it stays open, so a
crashed process can never leave a stale lock behind.

Usage:
    >>> result = await try_lock_mas_database(mas_connection)
    >>> match result:
    ...     case Locked(connection=conn):
    ...         await run_migration(conn)
    ...     case AlreadyHeld():
    ...         print("another syn2mas instance is already running")
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from datetime import UTC, datetime

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection

from syn2mas.exceptions import LockError
from syn2mas.observability import ATTR_LOCK_ACQUIRED, ATTR_LOCK_ID, Tracer, create_tracer

logger = logging.getLogger(__name__)

MIGRATION_LOCK_KEY = "syn2mas"


def key_to_lock_id(key: str) -> int:
    """
    Convert a string key to a 64-bit lock ID.

    Uses SHA-256 hash truncated to 63 bits (PostgreSQL bigint is signed).

    Args:
        key: String key to hash

    Returns:
        63-bit positive integer lock ID
    """
    hash_bytes = hashlib.sha256(key.encode()).digest()
    # Use first 8 bytes, mask to 63 bits for signed bigint
    return int.from_bytes(hash_bytes[:8], byteorder="big") & 0x7FFFFFFFFFFFFFFF


MIGRATION_LOCK_ID = key_to_lock_id(MIGRATION_LOCK_KEY)


@dataclass(frozen=True)
class LockInfo:
    """
    Information about an acquired lock.

    Attributes:
        lock_id: The numeric PostgreSQL lock ID
        acquired_at: When the lock was acquired
    """

    lock_id: int
    acquired_at: datetime


@dataclass(frozen=True)
class Locked:
    """
    The MAS database is locked for this run.

    The lock lives exactly as long as ``connection`` stays open.

    Attributes:
        connection: The connection holding the lock
        lock_info: Details about the acquired lock
    """

    connection: AsyncConnection
    lock_info: LockInfo


@dataclass(frozen=True)
class AlreadyHeld:
    """
    Another session holds the migration lock.

    The connection is handed back untouched so the caller can close it.

    Attributes:
        connection: The connection that attempted the lock
    """

    connection: AsyncConnection


LockResult = Locked | AlreadyHeld


async def try_lock_mas_database(
    connection: AsyncConnection,
    *,
    lock_id: int = MIGRATION_LOCK_ID,
    tracer: Tracer | None = None,
) -> LockResult:
    """
    Try to take the migration lock without blocking.

    Args:
        connection: Open connection to the MAS database
        lock_id: Advisory lock id (defaults to the syn2mas lock)
        tracer: Optional tracer

    Returns:
        Locked if this session now holds the lock, AlreadyHeld otherwise

    Raises:
        LockError: If the lock query itself fails
    """
    tracer = tracer or create_tracer(__name__)

    with tracer.span("syn2mas.lock.try_acquire", {ATTR_LOCK_ID: lock_id}) as span:
        try:
            result = await connection.execute(
                text("SELECT pg_try_advisory_lock(:lock_id)"),
                {"lock_id": lock_id},
            )
            acquired = bool(result.scalar())
            # Session-level advisory locks survive the end of the transaction
            await connection.commit()
        except SQLAlchemyError as e:
            raise LockError(f"Failed to issue query to lock database: {e}") from e

        if span is not None:
            span.set_attribute(ATTR_LOCK_ACQUIRED, acquired)

    if not acquired:
        logger.debug("Advisory lock %d is held by another session", lock_id)
        return AlreadyHeld(connection=connection)

    logger.debug("Acquired advisory lock: lock_id=%d", lock_id)
    return Locked(
        connection=connection,
        lock_info=LockInfo(lock_id=lock_id, acquired_at=datetime.now(UTC)),
    )
