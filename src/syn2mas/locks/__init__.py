"""
Migration lock for the MAS database.

Provides a non-blocking, session-scoped PostgreSQL advisory lock that keeps
two syn2mas runs from writing into the same MAS database.

Example:
    >>> from syn2mas.locks import AlreadyHeld, Locked, try_lock_mas_database
    >>>
    >>> result = await try_lock_mas_database(mas_connection)
    >>> if isinstance(result, AlreadyHeld):
    ...     print("another syn2mas instance is already running")
"""

from syn2mas.locks.postgresql import (
    MIGRATION_LOCK_ID,
    MIGRATION_LOCK_KEY,
    AlreadyHeld,
    LockInfo,
    Locked,
    LockResult,
    key_to_lock_id,
    try_lock_mas_database,
)

__all__ = [
    "MIGRATION_LOCK_ID",
    "MIGRATION_LOCK_KEY",
    "AlreadyHeld",
    "LockInfo",
    "LockResult",
    "Locked",
    "key_to_lock_id",
    "try_lock_mas_database",
]
