"""
Standard span attributes for syn2mas.

Attribute names used across components so spans from the reader, the
writer and the orchestrator can be correlated. Database attributes follow
the OpenTelemetry semantic conventions.
"""

# =============================================================================
# Migration Attributes
# =============================================================================

ATTR_ENTITY = "syn2mas.entity"
"""Legacy entity type being processed (e.g., 'users', 'devices')."""

ATTR_TABLE = "syn2mas.table"
"""Target table a batch is written to."""

ATTR_BATCH_SIZE = "syn2mas.batch.size"
"""Number of rows in a batch (integer)."""

ATTR_ROWS_MIGRATED = "syn2mas.rows.migrated"
"""Rows written for an entity type (integer)."""

ATTR_ROWS_SKIPPED = "syn2mas.rows.skipped"
"""Rows skipped for an entity type (integer)."""

ATTR_DRY_RUN = "syn2mas.dry_run"
"""Whether the legacy reader runs in dry-run mode (boolean)."""

ATTR_WORKER_COUNT = "syn2mas.writer.workers"
"""Number of parallel writer connections (integer)."""

ATTR_CHECK_PASS = "syn2mas.check.pass"
"""Name of the consistency check pass."""

ATTR_CHECK_ERRORS = "syn2mas.check.errors"
"""Number of error findings (integer)."""

ATTR_CHECK_WARNINGS = "syn2mas.check.warnings"
"""Number of warning findings (integer)."""

# =============================================================================
# Lock Attributes
# =============================================================================

ATTR_LOCK_ID = "syn2mas.lock.id"
"""Numeric advisory lock id (integer)."""

ATTR_LOCK_ACQUIRED = "syn2mas.lock.acquired"
"""Whether the lock was acquired (boolean)."""

# =============================================================================
# Finalization Attributes
# =============================================================================

ATTR_INDEX_NAME = "syn2mas.index.name"
"""Name of an index being rebuilt."""

ATTR_CONSTRAINT_NAME = "syn2mas.constraint.name"
"""Name of a constraint being rebuilt."""

# =============================================================================
# Database Attributes (OpenTelemetry Semantic Conventions)
# =============================================================================

ATTR_DB_SYSTEM = "db.system"
"""Database system identifier (always 'postgresql' here)."""

ATTR_DB_OPERATION = "db.operation"
"""Database operation type (e.g., 'INSERT', 'SELECT')."""

__all__ = [
    "ATTR_BATCH_SIZE",
    "ATTR_CHECK_ERRORS",
    "ATTR_CHECK_PASS",
    "ATTR_CHECK_WARNINGS",
    "ATTR_CONSTRAINT_NAME",
    "ATTR_DB_OPERATION",
    "ATTR_DB_SYSTEM",
    "ATTR_DRY_RUN",
    "ATTR_ENTITY",
    "ATTR_INDEX_NAME",
    "ATTR_LOCK_ACQUIRED",
    "ATTR_LOCK_ID",
    "ATTR_ROWS_MIGRATED",
    "ATTR_ROWS_SKIPPED",
    "ATTR_TABLE",
    "ATTR_WORKER_COUNT",
]
