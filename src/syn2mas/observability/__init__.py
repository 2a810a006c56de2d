"""
Observability utilities for syn2mas.

Provides the composition-based tracer used by every component and the
standard span attribute names.

Example:
    >>> from syn2mas.observability import create_tracer, ATTR_ENTITY
    >>>
    >>> tracer = create_tracer(__name__, enable_tracing=True)
    >>> with tracer.span("syn2mas.migrate.entity", {ATTR_ENTITY: "users"}):
    ...     pass
"""

from syn2mas.observability.attributes import (
    ATTR_BATCH_SIZE,
    ATTR_CHECK_ERRORS,
    ATTR_CHECK_PASS,
    ATTR_CHECK_WARNINGS,
    ATTR_CONSTRAINT_NAME,
    ATTR_DB_OPERATION,
    ATTR_DB_SYSTEM,
    ATTR_DRY_RUN,
    ATTR_ENTITY,
    ATTR_INDEX_NAME,
    ATTR_LOCK_ACQUIRED,
    ATTR_LOCK_ID,
    ATTR_ROWS_MIGRATED,
    ATTR_ROWS_SKIPPED,
    ATTR_TABLE,
    ATTR_WORKER_COUNT,
)
from syn2mas.observability.tracer import (
    MockTracer,
    NullTracer,
    OpenTelemetryTracer,
    SpanAttributes,
    Tracer,
    create_tracer,
)

__all__ = [
    # Tracer
    "MockTracer",
    "NullTracer",
    "OpenTelemetryTracer",
    "SpanAttributes",
    "Tracer",
    "create_tracer",
    # Attributes
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
