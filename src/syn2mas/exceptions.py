"""
Exceptions for the syn2mas migration engine.

Every failure that aborts a run is raised as a subclass of Syn2MasError.
Two outcomes are deliberately NOT exceptions:

- Lock contention is a return value (see syn2mas.locks.AlreadyHeld).
- Check findings and per-row skips are data (see syn2mas.checks and
  syn2mas.run.EntitySummary).

Exception Hierarchy:
    Syn2MasError (base)
    +-- LockError
    +-- SourceReadError
    +-- TargetWriteError
    +-- IdTranslationError
    +-- ChecksFailedError
    +-- CheckQueryError
    +-- MigrationAbortedError

Each exception carries an ErrorClassification describing its severity,
whether it can be recovered from, and what the operator should do.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from syn2mas.checks import CheckReport

logger = logging.getLogger(__name__)


class ErrorSeverity(Enum):
    """
    Severity level of migration errors.

    Attributes:
        CRITICAL: The target database may be half-written and must be restored.
        ERROR: The run could not proceed; nothing destructive happened yet.
    """

    CRITICAL = "critical"
    ERROR = "error"

    @property
    def log_level(self) -> int:
        """Get the corresponding Python logging level."""
        return logging.CRITICAL if self is ErrorSeverity.CRITICAL else logging.ERROR


class ErrorRecoverability(Enum):
    """
    Recoverability classification for migration errors.

    There is no automatic retry: a failed migration is always rerun from a
    clean target database.

    Attributes:
        RECOVERABLE: Fix the reported problem and run again.
        FATAL: Restore the target database from backup before running again.
    """

    RECOVERABLE = "recoverable"
    FATAL = "fatal"

    @property
    def requires_restore(self) -> bool:
        """Check if the target database must be restored before a rerun."""
        return self == ErrorRecoverability.FATAL


@dataclass(frozen=True)
class ErrorClassification:
    """
    Rich metadata for error classification.

    Attributes:
        severity: The severity level of the error.
        recoverability: How the error can be recovered from.
        error_code: Unique error code for programmatic handling.
        category: Error category for grouping related errors.
        suggested_action: Human-readable guidance for operators.
    """

    severity: ErrorSeverity
    recoverability: ErrorRecoverability
    error_code: str
    category: str
    suggested_action: str

    def to_dict(self) -> dict[str, Any]:
        """Convert classification to dictionary for serialization."""
        return {
            "severity": self.severity.value,
            "recoverability": self.recoverability.value,
            "error_code": self.error_code,
            "category": self.category,
            "suggested_action": self.suggested_action,
        }


class Syn2MasError(Exception):
    """
    Base exception for all syn2mas errors.

    Attributes:
        message: Human-readable error description.
        entity: The legacy entity type being processed, if applicable.
    """

    _default_classification: ErrorClassification = ErrorClassification(
        severity=ErrorSeverity.CRITICAL,
        recoverability=ErrorRecoverability.FATAL,
        error_code="SYN2MAS_ERROR",
        category="general",
        suggested_action="Restore the MAS database from backup and rerun the migration",
    )

    def __init__(self, message: str, *, entity: str | None = None) -> None:
        self.message = message
        self.entity = entity
        super().__init__(message)

    def __str__(self) -> str:
        if self.entity:
            return f"{self.message} entity={self.entity}"
        return self.message

    @property
    def classification(self) -> ErrorClassification:
        """Get the error classification for this exception."""
        return self._default_classification

    @property
    def severity(self) -> ErrorSeverity:
        return self.classification.severity

    @property
    def error_code(self) -> str:
        return self.classification.error_code

    @property
    def suggested_action(self) -> str:
        return self.classification.suggested_action

    def to_dict(self) -> dict[str, Any]:
        """Convert the exception to a dictionary for serialization."""
        return {
            "message": self.message,
            "entity": self.entity,
            "error_code": self.error_code,
            "classification": self.classification.to_dict(),
        }


class LockError(Syn2MasError):
    """
    Raised when the advisory lock query itself could not be issued.

    This is never raised because another process holds the lock; that case
    is reported through the AlreadyHeld result.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="LOCK_QUERY_FAILED",
        category="connectivity",
        suggested_action="Check connectivity to the MAS database",
    )


class SourceReadError(Syn2MasError):
    """Raised when rows cannot be read from the Synapse database."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.CRITICAL,
        recoverability=ErrorRecoverability.FATAL,
        error_code="SOURCE_READ_FAILED",
        category="source",
        suggested_action=(
            "Check connectivity to the Synapse database, restore the MAS database "
            "from backup and rerun the migration"
        ),
    )


class TargetWriteError(Syn2MasError):
    """
    Raised when a writer transaction fails.

    The failing transaction is rolled back; batches committed by other
    workers stay in place, so the target must be restored before a rerun.

    Attributes:
        table: Target table the failing batch was destined for.
        batch_size: Number of rows in the failing batch.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.CRITICAL,
        recoverability=ErrorRecoverability.FATAL,
        error_code="TARGET_WRITE_FAILED",
        category="target",
        suggested_action="Restore the MAS database from backup and rerun the migration",
    )

    def __init__(
        self,
        message: str,
        *,
        table: str | None = None,
        batch_size: int | None = None,
    ) -> None:
        self.table = table
        self.batch_size = batch_size
        super().__init__(message)

    def __str__(self) -> str:
        parts = [self.message]
        if self.table:
            parts.append(f"table={self.table}")
        if self.batch_size is not None:
            parts.append(f"batch_size={self.batch_size}")
        return " ".join(parts)


class IdTranslationError(Syn2MasError):
    """
    Raised when the id translation table is used out of order.

    Either an id was recorded for an entity type whose barrier has already
    passed, or the same legacy id was recorded twice.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.CRITICAL,
        recoverability=ErrorRecoverability.FATAL,
        error_code="ID_TRANSLATION_VIOLATION",
        category="state",
        suggested_action="Restore the MAS database from backup and report this as a bug",
    )


class ChecksFailedError(Syn2MasError):
    """
    Raised by the orchestrator when consistency checks report errors.

    Nothing has been written to the target database at this point.

    Attributes:
        report: The full set of findings.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="CHECKS_FAILED",
        category="checks",
        suggested_action="Resolve the reported errors and run the migration again",
    )

    def __init__(self, report: CheckReport) -> None:
        self.report = report
        super().__init__(f"Consistency checks found {len(report.errors)} error(s)")


class CheckQueryError(Syn2MasError):
    """
    Raised when a consistency check query cannot be run.

    Failing to run a check is not the same as a check failing: the checks
    never got an answer, so the run stops before anything is written.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="CHECK_QUERY_FAILED",
        category="checks",
        suggested_action="Check connectivity to both databases and that their schemas are intact",
    )


class MigrationAbortedError(Syn2MasError):
    """Raised when a run aborts on an error not covered by a narrower class."""


__all__ = [
    "CheckQueryError",
    "ChecksFailedError",
    "ErrorClassification",
    "ErrorRecoverability",
    "ErrorSeverity",
    "IdTranslationError",
    "LockError",
    "MigrationAbortedError",
    "SourceReadError",
    "Syn2MasError",
    "TargetWriteError",
]
