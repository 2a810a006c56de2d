"""
syn2mas - Offline migration of a Synapse homeserver database into MAS.

This library provides:
- A non-blocking advisory lock so only one migration targets a MAS database
- Consistency checks of both configurations and both databases
- A snapshot reader for the Synapse database
- A parallel bulk writer for the MAS database
- Progress tracking and an orchestrator tying it all together
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("syn2mas")
except PackageNotFoundError:
    # Package not installed (running from source without install)
    __version__ = "0.0.0.dev0"

from syn2mas.checks import CheckFinding, CheckReport, ConsistencyChecker, FindingSeverity
from syn2mas.commands import (
    EXIT_CHECK_ERRORS,
    EXIT_CHECK_WARNINGS,
    EXIT_FAILURE,
    EXIT_OK,
    run_check,
    run_migrate,
)
from syn2mas.config import (
    MasConfig,
    MigrationOptions,
    PasswordConfig,
    SynapseConfig,
    SynapseDatabaseConfig,
    UpstreamProviderConfig,
)
from syn2mas.exceptions import (
    CheckQueryError,
    ChecksFailedError,
    IdTranslationError,
    LockError,
    MigrationAbortedError,
    SourceReadError,
    Syn2MasError,
    TargetWriteError,
)
from syn2mas.ids import InvalidTimestampError, MockClock, SystemClock, generate_ulid
from syn2mas.locks import AlreadyHeld, Locked, try_lock_mas_database
from syn2mas.migration import (
    MIGRATION_ORDER,
    MigrationOrchestrator,
    MigrationOutcome,
    MigrationResult,
    migrate,
)
from syn2mas.progress import (
    MigratingData,
    Progress,
    ProgressStage,
    RebuildConstraint,
    RebuildIndex,
    SettingUp,
)
from syn2mas.reader import SynapseEntity, SynapseReader
from syn2mas.run import EntitySummary, IdTranslationTable, MigrationRun
from syn2mas.transform import SkipReason
from syn2mas.writer import MasTable, MasWriter

__all__ = [
    "__version__",
    # Checks
    "CheckFinding",
    "CheckReport",
    "ConsistencyChecker",
    "FindingSeverity",
    # Commands
    "EXIT_CHECK_ERRORS",
    "EXIT_CHECK_WARNINGS",
    "EXIT_FAILURE",
    "EXIT_OK",
    "run_check",
    "run_migrate",
    # Configuration
    "MasConfig",
    "MigrationOptions",
    "PasswordConfig",
    "SynapseConfig",
    "SynapseDatabaseConfig",
    "UpstreamProviderConfig",
    # Exceptions
    "CheckQueryError",
    "ChecksFailedError",
    "IdTranslationError",
    "LockError",
    "MigrationAbortedError",
    "SourceReadError",
    "Syn2MasError",
    "TargetWriteError",
    # Ids
    "InvalidTimestampError",
    "MockClock",
    "SystemClock",
    "generate_ulid",
    # Lock
    "AlreadyHeld",
    "Locked",
    "try_lock_mas_database",
    # Migration
    "MIGRATION_ORDER",
    "EntitySummary",
    "IdTranslationTable",
    "MigrationOrchestrator",
    "MigrationOutcome",
    "MigrationResult",
    "MigrationRun",
    "SkipReason",
    "migrate",
    # Progress
    "MigratingData",
    "Progress",
    "ProgressStage",
    "RebuildConstraint",
    "RebuildIndex",
    "SettingUp",
    # Reader / writer
    "MasTable",
    "MasWriter",
    "SynapseEntity",
    "SynapseReader",
]
