"""
Entry points for the ``check`` and ``migrate`` commands.

Argument parsing, configuration loading and connecting to the databases
belong to the calling command layer. These functions take resolved
configuration and open connections, print what an operator needs to see,
and return the process exit code.

Exit Codes:
    EXIT_OK (0): Success
    EXIT_FAILURE (1): Another migration holds the lock, or a fatal error
    EXIT_CHECK_ERRORS (10): The checks found errors
    EXIT_CHECK_WARNINGS (11): The checks found only warnings (``check`` only)
"""

from __future__ import annotations

import logging
import random
import sys
from collections.abc import Sequence

from sqlalchemy.ext.asyncio import AsyncConnection

from syn2mas.checks import CheckReport, ConsistencyChecker
from syn2mas.config import MasConfig, MigrationOptions, SynapseConfig
from syn2mas.exceptions import Syn2MasError
from syn2mas.ids import Clock
from syn2mas.locks import AlreadyHeld, try_lock_mas_database
from syn2mas.migration import MigrationOrchestrator, MigrationOutcome, render_summary
from syn2mas.observability import Tracer

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CHECK_ERRORS = 10
EXIT_CHECK_WARNINGS = 11


def print_report(report: CheckReport) -> None:
    """Print check findings to stderr, grouped by severity."""
    rendered = report.render()
    if rendered:
        print(f"\n\n{rendered}", file=sys.stderr)


async def run_check(
    synapse_config: SynapseConfig,
    mas_config: MasConfig,
    synapse_connection: AsyncConnection,
    mas_connection: AsyncConnection,
    *,
    tracer: Tracer | None = None,
) -> int:
    """
    Run the consistency checks without migrating anything.

    The migration lock is taken so a check never races a running migration;
    it is released when the caller closes ``mas_connection``.

    Returns:
        Process exit code
    """
    try:
        lock = await try_lock_mas_database(mas_connection, tracer=tracer)
        if isinstance(lock, AlreadyHeld):
            logger.error("Failed to acquire syn2mas lock on the database.")
            logger.error("This likely means that another syn2mas instance is already running!")
            return EXIT_FAILURE

        checker = ConsistencyChecker(synapse_config, mas_config, tracer=tracer)
        report = await checker.run_all(synapse_connection, lock.connection)
    except Syn2MasError as e:
        logger.log(e.severity.log_level, "Check failed: %s", e)
        return EXIT_FAILURE

    print_report(report)
    if report.has_errors:
        return EXIT_CHECK_ERRORS
    if report.has_warnings:
        return EXIT_CHECK_WARNINGS

    print("Check completed successfully with no errors or warnings.")
    return EXIT_OK


async def run_migrate(
    synapse_config: SynapseConfig,
    mas_config: MasConfig,
    synapse_connection: AsyncConnection,
    mas_connection: AsyncConnection,
    worker_connections: Sequence[AsyncConnection],
    options: MigrationOptions | None = None,
    *,
    clock: Clock | None = None,
    rng: random.Random | None = None,
    tracer: Tracer | None = None,
) -> int:
    """
    Check, then migrate.

    Warnings never stop a migration; errors stop it before anything is
    written.

    Returns:
        Process exit code
    """
    orchestrator = MigrationOrchestrator(
        synapse_config,
        mas_config,
        options,
        clock=clock,
        rng=rng,
        tracer=tracer,
    )
    result = await orchestrator.run(synapse_connection, mas_connection, worker_connections)

    if result.report is not None:
        print_report(result.report)
    if result.summaries:
        print(f"\n{render_summary(result.summaries)}", file=sys.stderr)

    match result.outcome:
        case MigrationOutcome.SUCCEEDED:
            return EXIT_OK
        case MigrationOutcome.CHECKS_FAILED:
            return EXIT_CHECK_ERRORS
        case _:
            return EXIT_FAILURE


__all__ = [
    "EXIT_CHECK_ERRORS",
    "EXIT_CHECK_WARNINGS",
    "EXIT_FAILURE",
    "EXIT_OK",
    "print_report",
    "run_check",
    "run_migrate",
]
