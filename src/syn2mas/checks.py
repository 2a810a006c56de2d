"""
Consistency checks run before a migration.

The checker validates both configurations and both databases and reports
what it finds as data. It never raises for a finding and never writes to
either database.

Check Passes:
    1. Synapse configuration alone
    2. Synapse configuration against MAS configuration
    3. MAS database (schema present, at the expected version, and empty)
    4. Synapse database (anomalies that will cause rows to be skipped)

Severity:
    - ERROR findings block a migration
    - WARNING findings never block; a standalone check reports them with a
      distinct exit status

The database passes are split into a query step that gathers a snapshot of
facts and a pure step that turns those facts into findings, so the same
state always yields the same findings in the same order.

Usage:
    >>> checker = ConsistencyChecker(synapse_config, mas_config)
    >>> report = await checker.run_all(synapse_conn, mas_conn)
    >>> if report.has_errors:
    ...     print(report.render())
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from uuid import UUID

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection

from syn2mas.config import DEFAULT_BCRYPT_ROUNDS, POSTGRES_BACKEND, MasConfig, SynapseConfig
from syn2mas.exceptions import CheckQueryError
from syn2mas.observability import (
    ATTR_CHECK_ERRORS,
    ATTR_CHECK_PASS,
    ATTR_CHECK_WARNINGS,
    ATTR_DB_SYSTEM,
    Tracer,
    create_tracer,
)
from syn2mas.writer import RESTORE_CONSTRAINTS_TABLE, RESTORE_INDICES_TABLE, MasTable

logger = logging.getLogger(__name__)

MAS_MIGRATIONS_TABLE = "_sqlx_migrations"
MAS_PROVIDERS_TABLE = "upstream_oauth_providers"

REQUIRED_MAS_TABLES: tuple[str, ...] = (
    *(table.value for table in MasTable),
    MAS_PROVIDERS_TABLE,
)


class FindingSeverity(Enum):
    """Severity of a check finding."""

    WARNING = "warning"
    ERROR = "error"


@dataclass(frozen=True)
class CheckFinding:
    """A human-readable finding tagged with its severity."""

    severity: FindingSeverity
    message: str

    @classmethod
    def warning(cls, message: str) -> CheckFinding:
        return cls(FindingSeverity.WARNING, message)

    @classmethod
    def error(cls, message: str) -> CheckFinding:
        return cls(FindingSeverity.ERROR, message)


@dataclass
class CheckReport:
    """
    Findings collected across check passes, in the order they were found.

    Attributes:
        findings: Every finding, warnings and errors interleaved
    """

    findings: list[CheckFinding] = field(default_factory=list)

    @property
    def errors(self) -> list[str]:
        return [f.message for f in self.findings if f.severity is FindingSeverity.ERROR]

    @property
    def warnings(self) -> list[str]:
        return [f.message for f in self.findings if f.severity is FindingSeverity.WARNING]

    @property
    def has_errors(self) -> bool:
        return any(f.severity is FindingSeverity.ERROR for f in self.findings)

    @property
    def has_warnings(self) -> bool:
        return any(f.severity is FindingSeverity.WARNING for f in self.findings)

    def extend(self, other: CheckReport | list[CheckFinding]) -> None:
        """Append the findings of another pass."""
        findings = other.findings if isinstance(other, CheckReport) else other
        self.findings.extend(findings)

    def render(self) -> str:
        """
        Render the findings grouped by severity, errors first.

        Returns:
            The text to show an operator; empty if there are no findings
        """
        blocks: list[str] = []
        if self.errors:
            blocks.append("===== Errors =====")
            blocks.append("These issues prevent migrating from Synapse to MAS right now:\n")
            blocks.extend(f"• {message}\n" for message in self.errors)
        if self.warnings:
            if blocks:
                blocks.append("")
            blocks.append("===== Warnings =====")
            blocks.append(
                "These potential issues should be considered before migrating "
                "from Synapse to MAS right now:\n"
            )
            blocks.extend(f"• {message}\n" for message in self.warnings)
        return "\n".join(blocks)


@dataclass(frozen=True)
class MasDatabaseState:
    """
    Facts about the MAS database gathered by the target pre-check.

    Attributes:
        tables: Tables present in the current schema
        applied_migrations: Rows in the schema migrations table
        failed_migrations: Schema migrations recorded as unsuccessful
        non_empty_tables: Migrated-into tables that already contain rows
        provider_ids: Upstream providers present in the database
    """

    tables: frozenset[str]
    applied_migrations: int = 0
    failed_migrations: int = 0
    non_empty_tables: tuple[str, ...] = ()
    provider_ids: frozenset[UUID] = frozenset()


@dataclass(frozen=True)
class SynapseDatabaseStats:
    """Row counts gathered by the Synapse database check."""

    guest_users: int = 0
    appservice_users: int = 0
    non_email_threepids: int = 0
    orphaned_threepids: int = 0
    orphaned_external_ids: int = 0
    orphaned_devices: int = 0
    orphaned_access_tokens: int = 0
    puppet_access_tokens: int = 0
    external_ids_by_provider: dict[str, int] = field(default_factory=dict)


_LIST_TABLES = """
SELECT table_name::text AS table_name
FROM information_schema.tables
WHERE table_schema = current_schema()
"""

_MIGRATION_STATUS = f"""
SELECT COUNT(*) AS applied,
       COUNT(*) FILTER (WHERE NOT success) AS failed
FROM {MAS_MIGRATIONS_TABLE}
"""

_LIST_PROVIDERS = f"SELECT upstream_oauth_provider_id FROM {MAS_PROVIDERS_TABLE}"

_SYNAPSE_STATS = """
SELECT
    (SELECT COUNT(*) FROM users WHERE is_guest <> 0) AS guest_users,
    (SELECT COUNT(*) FROM users WHERE appservice_id IS NOT NULL) AS appservice_users,
    (SELECT COUNT(*) FROM user_threepids WHERE medium <> 'email') AS non_email_threepids,
    (SELECT COUNT(*) FROM user_threepids AS t
     WHERE NOT EXISTS (SELECT 1 FROM users AS u WHERE u.name = t.user_id))
        AS orphaned_threepids,
    (SELECT COUNT(*) FROM user_external_ids AS e
     WHERE NOT EXISTS (SELECT 1 FROM users AS u WHERE u.name = e.user_id))
        AS orphaned_external_ids,
    (SELECT COUNT(*) FROM devices AS d
     WHERE NOT EXISTS (SELECT 1 FROM users AS u WHERE u.name = d.user_id))
        AS orphaned_devices,
    (SELECT COUNT(*) FROM access_tokens AS a
     WHERE NOT EXISTS (SELECT 1 FROM users AS u WHERE u.name = a.user_id))
        AS orphaned_access_tokens,
    (SELECT COUNT(*) FROM access_tokens WHERE puppets_user_id IS NOT NULL)
        AS puppet_access_tokens
"""

_EXTERNAL_IDS_BY_PROVIDER = """
SELECT auth_provider, COUNT(*) AS link_count
FROM user_external_ids
GROUP BY auth_provider
ORDER BY auth_provider
"""


def check_synapse_config(synapse: SynapseConfig) -> list[CheckFinding]:
    """Pass 1: settings of Synapse that MAS cannot take over."""
    findings: list[CheckFinding] = []

    if not synapse.database.is_postgres:
        findings.append(
            CheckFinding.error(
                f"unsupported database backend: Synapse uses {synapse.database.name!r}, "
                f"but only PostgreSQL ({POSTGRES_BACKEND}) databases can be migrated. "
                "Port the Synapse database to PostgreSQL first."
            )
        )
    if synapse.cas_enabled:
        findings.append(
            CheckFinding.error("CAS login is enabled in Synapse; MAS has no migration path for it.")
        )
    if synapse.saml2_enabled:
        findings.append(
            CheckFinding.error(
                "SAML2 login is enabled in Synapse; MAS has no migration path for it."
            )
        )
    if synapse.jwt_enabled:
        findings.append(
            CheckFinding.error("JWT login is enabled in Synapse; MAS has no migration path for it.")
        )
    for module in sorted(synapse.password_providers):
        findings.append(
            CheckFinding.error(
                f"Synapse uses the password provider {module!r}; "
                "password providers cannot be migrated to MAS."
            )
        )

    if synapse.enable_registration:
        findings.append(
            CheckFinding.warning(
                "Synapse has open registration enabled. After migration, registration "
                "is handled by MAS and must be configured there."
            )
        )
    if synapse.enable_registration_captcha:
        findings.append(
            CheckFinding.warning(
                "Synapse has registration CAPTCHA enabled. Configure CAPTCHA in MAS instead."
            )
        )
    if synapse.enable_3pid_changes:
        findings.append(
            CheckFinding.warning(
                "Synapse allows users to change their third-party ids. "
                "Email changes are handled by MAS after migration."
            )
        )
    if synapse.user_consent_enabled:
        findings.append(
            CheckFinding.warning(
                "Synapse has user consent enabled. MAS does not migrate consent state."
            )
        )
    if synapse.bcrypt_rounds != DEFAULT_BCRYPT_ROUNDS:
        findings.append(
            CheckFinding.warning(
                f"Synapse uses bcrypt_rounds={synapse.bcrypt_rounds} instead of the default "
                f"{DEFAULT_BCRYPT_ROUNDS}. Make sure the MAS password scheme accepts these hashes."
            )
        )
    return findings


def check_synapse_against_mas_config(
    synapse: SynapseConfig,
    mas: MasConfig,
) -> list[CheckFinding]:
    """Pass 2: whether the MAS configuration can take over from Synapse."""
    findings: list[CheckFinding] = []
    mapping = mas.provider_id_mapping()

    for idp_id in sorted(set(synapse.oidc_providers)):
        if idp_id not in mapping:
            findings.append(
                CheckFinding.error(
                    f"Synapse OIDC provider {idp_id!r} has no MAS upstream provider with "
                    f"synapse_idp_id {idp_id!r}. Users linked to it could not log in."
                )
            )

    passwords = synapse.password_config
    if passwords.enabled and passwords.localdb_enabled:
        if passwords.pepper and not mas.password_pepper_configured:
            findings.append(
                CheckFinding.error(
                    "Synapse uses a password pepper, but MAS is not configured with it. "
                    "Migrated passwords could not be verified."
                )
            )
        if not mas.passwords_enabled:
            findings.append(
                CheckFinding.warning(
                    "Synapse has password login enabled, but MAS does not. "
                    "Users will no longer be able to log in with their password."
                )
            )

    if mas.homeserver != synapse.server_name:
        findings.append(
            CheckFinding.error(
                f"MAS is configured for homeserver {mas.homeserver!r}, "
                f"but Synapse's server_name is {synapse.server_name!r}."
            )
        )
    return findings


def mas_database_findings(state: MasDatabaseState, mas: MasConfig) -> list[CheckFinding]:
    """Pass 3: turn the MAS database facts into findings."""
    findings: list[CheckFinding] = []

    missing = [name for name in REQUIRED_MAS_TABLES if name not in state.tables]
    if missing:
        findings.append(
            CheckFinding.error(
                f"The MAS database is missing tables ({', '.join(missing)}). "
                "Run the MAS database migrations first."
            )
        )

    if MAS_MIGRATIONS_TABLE not in state.tables:
        findings.append(
            CheckFinding.error(
                "The MAS database has no schema migrations table. "
                "Run the MAS database migrations first."
            )
        )
    elif state.applied_migrations == 0:
        findings.append(CheckFinding.error("No MAS schema migrations have been applied."))
    elif state.failed_migrations:
        findings.append(
            CheckFinding.error(
                f"{state.failed_migrations} MAS schema migration(s) did not complete "
                "successfully. Fix the MAS database schema first."
            )
        )

    for table in state.non_empty_tables:
        findings.append(
            CheckFinding.error(
                f"The MAS table {table} already contains rows. "
                "Migrate into a freshly created MAS database."
            )
        )

    leftovers = [
        name for name in (RESTORE_CONSTRAINTS_TABLE, RESTORE_INDICES_TABLE) if name in state.tables
    ]
    if leftovers:
        findings.append(
            CheckFinding.error(
                f"The MAS database contains leftovers of an interrupted migration "
                f"({', '.join(leftovers)}). Restore the MAS database from backup."
            )
        )

    if MAS_PROVIDERS_TABLE in state.tables:
        for synapse_idp_id, provider_id in sorted(mas.provider_id_mapping().items()):
            if provider_id not in state.provider_ids:
                findings.append(
                    CheckFinding.error(
                        f"The MAS upstream provider {provider_id} (for Synapse provider "
                        f"{synapse_idp_id!r}) is not in the MAS database. "
                        "Sync the MAS configuration first."
                    )
                )
    return findings


def synapse_database_findings(
    stats: SynapseDatabaseStats,
    provider_mapping: dict[str, UUID],
) -> list[CheckFinding]:
    """Pass 4: turn Synapse row counts into findings. Every finding is a warning."""
    findings: list[CheckFinding] = []

    def warn(count: int, message: str) -> None:
        if count > 0:
            findings.append(CheckFinding.warning(f"{count} {message}"))

    warn(stats.guest_users, "guest user(s) exist in Synapse and will not be migrated.")
    warn(
        stats.appservice_users,
        "application service user(s) exist in Synapse and will not be migrated.",
    )
    warn(
        stats.non_email_threepids,
        "third-party id(s) are not email addresses and will not be migrated.",
    )
    for provider, count in sorted(stats.external_ids_by_provider.items()):
        if provider not in provider_mapping:
            warn(
                count,
                f"upstream link(s) belong to Synapse provider {provider!r}, "
                "which has no MAS mapping; they will not be migrated.",
            )
    warn(stats.orphaned_threepids, "third-party id(s) belong to users that do not exist.")
    warn(stats.orphaned_external_ids, "upstream link(s) belong to users that do not exist.")
    warn(stats.orphaned_devices, "device(s) belong to users that do not exist.")
    warn(stats.orphaned_access_tokens, "access token(s) belong to users that do not exist.")
    warn(
        stats.puppet_access_tokens,
        "access token(s) are puppet tokens used by admins and will not be migrated.",
    )
    return findings


class ConsistencyChecker:
    """
    Runs the four check passes.

    Example:
        >>> checker = ConsistencyChecker(synapse_config, mas_config)
        >>> report = await checker.run_all(synapse_conn, mas_conn)
    """

    def __init__(
        self,
        synapse_config: SynapseConfig,
        mas_config: MasConfig,
        *,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._synapse = synapse_config
        self._mas = mas_config

    def check_synapse_config(self) -> list[CheckFinding]:
        return check_synapse_config(self._synapse)

    def check_synapse_against_mas_config(self) -> list[CheckFinding]:
        return check_synapse_against_mas_config(self._synapse, self._mas)

    async def check_mas_database(self, connection: AsyncConnection) -> list[CheckFinding]:
        """
        Pass 3: check that the MAS database is ready to be migrated into.

        Raises:
            CheckQueryError: If the MAS database cannot be queried
        """
        state = await self.gather_mas_state(connection)
        return mas_database_findings(state, self._mas)

    async def gather_mas_state(self, connection: AsyncConnection) -> MasDatabaseState:
        try:
            async with connection.begin():
                result = await connection.execute(text(_LIST_TABLES))
                tables = frozenset(row.table_name for row in result)

                applied = failed = 0
                if MAS_MIGRATIONS_TABLE in tables:
                    status = (await connection.execute(text(_MIGRATION_STATUS))).one()
                    applied, failed = int(status.applied), int(status.failed)

                non_empty: list[str] = []
                for table in MasTable:
                    if table.value not in tables:
                        continue
                    has_rows = await connection.execute(
                        text(f"SELECT EXISTS (SELECT 1 FROM {table.value})")
                    )
                    if has_rows.scalar():
                        non_empty.append(table.value)

                provider_ids: frozenset[UUID] = frozenset()
                if MAS_PROVIDERS_TABLE in tables:
                    result = await connection.execute(text(_LIST_PROVIDERS))
                    provider_ids = frozenset(result.scalars())
        except SQLAlchemyError as e:
            raise CheckQueryError(f"Failed to inspect the MAS database: {e}") from e

        return MasDatabaseState(
            tables=tables,
            applied_migrations=applied,
            failed_migrations=failed,
            non_empty_tables=tuple(non_empty),
            provider_ids=provider_ids,
        )

    async def check_synapse_database(self, connection: AsyncConnection) -> list[CheckFinding]:
        """
        Pass 4: look for rows in Synapse that will be skipped.

        Runs inside a single read-only transaction, so it is safe against a
        live Synapse database.

        Raises:
            CheckQueryError: If the Synapse database cannot be queried
        """
        stats = await self.gather_synapse_stats(connection)
        return synapse_database_findings(stats, self._mas.provider_id_mapping())

    async def gather_synapse_stats(self, connection: AsyncConnection) -> SynapseDatabaseStats:
        try:
            async with connection.begin():
                await connection.execute(
                    text("SET TRANSACTION ISOLATION LEVEL REPEATABLE READ, READ ONLY")
                )
                counts = (await connection.execute(text(_SYNAPSE_STATS))).one()
                by_provider = await connection.execute(text(_EXTERNAL_IDS_BY_PROVIDER))
                external_ids_by_provider = {
                    row.auth_provider: int(row.link_count) for row in by_provider
                }
        except SQLAlchemyError as e:
            raise CheckQueryError(f"Failed to inspect the Synapse database: {e}") from e

        return SynapseDatabaseStats(
            guest_users=int(counts.guest_users),
            appservice_users=int(counts.appservice_users),
            non_email_threepids=int(counts.non_email_threepids),
            orphaned_threepids=int(counts.orphaned_threepids),
            orphaned_external_ids=int(counts.orphaned_external_ids),
            orphaned_devices=int(counts.orphaned_devices),
            orphaned_access_tokens=int(counts.orphaned_access_tokens),
            puppet_access_tokens=int(counts.puppet_access_tokens),
            external_ids_by_provider=external_ids_by_provider,
        )

    async def run_all(
        self,
        synapse_connection: AsyncConnection,
        mas_connection: AsyncConnection,
    ) -> CheckReport:
        """
        Run every pass and collect the findings.

        The database passes are skipped when the Synapse database is not
        PostgreSQL, since the configured connection cannot point at it.

        Raises:
            CheckQueryError: If either database cannot be queried
        """
        report = CheckReport()

        with self._tracer.span("syn2mas.checks.run_all") as span:
            self._record_pass(report, "synapse_config", self.check_synapse_config())
            self._record_pass(
                report, "synapse_against_mas_config", self.check_synapse_against_mas_config()
            )

            with self._tracer.span(
                "syn2mas.checks.mas_database",
                {ATTR_CHECK_PASS: "mas_database", ATTR_DB_SYSTEM: "postgresql"},
            ):
                findings = await self.check_mas_database(mas_connection)
            self._record_pass(report, "mas_database", findings)

            if self._synapse.database.is_postgres:
                with self._tracer.span(
                    "syn2mas.checks.synapse_database",
                    {ATTR_CHECK_PASS: "synapse_database", ATTR_DB_SYSTEM: "postgresql"},
                ):
                    findings = await self.check_synapse_database(synapse_connection)
                self._record_pass(report, "synapse_database", findings)

            if span is not None:
                span.set_attribute(ATTR_CHECK_ERRORS, len(report.errors))
                span.set_attribute(ATTR_CHECK_WARNINGS, len(report.warnings))

        return report

    def _record_pass(self, report: CheckReport, name: str, findings: list[CheckFinding]) -> None:
        errors = sum(1 for f in findings if f.severity is FindingSeverity.ERROR)
        logger.info(
            "Check pass %s: %d error(s), %d warning(s)",
            name,
            errors,
            len(findings) - errors,
        )
        report.extend(findings)


__all__ = [
    "MAS_MIGRATIONS_TABLE",
    "MAS_PROVIDERS_TABLE",
    "REQUIRED_MAS_TABLES",
    "CheckFinding",
    "CheckReport",
    "ConsistencyChecker",
    "FindingSeverity",
    "MasDatabaseState",
    "SynapseDatabaseStats",
    "check_synapse_against_mas_config",
    "check_synapse_config",
    "mas_database_findings",
    "synapse_database_findings",
]
