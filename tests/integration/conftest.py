"""
Shared pytest fixtures for integration tests.

This module provides a PostgreSQL container through testcontainers and
two freshly created schemas per test: ``synapse`` holding a minimal
Synapse database and ``mas`` holding a migrated-but-empty MAS database.

If testcontainers or Docker is not available, tests are automatically skipped.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Generator
from typing import TYPE_CHECKING, Any

import pytest
import pytest_asyncio

from tests.factories import PROVIDER_ID

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine


# ============================================================================
# Testcontainers Detection
# ============================================================================

TESTCONTAINERS_AVAILABLE = False

try:
    from testcontainers.postgres import PostgresContainer

    TESTCONTAINERS_AVAILABLE = True
except ImportError:
    PostgresContainer = None  # type: ignore[assignment, misc]


def is_docker_available() -> bool:
    """Check if Docker is available for running containers."""
    import subprocess

    try:
        result = subprocess.run(
            ["docker", "info"],
            capture_output=True,
            timeout=5,
        )
        return result.returncode == 0
    except (subprocess.TimeoutExpired, OSError):
        return False


DOCKER_AVAILABLE = is_docker_available()


# ============================================================================
# Skip Conditions
# ============================================================================

skip_if_no_postgres_infra = pytest.mark.skipif(
    not (TESTCONTAINERS_AVAILABLE and DOCKER_AVAILABLE),
    reason="PostgreSQL test infrastructure not available",
)


# ============================================================================
# Database Schemas
# ============================================================================

SYNAPSE_SCHEMA_STATEMENTS = [
    """
    CREATE TABLE users (
        name TEXT PRIMARY KEY,
        password_hash TEXT,
        creation_ts BIGINT,
        admin SMALLINT NOT NULL DEFAULT 0,
        is_guest SMALLINT NOT NULL DEFAULT 0,
        appservice_id TEXT,
        deactivated SMALLINT NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE user_threepids (
        user_id TEXT NOT NULL,
        medium TEXT NOT NULL,
        address TEXT NOT NULL,
        validated_at BIGINT NOT NULL,
        added_at BIGINT NOT NULL,
        PRIMARY KEY (medium, address)
    )
    """,
    """
    CREATE TABLE user_external_ids (
        auth_provider TEXT NOT NULL,
        external_id TEXT NOT NULL,
        user_id TEXT NOT NULL,
        PRIMARY KEY (auth_provider, external_id)
    )
    """,
    """
    CREATE TABLE devices (
        user_id TEXT NOT NULL,
        device_id TEXT NOT NULL,
        display_name TEXT,
        last_seen BIGINT,
        ip TEXT,
        user_agent TEXT,
        hidden BOOLEAN NOT NULL DEFAULT FALSE,
        PRIMARY KEY (user_id, device_id)
    )
    """,
    """
    CREATE TABLE access_tokens (
        id BIGINT PRIMARY KEY,
        user_id TEXT NOT NULL,
        device_id TEXT,
        token TEXT NOT NULL UNIQUE,
        valid_until_ms BIGINT,
        puppets_user_id TEXT,
        last_validated BIGINT,
        refresh_token_id BIGINT
    )
    """,
    """
    CREATE TABLE refresh_tokens (
        id BIGINT PRIMARY KEY,
        user_id TEXT NOT NULL,
        device_id TEXT NOT NULL,
        token TEXT NOT NULL UNIQUE,
        next_token_id BIGINT,
        expiry_ts BIGINT,
        ultimate_session_expiry_ts BIGINT
    )
    """,
]

MAS_SCHEMA_STATEMENTS = [
    """
    CREATE TABLE _sqlx_migrations (
        version BIGINT PRIMARY KEY,
        description TEXT NOT NULL,
        installed_on TIMESTAMPTZ NOT NULL DEFAULT now(),
        success BOOLEAN NOT NULL,
        checksum BYTEA NOT NULL,
        execution_time BIGINT NOT NULL
    )
    """,
    """
    INSERT INTO _sqlx_migrations (version, description, success, checksum, execution_time)
    VALUES (20221018142001, 'init', TRUE, '\\x00', 1)
    """,
    """
    CREATE TABLE upstream_oauth_providers (
        upstream_oauth_provider_id UUID PRIMARY KEY,
        issuer TEXT
    )
    """,
    f"""
    INSERT INTO upstream_oauth_providers (upstream_oauth_provider_id, issuer)
    VALUES ('{PROVIDER_ID}', 'https://id.example.com/')
    """,
    """
    CREATE TABLE users (
        user_id UUID PRIMARY KEY,
        username TEXT NOT NULL UNIQUE,
        created_at TIMESTAMPTZ NOT NULL,
        locked_at TIMESTAMPTZ,
        deactivated_at TIMESTAMPTZ,
        can_request_admin BOOLEAN NOT NULL DEFAULT FALSE
    )
    """,
    """
    CREATE TABLE user_passwords (
        user_password_id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES users (user_id),
        hashed_password TEXT NOT NULL,
        version INTEGER NOT NULL,
        upgraded_from_id UUID REFERENCES user_passwords (user_password_id),
        created_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE TABLE user_emails (
        user_email_id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES users (user_id),
        email TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE INDEX user_emails_email_idx ON user_emails (email)",
    """
    CREATE TABLE upstream_oauth_links (
        upstream_oauth_link_id UUID PRIMARY KEY,
        upstream_oauth_provider_id UUID NOT NULL
            REFERENCES upstream_oauth_providers (upstream_oauth_provider_id),
        user_id UUID REFERENCES users (user_id),
        subject TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        UNIQUE (upstream_oauth_provider_id, subject)
    )
    """,
    """
    CREATE TABLE compat_sessions (
        compat_session_id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES users (user_id),
        device_id TEXT,
        human_name TEXT,
        created_at TIMESTAMPTZ NOT NULL,
        is_synapse_admin BOOLEAN NOT NULL,
        last_active_at TIMESTAMPTZ,
        last_active_ip TEXT,
        user_agent TEXT
    )
    """,
    """
    CREATE TABLE compat_access_tokens (
        compat_access_token_id UUID PRIMARY KEY,
        compat_session_id UUID NOT NULL REFERENCES compat_sessions (compat_session_id),
        access_token TEXT NOT NULL UNIQUE,
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE compat_refresh_tokens (
        compat_refresh_token_id UUID PRIMARY KEY,
        compat_session_id UUID NOT NULL REFERENCES compat_sessions (compat_session_id),
        compat_access_token_id UUID NOT NULL
            REFERENCES compat_access_tokens (compat_access_token_id),
        refresh_token TEXT NOT NULL UNIQUE,
        created_at TIMESTAMPTZ NOT NULL
    )
    """,
]


# ============================================================================
# PostgreSQL Fixtures
# ============================================================================


@pytest.fixture(scope="session")
def postgres_container() -> Generator[Any, None, None]:
    """
    Provide PostgreSQL container for integration tests.

    Container is shared across all tests in the session for efficiency.
    """
    if not TESTCONTAINERS_AVAILABLE or not DOCKER_AVAILABLE:
        pytest.skip("PostgreSQL testcontainer not available")

    container = PostgresContainer("postgres:15")
    container.start()

    yield container

    container.stop()


@pytest.fixture(scope="session")
def postgres_connection_url(postgres_container: Any) -> str:
    """Get PostgreSQL connection URL from container."""
    # testcontainers returns psycopg2 URL, convert to asyncpg
    url = postgres_container.get_connection_url()
    return url.replace("postgresql://", "postgresql+asyncpg://").replace("psycopg2", "asyncpg")


async def _schema_engine(
    url: str, schema: str, statements: list[str]
) -> AsyncEngine:
    """Recreate ``schema`` from ``statements`` and return an engine bound to it."""
    from sqlalchemy import text
    from sqlalchemy.ext.asyncio import create_async_engine

    engine = create_async_engine(
        url,
        echo=False,
        pool_size=5,
        max_overflow=10,
        connect_args={"server_settings": {"search_path": schema}},
    )

    # Execute each statement individually for asyncpg compatibility
    async with engine.begin() as conn:
        await conn.execute(text(f"DROP SCHEMA IF EXISTS {schema} CASCADE"))
        await conn.execute(text(f"CREATE SCHEMA {schema}"))
        for statement in statements:
            await conn.execute(text(statement))

    return engine


@pytest_asyncio.fixture
async def synapse_engine(postgres_connection_url: str) -> AsyncGenerator[AsyncEngine, None]:
    """Engine for a fresh, empty Synapse database."""
    engine = await _schema_engine(postgres_connection_url, "synapse", SYNAPSE_SCHEMA_STATEMENTS)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def mas_engine(postgres_connection_url: str) -> AsyncGenerator[AsyncEngine, None]:
    """Engine for a fresh MAS database with its schema migrations applied."""
    engine = await _schema_engine(postgres_connection_url, "mas", MAS_SCHEMA_STATEMENTS)
    yield engine
    await engine.dispose()
