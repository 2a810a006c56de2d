"""
Shared pytest fixtures for the syn2mas tests.

This module provides:
- Resolved configuration fixtures (synapse_config, mas_config)
- Deterministic clock and random source (clock, rng)
- Run state (migration_run)
- Tracing (mock_tracer)
"""

from __future__ import annotations

import random

import pytest

from syn2mas.config import (
    MasConfig,
    PasswordConfig,
    SynapseConfig,
    SynapseDatabaseConfig,
    UpstreamProviderConfig,
)
from syn2mas.ids import MockClock
from syn2mas.observability import MockTracer
from syn2mas.run import MigrationRun
from tests.factories import PROVIDER_ID, SERVER_NAME


@pytest.fixture
def synapse_config() -> SynapseConfig:
    """A Synapse configuration with nothing that blocks a migration."""
    return SynapseConfig(
        server_name=SERVER_NAME,
        database=SynapseDatabaseConfig(name="psycopg2", args={"database": "synapse"}),
        password_config=PasswordConfig(enabled=True),
        oidc_providers=["oidc-example"],
    )


@pytest.fixture
def mas_config() -> MasConfig:
    """A MAS configuration matching ``synapse_config``."""
    return MasConfig(
        homeserver=SERVER_NAME,
        providers=[UpstreamProviderConfig(id=PROVIDER_ID, synapse_idp_id="oidc-example")],
        passwords_enabled=True,
    )


@pytest.fixture
def clock() -> MockClock:
    return MockClock()


@pytest.fixture
def rng() -> random.Random:
    return random.Random(42)


@pytest.fixture
def migration_run(clock: MockClock, rng: random.Random) -> MigrationRun:
    return MigrationRun(
        homeserver=SERVER_NAME,
        provider_mapping={"oidc-example": PROVIDER_ID},
        clock=clock,
        rng=rng,
    )


@pytest.fixture
def mock_tracer() -> MockTracer:
    return MockTracer()
