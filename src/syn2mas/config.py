"""
Configuration objects consumed by the migration engine.

syn2mas never reads configuration files itself. The surrounding command
layer resolves the Synapse and MAS configuration and hands over these
models, fully populated.

Models in this module:
    - SynapseDatabaseConfig / PasswordConfig / SynapseConfig: legacy server
    - UpstreamProviderConfig / MasConfig: authorization server
    - MigrationOptions: tuning knobs for one run
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

DEFAULT_WRITER_CONNECTIONS = 8
DEFAULT_BATCH_SIZE = 1000
DEFAULT_PROGRESS_INTERVAL = 30.0
DEFAULT_BCRYPT_ROUNDS = 12

# Synapse's name for its PostgreSQL database backend
POSTGRES_BACKEND = "psycopg2"


class SynapseDatabaseConfig(BaseModel):
    """The ``database`` section of the Synapse configuration."""

    model_config = ConfigDict(frozen=True)

    name: str = "sqlite3"
    args: dict[str, Any] = Field(default_factory=dict)

    @property
    def is_postgres(self) -> bool:
        return self.name == POSTGRES_BACKEND


class PasswordConfig(BaseModel):
    """The ``password_config`` section of the Synapse configuration."""

    model_config = ConfigDict(frozen=True)

    enabled: bool = True
    localdb_enabled: bool = True
    pepper: str | None = None


class SynapseConfig(BaseModel):
    """
    Resolved Synapse configuration.

    Only the settings that influence whether and how a migration can run
    are modelled.

    Attributes:
        server_name: The homeserver name user ids are qualified with
        database: Database backend and connection arguments
        password_config: Local password login settings
        oidc_providers: ``idp_id`` of every configured OIDC provider
        password_providers: Module names of configured password providers
    """

    model_config = ConfigDict(frozen=True)

    server_name: str
    database: SynapseDatabaseConfig = Field(default_factory=SynapseDatabaseConfig)
    password_config: PasswordConfig = Field(default_factory=PasswordConfig)
    enable_registration: bool = False
    enable_registration_captcha: bool = False
    enable_3pid_changes: bool = False
    user_consent_enabled: bool = False
    bcrypt_rounds: int = DEFAULT_BCRYPT_ROUNDS
    oidc_providers: list[str] = Field(default_factory=list)
    cas_enabled: bool = False
    saml2_enabled: bool = False
    jwt_enabled: bool = False
    password_providers: list[str] = Field(default_factory=list)


class UpstreamProviderConfig(BaseModel):
    """An upstream OAuth 2.0 provider as registered in MAS."""

    model_config = ConfigDict(frozen=True)

    id: UUID
    synapse_idp_id: str | None = None


class MasConfig(BaseModel):
    """
    Resolved MAS configuration.

    The providers must already be synced into the MAS database before a
    migration starts, since migrated upstream links point at them.

    Attributes:
        homeserver: Server name of the homeserver MAS serves
        providers: Upstream OAuth 2.0 providers
        passwords_enabled: Whether MAS password login is enabled
        password_pepper_configured: Whether MAS knows Synapse's password pepper
    """

    model_config = ConfigDict(frozen=True)

    homeserver: str
    providers: list[UpstreamProviderConfig] = Field(default_factory=list)
    passwords_enabled: bool = True
    password_pepper_configured: bool = False

    def provider_id_mapping(self) -> dict[str, UUID]:
        """
        Map Synapse identity provider ids to MAS provider ids.

        Providers without a ``synapse_idp_id`` are not part of the mapping.
        """
        return {
            provider.synapse_idp_id: provider.id
            for provider in self.providers
            if provider.synapse_idp_id is not None
        }


@dataclass(frozen=True)
class MigrationOptions:
    """
    Options for a single migration run.

    Attributes:
        writer_connections: Number of parallel writer connections
        batch_size: Rows per insert batch and per source fetch
        progress_interval: Seconds between progress log lines
        dry_run: Reader dry-run mode; when False, the Synapse tables are
            locked against writes for the duration of the run
    """

    writer_connections: int = DEFAULT_WRITER_CONNECTIONS
    batch_size: int = DEFAULT_BATCH_SIZE
    progress_interval: float = DEFAULT_PROGRESS_INTERVAL
    dry_run: bool = True

    def __post_init__(self) -> None:
        if self.writer_connections < 1:
            raise ValueError(f"writer_connections must be >= 1, got {self.writer_connections}")
        if self.batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {self.batch_size}")
        if self.progress_interval <= 0:
            raise ValueError(f"progress_interval must be > 0, got {self.progress_interval}")


__all__ = [
    "DEFAULT_BATCH_SIZE",
    "DEFAULT_BCRYPT_ROUNDS",
    "DEFAULT_PROGRESS_INTERVAL",
    "DEFAULT_WRITER_CONNECTIONS",
    "POSTGRES_BACKEND",
    "MasConfig",
    "MigrationOptions",
    "PasswordConfig",
    "SynapseConfig",
    "SynapseDatabaseConfig",
    "UpstreamProviderConfig",
]
