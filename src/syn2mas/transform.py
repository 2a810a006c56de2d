"""
Transformation of Synapse rows into MAS rows.

Each transformer takes one legacy row and the run state, and returns
either a Migrated result (the MAS rows to insert plus the ids to record in
the translation table) or a Skipped result with the reason the row cannot
be migrated. Bad data never raises: an unresolvable reference or a
timestamp that cannot be stored is a skip, not an error.

Mapping overview:
    users             -> users, user_passwords
    user_threepids    -> user_emails
    user_external_ids -> upstream_oauth_links
    devices           -> compat_sessions
    access_tokens     -> compat_access_tokens (+ compat_sessions when the
                         token was issued without a device)
    refresh_tokens    -> compat_refresh_tokens
"""

from __future__ import annotations

import logging
import string
from collections.abc import Callable, Hashable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import UUID

from syn2mas.ids import InvalidTimestampError, generate_ulid
from syn2mas.reader import (
    SourceRow,
    SynapseAccessToken,
    SynapseDevice,
    SynapseEntity,
    SynapseExternalId,
    SynapseRefreshToken,
    SynapseThreepid,
    SynapseUser,
)
from syn2mas.run import MigrationRun
from syn2mas.writer import MasTable, TargetRow

logger = logging.getLogger(__name__)

GENERATED_DEVICE_ID_LENGTH = 10
_DEVICE_ID_ALPHABET = string.ascii_uppercase


class SkipReason(str, Enum):
    """Why a legacy row was not migrated."""

    NOT_LOCAL_USER = "user is not local to the homeserver"
    GUEST_USER = "guest users are not supported"
    APPSERVICE_USER = "application service users are not migrated"
    UNSUPPORTED_THREEPID_MEDIUM = "only email third-party ids are supported"
    UNKNOWN_USER = "user was not migrated"
    UNMAPPED_PROVIDER = "upstream provider has no MAS mapping"
    HIDDEN_DEVICE = "hidden devices are not migrated"
    PUPPET_TOKEN = "puppet access tokens are not migrated"
    UNKNOWN_SESSION = "device was not migrated"
    MISSING_ACCESS_TOKEN = "no migrated access token belongs to this refresh token"
    INVALID_TIMESTAMP = "timestamp is outside the representable range"


@dataclass(frozen=True)
class Migrated:
    """
    A legacy row that maps onto MAS rows.

    Attributes:
        rows: MAS rows to insert
        legacy_id: Id of the legacy row in the translation table
        new_id: MAS id recorded for ``legacy_id``
    """

    rows: tuple[TargetRow, ...]
    legacy_id: Hashable
    new_id: UUID


@dataclass(frozen=True)
class Skipped:
    """A legacy row that is left behind."""

    reason: SkipReason


TransformResult = Migrated | Skipped


def _from_seconds(value: float) -> datetime:
    try:
        return datetime.fromtimestamp(value, tz=UTC)
    except (OverflowError, OSError, ValueError) as e:
        raise InvalidTimestampError(f"timestamp out of range: {value!r}") from e


def _from_millis(value: int | None) -> datetime | None:
    if value is None:
        return None
    return _from_seconds(value / 1000)


def localpart(user_id: str, homeserver: str) -> str | None:
    """
    Extract the localpart of a local Matrix user id.

    Returns:
        The localpart, or None if the id is malformed or not on ``homeserver``
    """
    suffix = f":{homeserver}"
    if not user_id.startswith("@") or not user_id.endswith(suffix):
        return None
    local = user_id[1 : -len(suffix)]
    return local or None


def generate_device_id(run: MigrationRun) -> str:
    """Generate a device id for a session that never had one."""
    return "".join(run.rng.choice(_DEVICE_ID_ALPHABET) for _ in range(GENERATED_DEVICE_ID_LENGTH))


def transform_user(user: SynapseUser, run: MigrationRun) -> TransformResult:
    username = localpart(user.name, run.homeserver)
    if username is None:
        return Skipped(SkipReason.NOT_LOCAL_USER)
    if user.appservice_id is not None:
        return Skipped(SkipReason.APPSERVICE_USER)
    if user.is_guest:
        return Skipped(SkipReason.GUEST_USER)

    created_at = _from_seconds(user.creation_ts)
    user_id = generate_ulid(created_at, run.rng)
    deactivated_at = run.clock.now() if user.deactivated else None

    rows = [
        TargetRow(
            MasTable.USERS,
            {
                "user_id": user_id,
                "username": username,
                "created_at": created_at,
                "locked_at": deactivated_at,
                "deactivated_at": deactivated_at,
                "can_request_admin": user.admin,
            },
        )
    ]
    if user.password_hash:
        rows.append(
            TargetRow(
                MasTable.USER_PASSWORDS,
                {
                    "user_password_id": generate_ulid(created_at, run.rng),
                    "user_id": user_id,
                    "hashed_password": user.password_hash,
                    "version": 1,
                    "upgraded_from_id": None,
                    "created_at": created_at,
                },
            )
        )
    if user.admin:
        run.synapse_admins.add(user.name)

    return Migrated(rows=tuple(rows), legacy_id=user.legacy_id, new_id=user_id)


def transform_threepid(threepid: SynapseThreepid, run: MigrationRun) -> TransformResult:
    if threepid.medium != "email":
        return Skipped(SkipReason.UNSUPPORTED_THREEPID_MEDIUM)
    user_id = run.ids.resolve(SynapseEntity.USERS, threepid.user_id)
    if user_id is None:
        return Skipped(SkipReason.UNKNOWN_USER)

    created_at = _from_millis(threepid.added_at) or run.clock.now()
    email_id = generate_ulid(created_at, run.rng)
    row = TargetRow(
        MasTable.USER_EMAILS,
        {
            "user_email_id": email_id,
            "user_id": user_id,
            "email": threepid.address,
            "created_at": created_at,
        },
    )
    return Migrated(rows=(row,), legacy_id=threepid.legacy_id, new_id=email_id)


def transform_external_id(external_id: SynapseExternalId, run: MigrationRun) -> TransformResult:
    user_id = run.ids.resolve(SynapseEntity.USERS, external_id.user_id)
    if user_id is None:
        return Skipped(SkipReason.UNKNOWN_USER)
    provider_id = run.provider_mapping.get(external_id.auth_provider)
    if provider_id is None:
        return Skipped(SkipReason.UNMAPPED_PROVIDER)

    created_at = run.clock.now()
    link_id = generate_ulid(created_at, run.rng)
    row = TargetRow(
        MasTable.UPSTREAM_OAUTH_LINKS,
        {
            "upstream_oauth_link_id": link_id,
            "upstream_oauth_provider_id": provider_id,
            "user_id": user_id,
            "subject": external_id.external_id,
            "created_at": created_at,
        },
    )
    return Migrated(rows=(row,), legacy_id=external_id.legacy_id, new_id=link_id)


def _compat_session_row(
    run: MigrationRun,
    *,
    session_id: UUID,
    user_id: UUID,
    legacy_user_id: str,
    device_id: str,
    created_at: datetime,
    human_name: str | None = None,
    last_active_at: datetime | None = None,
    last_active_ip: str | None = None,
    user_agent: str | None = None,
) -> TargetRow:
    return TargetRow(
        MasTable.COMPAT_SESSIONS,
        {
            "compat_session_id": session_id,
            "user_id": user_id,
            "device_id": device_id,
            "human_name": human_name,
            "created_at": created_at,
            "is_synapse_admin": legacy_user_id in run.synapse_admins,
            "last_active_at": last_active_at,
            "last_active_ip": last_active_ip,
            "user_agent": user_agent,
        },
    )


def transform_device(device: SynapseDevice, run: MigrationRun) -> TransformResult:
    if device.hidden:
        return Skipped(SkipReason.HIDDEN_DEVICE)
    user_id = run.ids.resolve(SynapseEntity.USERS, device.user_id)
    if user_id is None:
        return Skipped(SkipReason.UNKNOWN_USER)

    created_at = run.clock.now()
    session_id = generate_ulid(created_at, run.rng)
    row = _compat_session_row(
        run,
        session_id=session_id,
        user_id=user_id,
        legacy_user_id=device.user_id,
        device_id=device.device_id,
        created_at=created_at,
        human_name=device.display_name,
        last_active_at=_from_millis(device.last_seen),
        last_active_ip=device.ip,
        user_agent=device.user_agent,
    )
    return Migrated(rows=(row,), legacy_id=device.legacy_id, new_id=session_id)


def transform_access_token(token: SynapseAccessToken, run: MigrationRun) -> TransformResult:
    if token.puppets_user_id is not None:
        return Skipped(SkipReason.PUPPET_TOKEN)
    user_id = run.ids.resolve(SynapseEntity.USERS, token.user_id)
    if user_id is None:
        return Skipped(SkipReason.UNKNOWN_USER)

    created_at = _from_millis(token.last_validated) or run.clock.now()
    rows: list[TargetRow] = []

    if token.device_id is not None:
        session_id = run.ids.resolve(SynapseEntity.DEVICES, (token.user_id, token.device_id))
        if session_id is None:
            return Skipped(SkipReason.UNKNOWN_SESSION)
    else:
        # Tokens issued without a device each get a session of their own
        session_id = generate_ulid(created_at, run.rng)
        rows.append(
            _compat_session_row(
                run,
                session_id=session_id,
                user_id=user_id,
                legacy_user_id=token.user_id,
                device_id=generate_device_id(run),
                created_at=created_at,
            )
        )

    token_id = generate_ulid(created_at, run.rng)
    rows.append(
        TargetRow(
            MasTable.COMPAT_ACCESS_TOKENS,
            {
                "compat_access_token_id": token_id,
                "compat_session_id": session_id,
                "access_token": token.token,
                "created_at": created_at,
                "expires_at": _from_millis(token.valid_until_ms),
            },
        )
    )
    return Migrated(rows=tuple(rows), legacy_id=token.legacy_id, new_id=token_id)


def transform_refresh_token(token: SynapseRefreshToken, run: MigrationRun) -> TransformResult:
    user_id = run.ids.resolve(SynapseEntity.USERS, token.user_id)
    if user_id is None:
        return Skipped(SkipReason.UNKNOWN_USER)
    session_id = run.ids.resolve(SynapseEntity.DEVICES, (token.user_id, token.device_id))
    if session_id is None:
        return Skipped(SkipReason.UNKNOWN_SESSION)
    if token.access_token_id is None:
        return Skipped(SkipReason.MISSING_ACCESS_TOKEN)
    access_token_id = run.ids.resolve(SynapseEntity.ACCESS_TOKENS, token.access_token_id)
    if access_token_id is None:
        return Skipped(SkipReason.MISSING_ACCESS_TOKEN)

    created_at = run.clock.now()
    refresh_token_id = generate_ulid(created_at, run.rng)
    row = TargetRow(
        MasTable.COMPAT_REFRESH_TOKENS,
        {
            "compat_refresh_token_id": refresh_token_id,
            "compat_session_id": session_id,
            "compat_access_token_id": access_token_id,
            "refresh_token": token.token,
            "created_at": created_at,
        },
    )
    return Migrated(rows=(row,), legacy_id=token.legacy_id, new_id=refresh_token_id)


TRANSFORMERS: dict[SynapseEntity, Callable[[Any, MigrationRun], TransformResult]] = {
    SynapseEntity.USERS: transform_user,
    SynapseEntity.THREEPIDS: transform_threepid,
    SynapseEntity.EXTERNAL_IDS: transform_external_id,
    SynapseEntity.DEVICES: transform_device,
    SynapseEntity.ACCESS_TOKENS: transform_access_token,
    SynapseEntity.REFRESH_TOKENS: transform_refresh_token,
}


def transform(entity: SynapseEntity, row: SourceRow, run: MigrationRun) -> TransformResult:
    """Transform a legacy row of the given entity type."""
    try:
        return TRANSFORMERS[entity](row, run)
    except InvalidTimestampError as e:
        logger.debug("Invalid timestamp in %s %r: %s", entity.value, row.legacy_id, e)
        return Skipped(SkipReason.INVALID_TIMESTAMP)


__all__ = [
    "GENERATED_DEVICE_ID_LENGTH",
    "TRANSFORMERS",
    "Migrated",
    "SkipReason",
    "Skipped",
    "TransformResult",
    "generate_device_id",
    "localpart",
    "transform",
    "transform_access_token",
    "transform_device",
    "transform_external_id",
    "transform_refresh_token",
    "transform_threepid",
    "transform_user",
]
