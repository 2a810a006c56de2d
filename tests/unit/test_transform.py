"""
Unit tests for row transformation.

Tests cover:
- Each entity's mapping onto MAS rows
- Every skip reason
- Id generation from row timestamps or the run clock
- Foreign keys resolved through the translation table
"""

from __future__ import annotations

import random
from datetime import UTC, datetime
from uuid import UUID, uuid4

import pytest

from syn2mas.ids import InvalidTimestampError, MockClock, ulid_timestamp
from syn2mas.reader import SynapseEntity
from syn2mas.run import MigrationRun
from syn2mas.transform import (
    GENERATED_DEVICE_ID_LENGTH,
    Migrated,
    Skipped,
    SkipReason,
    localpart,
    transform,
    transform_access_token,
    transform_device,
    transform_external_id,
    transform_refresh_token,
    transform_threepid,
    transform_user,
)
from syn2mas.writer import TABLE_COLUMNS, MasTable
from tests.factories import (
    CREATION_TS,
    PROVIDER_ID,
    make_access_token,
    make_device,
    make_external_id,
    make_refresh_token,
    make_threepid,
    make_user,
    user_id,
)


def seal_with(run: MigrationRun, entity: SynapseEntity, ids: dict) -> None:
    """Record ids for an entity and seal it, as the orchestrator would."""
    for legacy_id, new_id in ids.items():
        run.ids.record(entity, legacy_id, new_id)
    run.ids.seal(entity)


def assert_matches_columns(result: Migrated) -> None:
    """Every produced row has exactly the columns of its table."""
    for row in result.rows:
        assert set(row.values) == set(TABLE_COLUMNS[row.table])


@pytest.fixture
def alice_id() -> UUID:
    return uuid4()


@pytest.fixture
def users_sealed(migration_run: MigrationRun, alice_id: UUID) -> MigrationRun:
    seal_with(migration_run, SynapseEntity.USERS, {user_id("alice"): alice_id})
    return migration_run


class TestLocalpart:
    """Tests for localpart."""

    @pytest.mark.parametrize(
        ("user", "expected"),
        [
            ("@alice:example.com", "alice"),
            ("@a:b:example.com", "a:b"),
            ("@alice:other.example", None),
            ("alice:example.com", None),
            ("@:example.com", None),
        ],
    )
    def test_localpart(self, user: str, expected: str | None) -> None:
        assert localpart(user, "example.com") == expected


class TestTransformUser:
    """Tests for transform_user."""

    def test_migrates_user_and_password(self, migration_run: MigrationRun) -> None:
        result = transform_user(make_user("alice"), migration_run)

        assert isinstance(result, Migrated)
        assert [row.table for row in result.rows] == [MasTable.USERS, MasTable.USER_PASSWORDS]
        user, password = result.rows
        assert user.values["username"] == "alice"
        assert user.values["user_id"] == result.new_id
        assert password.values["user_id"] == result.new_id
        assert password.values["hashed_password"] == "$2b$12$hash"
        assert password.values["version"] == 1
        assert result.legacy_id == "@alice:example.com"
        assert_matches_columns(result)

    def test_id_carries_creation_time(self, migration_run: MigrationRun) -> None:
        result = transform_user(make_user("alice"), migration_run)

        assert isinstance(result, Migrated)
        assert ulid_timestamp(result.new_id) == datetime.fromtimestamp(CREATION_TS, tz=UTC)

    def test_user_without_password(self, migration_run: MigrationRun) -> None:
        result = transform_user(make_user("alice", password_hash=None), migration_run)

        assert isinstance(result, Migrated)
        assert [row.table for row in result.rows] == [MasTable.USERS]

    def test_deactivated_user_is_locked(self, migration_run: MigrationRun) -> None:
        result = transform_user(make_user("alice", deactivated=True), migration_run)

        assert isinstance(result, Migrated)
        values = result.rows[0].values
        assert values["deactivated_at"] == migration_run.clock.now()
        assert values["locked_at"] == migration_run.clock.now()

    def test_admin_is_remembered(self, migration_run: MigrationRun) -> None:
        """Admins are tracked so their sessions can be flagged later."""
        result = transform_user(make_user("alice", admin=True), migration_run)

        assert isinstance(result, Migrated)
        assert result.rows[0].values["can_request_admin"] is True
        assert "@alice:example.com" in migration_run.synapse_admins

    @pytest.mark.parametrize(
        ("overrides", "reason"),
        [
            ({"name": "@alice:other.example"}, SkipReason.NOT_LOCAL_USER),
            ({"is_guest": True}, SkipReason.GUEST_USER),
            ({"appservice_id": "bridge"}, SkipReason.APPSERVICE_USER),
        ],
    )
    def test_skips(self, migration_run: MigrationRun, overrides: dict, reason: SkipReason) -> None:
        assert transform_user(make_user("alice", **overrides), migration_run) == Skipped(reason)


class TestTransformThreepid:
    """Tests for transform_threepid."""

    def test_migrates_email(self, users_sealed: MigrationRun, alice_id: UUID) -> None:
        result = transform_threepid(make_threepid("alice"), users_sealed)

        assert isinstance(result, Migrated)
        [row] = result.rows
        assert row.table is MasTable.USER_EMAILS
        assert row.values["user_id"] == alice_id
        assert row.values["email"] == "alice@example.com"
        assert result.legacy_id == ("email", "alice@example.com")
        assert_matches_columns(result)

    def test_falls_back_to_run_clock(self, users_sealed: MigrationRun) -> None:
        result = transform_threepid(make_threepid("alice", added_at=None), users_sealed)

        assert isinstance(result, Migrated)
        assert result.rows[0].values["created_at"] == users_sealed.clock.now()

    def test_skips_non_email(self, users_sealed: MigrationRun) -> None:
        threepid = make_threepid("alice", medium="msisdn", address="447700900000")
        assert transform_threepid(threepid, users_sealed) == Skipped(
            SkipReason.UNSUPPORTED_THREEPID_MEDIUM
        )

    def test_skips_unknown_user(self, users_sealed: MigrationRun) -> None:
        assert transform_threepid(make_threepid("bob"), users_sealed) == Skipped(
            SkipReason.UNKNOWN_USER
        )


class TestTransformExternalId:
    """Tests for transform_external_id."""

    def test_links_to_mapped_provider(self, users_sealed: MigrationRun, alice_id: UUID) -> None:
        """The legacy provider id is replaced by the MAS provider id."""
        result = transform_external_id(make_external_id("alice"), users_sealed)

        assert isinstance(result, Migrated)
        [row] = result.rows
        assert row.table is MasTable.UPSTREAM_OAUTH_LINKS
        assert row.values["upstream_oauth_provider_id"] == PROVIDER_ID
        assert "oidc-example" not in row.values.values()
        assert row.values["user_id"] == alice_id
        assert row.values["subject"] == "sub-alice"
        assert_matches_columns(result)

    def test_skips_unmapped_provider(self, users_sealed: MigrationRun) -> None:
        external_id = make_external_id("alice", auth_provider="oidc-gone")
        assert transform_external_id(external_id, users_sealed) == Skipped(
            SkipReason.UNMAPPED_PROVIDER
        )

    def test_skips_unknown_user(self, users_sealed: MigrationRun) -> None:
        assert transform_external_id(make_external_id("bob"), users_sealed) == Skipped(
            SkipReason.UNKNOWN_USER
        )


class TestTransformDevice:
    """Tests for transform_device."""

    def test_migrates_to_compat_session(self, users_sealed: MigrationRun, alice_id: UUID) -> None:
        result = transform_device(make_device("alice"), users_sealed)

        assert isinstance(result, Migrated)
        [row] = result.rows
        assert row.table is MasTable.COMPAT_SESSIONS
        assert row.values["user_id"] == alice_id
        assert row.values["device_id"] == "DEVICE"
        assert row.values["human_name"] == "Phone"
        assert row.values["last_active_ip"] == "203.0.113.7"
        assert row.values["is_synapse_admin"] is False
        assert result.legacy_id == ("@alice:example.com", "DEVICE")
        assert_matches_columns(result)

    def test_admin_sessions_are_flagged(self, users_sealed: MigrationRun) -> None:
        users_sealed.synapse_admins.add("@alice:example.com")

        result = transform_device(make_device("alice"), users_sealed)

        assert isinstance(result, Migrated)
        assert result.rows[0].values["is_synapse_admin"] is True

    def test_skips_hidden(self, users_sealed: MigrationRun) -> None:
        assert transform_device(make_device("alice", hidden=True), users_sealed) == Skipped(
            SkipReason.HIDDEN_DEVICE
        )

    def test_skips_unknown_user(self, users_sealed: MigrationRun) -> None:
        assert transform_device(make_device("bob"), users_sealed) == Skipped(
            SkipReason.UNKNOWN_USER
        )


class TestTransformAccessToken:
    """Tests for transform_access_token."""

    @pytest.fixture
    def session_id(self, users_sealed: MigrationRun) -> UUID:
        session_id = uuid4()
        seal_with(
            users_sealed, SynapseEntity.DEVICES, {("@alice:example.com", "DEVICE"): session_id}
        )
        return session_id

    def test_attaches_to_device_session(
        self, users_sealed: MigrationRun, session_id: UUID
    ) -> None:
        result = transform_access_token(make_access_token(1, "alice"), users_sealed)

        assert isinstance(result, Migrated)
        [row] = result.rows
        assert row.table is MasTable.COMPAT_ACCESS_TOKENS
        assert row.values["compat_session_id"] == session_id
        assert row.values["access_token"] == "syt_token_1"
        assert row.values["expires_at"] is None
        assert result.legacy_id == 1
        assert_matches_columns(result)

    def test_expiry_is_converted(self, users_sealed: MigrationRun, session_id: UUID) -> None:
        token = make_access_token(1, "alice", valid_until_ms=1_700_000_000_000)

        result = transform_access_token(token, users_sealed)

        assert isinstance(result, Migrated)
        assert result.rows[0].values["expires_at"] == datetime.fromtimestamp(
            1_700_000_000, tz=UTC
        )

    def test_deviceless_token_gets_own_session(
        self, users_sealed: MigrationRun, session_id: UUID, alice_id: UUID
    ) -> None:
        """A token issued without a device is given a new session."""
        result = transform_access_token(
            make_access_token(2, "alice", device_id=None), users_sealed
        )

        assert isinstance(result, Migrated)
        session, token = result.rows
        assert session.table is MasTable.COMPAT_SESSIONS
        assert session.values["user_id"] == alice_id
        assert len(session.values["device_id"]) == GENERATED_DEVICE_ID_LENGTH
        assert token.values["compat_session_id"] == session.values["compat_session_id"]
        assert_matches_columns(result)

    def test_skips_puppet_tokens(self, users_sealed: MigrationRun, session_id: UUID) -> None:
        token = make_access_token(1, "alice", puppets_user_id="@bob:example.com")
        assert transform_access_token(token, users_sealed) == Skipped(SkipReason.PUPPET_TOKEN)

    def test_skips_unknown_session(self, users_sealed: MigrationRun, session_id: UUID) -> None:
        token = make_access_token(1, "alice", device_id="GONE")
        assert transform_access_token(token, users_sealed) == Skipped(SkipReason.UNKNOWN_SESSION)

    def test_skips_unknown_user(self, users_sealed: MigrationRun, session_id: UUID) -> None:
        token = make_access_token(1, "bob")
        assert transform_access_token(token, users_sealed) == Skipped(SkipReason.UNKNOWN_USER)


class TestTransformRefreshToken:
    """Tests for transform_refresh_token."""

    @pytest.fixture
    def tokens_sealed(self, users_sealed: MigrationRun) -> tuple[UUID, UUID]:
        session_id, access_token_id = uuid4(), uuid4()
        seal_with(
            users_sealed, SynapseEntity.DEVICES, {("@alice:example.com", "DEVICE"): session_id}
        )
        seal_with(users_sealed, SynapseEntity.ACCESS_TOKENS, {1: access_token_id})
        return session_id, access_token_id

    def test_links_session_and_access_token(
        self, users_sealed: MigrationRun, tokens_sealed: tuple[UUID, UUID]
    ) -> None:
        session_id, access_token_id = tokens_sealed

        result = transform_refresh_token(make_refresh_token(5, "alice"), users_sealed)

        assert isinstance(result, Migrated)
        [row] = result.rows
        assert row.table is MasTable.COMPAT_REFRESH_TOKENS
        assert row.values["compat_session_id"] == session_id
        assert row.values["compat_access_token_id"] == access_token_id
        assert row.values["refresh_token"] == "syr_token_5"
        assert_matches_columns(result)

    @pytest.mark.parametrize("access_token_id", [None, 99])
    def test_skips_without_access_token(
        self,
        users_sealed: MigrationRun,
        tokens_sealed: tuple[UUID, UUID],
        access_token_id: int | None,
    ) -> None:
        token = make_refresh_token(5, "alice", access_token_id=access_token_id)
        assert transform_refresh_token(token, users_sealed) == Skipped(
            SkipReason.MISSING_ACCESS_TOKEN
        )

    def test_skips_unknown_session(
        self, users_sealed: MigrationRun, tokens_sealed: tuple[UUID, UUID]
    ) -> None:
        token = make_refresh_token(5, "alice", device_id="GONE")
        assert transform_refresh_token(token, users_sealed) == Skipped(
            SkipReason.UNKNOWN_SESSION
        )


class TestTransformDispatch:
    """Tests for the transform dispatcher."""

    def test_dispatches_by_entity(self, migration_run: MigrationRun) -> None:
        result = transform(SynapseEntity.USERS, make_user("alice"), migration_run)
        assert isinstance(result, Migrated)

    def test_seeded_runs_generate_identical_ids(self, clock: MockClock) -> None:
        """Ids depend only on the run's clock and random source."""
        runs = [
            MigrationRun(
                homeserver="example.com",
                provider_mapping={},
                clock=clock,
                rng=random.Random(11),
            )
            for _ in range(2)
        ]
        first, second = (transform_user(make_user("alice"), run) for run in runs)

        assert isinstance(first, Migrated) and isinstance(second, Migrated)
        assert first.new_id == second.new_id

    @pytest.mark.parametrize("creation_ts", [-1, 10**20])
    def test_invalid_timestamp_is_a_skip(
        self, migration_run: MigrationRun, creation_ts: int
    ) -> None:
        """Timestamps before the epoch or past any representable date skip the row."""
        user = make_user("alice", creation_ts=creation_ts)

        with pytest.raises(InvalidTimestampError):
            transform_user(user, migration_run)
        assert transform(SynapseEntity.USERS, user, migration_run) == Skipped(
            SkipReason.INVALID_TIMESTAMP
        )

    def test_invalid_millisecond_timestamp_is_a_skip(self, users_sealed: MigrationRun) -> None:
        threepid = make_threepid("alice", added_at=-5000)

        assert transform(SynapseEntity.THREEPIDS, threepid, users_sealed) == Skipped(
            SkipReason.INVALID_TIMESTAMP
        )
