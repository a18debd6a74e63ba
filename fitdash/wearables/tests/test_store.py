"""Tests for the asyncpg-backed stores over a recording connection pool."""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from uuid import uuid4

import asyncpg
import pytest

from fitdash.services.database import Database
from fitdash.wearables.base import (
    Credential,
    MetricType,
    NormalizedMetricRecord,
    OAuthTokens,
    Provider,
    SyncStatusRecord,
)
from fitdash.wearables.errors import PersistenceError
from fitdash.wearables.store import CredentialStore, MetricStore, SyncStatusStore
from fitdash.wearables.sync.dedup import METRIC_COLUMNS, UPSERT_METRIC_SQL
from fitdash.wearables.tests.conftest import T0, TEST_DATE, TEST_USER_ID

CREDENTIAL_ID = uuid4()


class FakeConnection:
    def __init__(self, pool: "FakePool") -> None:
        self._pool = pool

    @asynccontextmanager
    async def transaction(self):
        self._pool.transactions += 1
        yield

    async def _run(self, method: str, query: str, args):
        if "set_config" in query:
            self._pool.rls.append(tuple(args))
            return "SELECT 1"
        self._pool.calls.append((method, " ".join(query.split()), args))
        if self._pool.error is not None:
            raise self._pool.error
        if self._pool.responses:
            return self._pool.responses.pop(0)
        return [] if method == "fetch" else None

    async def execute(self, query, *args):
        return await self._run("execute", query, args)

    async def executemany(self, query, args):
        return await self._run("executemany", query, args)

    async def fetch(self, query, *args):
        return await self._run("fetch", query, args)

    async def fetchrow(self, query, *args):
        return await self._run("fetchrow", query, args)

    async def fetchval(self, query, *args):
        return await self._run("fetchval", query, args)


class FakePool:
    """Stands in for ``asyncpg.Pool``; records every statement and its arguments."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, str, object]] = []
        self.rls: list[tuple] = []
        self.responses: list = []
        self.error: Exception | None = None
        self.transactions = 0

    @asynccontextmanager
    async def acquire(self):
        yield FakeConnection(self)


@pytest.fixture
def pool() -> FakePool:
    return FakePool()


@pytest.fixture
def db(pool: FakePool) -> Database:
    return Database(pool)


def _credential(**overrides) -> Credential:
    values = dict(
        id=CREDENTIAL_ID,
        user_id=TEST_USER_ID,
        provider=Provider.WHOOP,
        access_token="access-old",
        refresh_token="refresh-old",
        token_expires_at=T0,
    )
    values.update(overrides)
    return Credential(**values)


def _credential_row(**overrides) -> dict:
    row = {
        "id": CREDENTIAL_ID,
        "user_id": TEST_USER_ID,
        "provider": "whoop",
        "access_token": "access-new",
        "refresh_token": "refresh-new",
        "token_expires_at": T0 + timedelta(hours=1),
        "provider_user_id": None,
        "scope": "offline",
        "connected_at": T0,
        "last_sync_at": None,
        "is_active": True,
        "disconnected_at": None,
        "disconnect_reason": None,
    }
    row.update(overrides)
    return row


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------


class TestCredentialStore:
    @pytest.mark.asyncio
    async def test_update_tokens_is_conditional_on_what_was_read(
        self, db: Database, pool: FakePool
    ) -> None:
        pool.responses = [_credential_row()]
        tokens = OAuthTokens(
            "access-new", "refresh-new", T0 + timedelta(hours=1), scope="offline"
        )

        updated = await CredentialStore(db).update_tokens(_credential(), tokens)

        method, query, args = pool.calls[0]
        assert method == "fetchrow"
        assert "token_expires_at IS NOT DISTINCT FROM $6" in query
        assert "access_token = $7" in query
        assert args == (
            CREDENTIAL_ID,
            "access-new",
            "refresh-new",
            T0 + timedelta(hours=1),
            "offline",
            T0,
            "access-old",
        )
        assert updated.access_token == "access-new"
        assert pool.rls == [(str(TEST_USER_ID),)]

    @pytest.mark.asyncio
    async def test_lost_update_returns_none(self, db: Database, pool: FakePool) -> None:
        result = await CredentialStore(db).update_tokens(_credential(), OAuthTokens("a"))
        assert result is None

    @pytest.mark.asyncio
    async def test_unrotated_refresh_token_is_kept(self, db: Database, pool: FakePool) -> None:
        await CredentialStore(db).update_tokens(_credential(), OAuthTokens("a"))
        _, query, args = pool.calls[0]
        assert "refresh_token = COALESCE($3, refresh_token)" in query
        assert args[2] is None

    @pytest.mark.asyncio
    async def test_get_active_reads_aware_timestamps(self, db: Database, pool: FakePool) -> None:
        pool.responses = [_credential_row(token_expires_at=datetime(2026, 2, 23, 13, 0))]

        credential = await CredentialStore(db).get_active(TEST_USER_ID, Provider.WHOOP)

        assert pool.calls[0][2] == (TEST_USER_ID, "whoop")
        assert credential.provider is Provider.WHOOP
        assert credential.token_expires_at == T0 + timedelta(hours=1)

    @pytest.mark.asyncio
    async def test_save_connection_retires_old_row_in_one_transaction(
        self, db: Database, pool: FakePool
    ) -> None:
        pool.responses = [None, _credential_row(provider="oura")]
        tokens = OAuthTokens("access-new", "refresh-new", T0 + timedelta(hours=1))

        credential = await CredentialStore(db).save_connection(
            TEST_USER_ID, Provider.OURA, tokens, provider_user_id="u-1", now=T0
        )

        assert [c[0] for c in pool.calls] == ["execute", "fetchrow"]
        assert "disconnect_reason = 'replaced'" in pool.calls[0][1]
        assert pool.calls[0][2] == (TEST_USER_ID, "oura", T0)
        assert pool.calls[1][2][:4] == (TEST_USER_ID, "oura", "u-1", "access-new")
        assert pool.transactions == 1
        assert credential.provider is Provider.OURA

    @pytest.mark.asyncio
    async def test_deactivate_already_inactive(self, db: Database, pool: FakePool) -> None:
        assert not await CredentialStore(db).deactivate(
            _credential(), reason="user_disconnect", now=T0
        )
        assert pool.calls[0][2] == (CREDENTIAL_ID, T0, "user_disconnect")

    @pytest.mark.asyncio
    async def test_postgres_error_becomes_persistence_error(
        self, db: Database, pool: FakePool
    ) -> None:
        pool.error = asyncpg.PostgresError("relation does not exist")
        with pytest.raises(PersistenceError) as excinfo:
            await CredentialStore(db).list_active(TEST_USER_ID)
        assert isinstance(excinfo.value.__cause__, asyncpg.PostgresError)
        assert "credential listing" in str(excinfo.value)

    @pytest.mark.asyncio
    async def test_dropped_connection_becomes_persistence_error(
        self, db: Database, pool: FakePool
    ) -> None:
        pool.error = ConnectionResetError("connection reset by peer")
        with pytest.raises(PersistenceError):
            await CredentialStore(db).touch_last_sync(_credential(), T0)


# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------


class TestMetricStore:
    @pytest.mark.asyncio
    async def test_upsert_collapses_batch_duplicates(self, db: Database, pool: FakePool) -> None:
        first = NormalizedMetricRecord(
            Provider.OURA, MetricType.SLEEP, TEST_DATE, total_sleep_minutes=400.0
        )
        second = NormalizedMetricRecord(
            Provider.OURA, MetricType.SLEEP, TEST_DATE, total_sleep_minutes=410.0
        )

        written = await MetricStore(db).upsert_many(
            TEST_USER_ID, [first, second], synced_at=T0
        )

        assert written == 1
        method, query, rows = pool.calls[0]
        assert method == "executemany"
        assert query == " ".join(UPSERT_METRIC_SQL.split())
        assert len(rows) == 1
        assert dict(zip(METRIC_COLUMNS, rows[0]))["total_sleep_minutes"] == 410.0

    @pytest.mark.asyncio
    async def test_empty_batch_writes_nothing(self, db: Database, pool: FakePool) -> None:
        assert await MetricStore(db).upsert_many(TEST_USER_ID, [], synced_at=T0) == 0
        assert pool.calls == []

    @pytest.mark.asyncio
    async def test_query_numbers_placeholders_in_order(
        self, db: Database, pool: FakePool
    ) -> None:
        await MetricStore(db).query(
            TEST_USER_ID, metric_type=MetricType.SLEEP, start=TEST_DATE, limit=10
        )
        _, query, args = pool.calls[0]
        assert "metric_type = $2" in query
        assert "metric_date >= $3" in query
        assert query.endswith("LIMIT $4")
        assert args == (TEST_USER_ID, "sleep", TEST_DATE, 10)


# ---------------------------------------------------------------------------
# Sync status
# ---------------------------------------------------------------------------


class TestSyncStatusStore:
    @pytest.mark.asyncio
    async def test_failed_attempt_keeps_last_success(self, db: Database, pool: FakePool) -> None:
        status = SyncStatusRecord(
            provider=Provider.WHOOP,
            last_attempt_at=T0,
            outcome="failure",
            error_kind="rate_limited",
        )

        await SyncStatusStore(db).upsert(TEST_USER_ID, status)

        _, query, args = pool.calls[0]
        assert (
            "last_success_at = COALESCE(EXCLUDED.last_success_at, "
            "wearable_sync_status.last_success_at)"
        ) in query
        assert "ON CONFLICT (user_id, provider)" in query
        assert args[:5] == (TEST_USER_ID, "whoop", T0, None, "failure")

    @pytest.mark.asyncio
    async def test_for_user(self, db: Database, pool: FakePool) -> None:
        pool.responses = [
            [
                {
                    "provider": "oura",
                    "last_attempt_at": T0,
                    "outcome": "success",
                    "last_success_at": T0,
                    "records_synced": 7,
                }
            ]
        ]
        records = await SyncStatusStore(db).for_user(TEST_USER_ID)
        assert records[0].provider is Provider.OURA
        assert records[0].records_synced == 7
