"""Shared fixtures, in-memory stores and mock API helpers for wearable tests."""

from __future__ import annotations

import asyncio
import json
from dataclasses import replace
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable
from uuid import UUID, uuid4

import httpx
import pytest

from fitdash.wearables.base import (
    Credential,
    NormalizedMetricRecord,
    OAuthTokens,
    Provider,
    SyncStatusRecord,
)
from fitdash.wearables.config_loader import SyncConfig, load_sync_config
from fitdash.wearables.errors import PersistenceError, WearableError
from fitdash.wearables.oauth import PROVIDER_ENDPOINTS
from fitdash.wearables.sync.dedup import collapse_duplicates

# Fixtures directory
FIXTURES_DIR = Path(__file__).parent / "fixtures"

# Canonical test user ID
TEST_USER_ID = UUID("12345678-1234-5678-1234-567812345678")
TEST_DATE = date(2026, 2, 23)
T0 = datetime(2026, 2, 23, 12, 0, tzinfo=timezone.utc)


def load_fixture(name: str) -> Any:
    return json.loads((FIXTURES_DIR / name).read_text())


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = T0) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


# ---------------------------------------------------------------------------
# In-memory stores (same methods and semantics as the asyncpg stores)
# ---------------------------------------------------------------------------


class InMemoryCredentialStore:
    def __init__(self) -> None:
        self.rows: list[Credential] = []
        self.fail = False
        self.update_calls = 0
        self.update_delay = 0.0

    def _check(self) -> None:
        if self.fail:
            raise PersistenceError("database unavailable")

    def add(
        self,
        provider: Provider,
        *,
        user_id: UUID = TEST_USER_ID,
        access_token: str = "access-1",
        refresh_token: str | None = "refresh-1",
        expires_at: datetime | None = None,
    ) -> Credential:
        credential = Credential(
            id=uuid4(),
            user_id=user_id,
            provider=provider,
            access_token=access_token,
            refresh_token=refresh_token,
            token_expires_at=expires_at,
            connected_at=T0 - timedelta(days=7),
        )
        self.rows.append(credential)
        return replace(credential)

    def active_row(self, user_id: UUID, provider: Provider) -> Credential | None:
        for row in self.rows:
            if row.user_id == user_id and row.provider == provider and row.is_active:
                return row
        return None

    async def get_active(self, user_id: UUID, provider: Provider) -> Credential | None:
        self._check()
        row = self.active_row(user_id, provider)
        return replace(row) if row else None

    async def list_active(self, user_id: UUID) -> dict[Provider, Credential]:
        self._check()
        return {
            row.provider: replace(row)
            for row in self.rows
            if row.user_id == user_id and row.is_active
        }

    async def save_connection(
        self,
        user_id: UUID,
        provider: Provider,
        tokens: OAuthTokens,
        *,
        provider_user_id: str | None,
        now: datetime,
    ) -> Credential:
        self._check()
        previous = self.active_row(user_id, provider)
        if previous is not None:
            previous.is_active = False
            previous.disconnected_at = now
            previous.disconnect_reason = "replaced"
        credential = Credential(
            id=uuid4(),
            user_id=user_id,
            provider=provider,
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            token_expires_at=tokens.expires_at,
            provider_user_id=provider_user_id,
            scope=tokens.scope,
            connected_at=now,
        )
        self.rows.append(credential)
        return replace(credential)

    async def update_tokens(
        self, credential: Credential, tokens: OAuthTokens
    ) -> Credential | None:
        self._check()
        self.update_calls += 1
        if self.update_delay:
            await asyncio.sleep(self.update_delay)
        for row in self.rows:
            if (
                row.id == credential.id
                and row.is_active
                and row.token_expires_at == credential.token_expires_at
                and row.access_token == credential.access_token
            ):
                row.access_token = tokens.access_token
                row.refresh_token = tokens.refresh_token or row.refresh_token
                row.token_expires_at = tokens.expires_at
                row.scope = tokens.scope or row.scope
                return replace(row)
        return None

    async def deactivate(self, credential: Credential, *, reason: str, now: datetime) -> bool:
        self._check()
        for row in self.rows:
            if row.id == credential.id and row.is_active:
                row.is_active = False
                row.disconnected_at = now
                row.disconnect_reason = reason
                return True
        return False

    async def touch_last_sync(self, credential: Credential, when: datetime) -> None:
        self._check()
        for row in self.rows:
            if row.id == credential.id:
                row.last_sync_at = when


class InMemoryMetricStore:
    def __init__(self) -> None:
        self.rows: dict[tuple, NormalizedMetricRecord] = {}
        self.fail = False
        self.writes = 0

    async def upsert_many(
        self,
        user_id: UUID,
        records: list[NormalizedMetricRecord],
        *,
        synced_at: datetime,
    ) -> int:
        if self.fail:
            raise PersistenceError("metric upsert failed")
        batch = collapse_duplicates(records)
        for record in batch:
            self.rows[(str(user_id),) + record.natural_key] = record
        self.writes += 1
        return len(batch)

    def for_provider(self, provider: Provider) -> list[NormalizedMetricRecord]:
        return [r for r in self.rows.values() if r.provider == provider]


class InMemorySyncStatusStore:
    def __init__(self) -> None:
        self.rows: dict[tuple[UUID, Provider], SyncStatusRecord] = {}
        self.fail = False

    async def upsert(self, user_id: UUID, status: SyncStatusRecord) -> None:
        if self.fail:
            raise PersistenceError("status upsert failed")
        previous = self.rows.get((user_id, status.provider))
        stored = replace(status)
        if stored.last_success_at is None and previous is not None:
            stored.last_success_at = previous.last_success_at
        self.rows[(user_id, status.provider)] = stored

    async def for_user(self, user_id: UUID) -> list[SyncStatusRecord]:
        return [
            replace(record)
            for (uid, _), record in sorted(self.rows.items(), key=lambda kv: kv[0][1].value)
            if uid == user_id
        ]


# ---------------------------------------------------------------------------
# OAuth client double
# ---------------------------------------------------------------------------


class FakeOAuthClient:
    """Token-endpoint double that counts refreshes.

    ``on_refresh`` runs inside ``refresh`` (after a yield) so tests can
    simulate a concurrent writer committing mid-refresh.
    """

    def __init__(
        self,
        provider: Provider,
        clock: Callable[[], datetime],
        *,
        ttl_seconds: int = 3600,
        error: WearableError | None = None,
        on_refresh: Callable[[], None] | None = None,
    ) -> None:
        self.provider = provider
        self.endpoints = PROVIDER_ENDPOINTS[provider]
        self.configured = True
        self.supports_revocation = self.endpoints.revoke_url is not None
        self._clock = clock
        self._ttl = ttl_seconds
        self.error = error
        self.on_refresh = on_refresh
        self.refresh_calls: list[str] = []
        self.revoked: list[str] = []

    async def refresh(self, refresh_token: str) -> OAuthTokens:
        self.refresh_calls.append(refresh_token)
        await asyncio.sleep(0)
        if self.on_refresh is not None:
            self.on_refresh()
        if self.error is not None:
            raise self.error
        n = len(self.refresh_calls)
        return OAuthTokens(
            access_token=f"access-refreshed-{n}",
            refresh_token=None,
            expires_at=self._clock() + timedelta(seconds=self._ttl),
        )

    async def revoke(self, token: str) -> bool:
        self.revoked.append(token)
        return True


# ---------------------------------------------------------------------------
# HTTP helpers
# ---------------------------------------------------------------------------


class Pages(list):
    """Route value served one element per request, in order (last one repeats)."""


class RecordingHandler:
    """httpx.MockTransport handler routing on URL path.

    ``routes`` maps a path to a JSON body (dict or list), an
    ``httpx.Response``, or ``Pages`` of those.
    """

    def __init__(self, routes: dict[str, Any]) -> None:
        self.routes = routes
        self.requests: list[httpx.Request] = []
        self._served: dict[str, int] = {}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path not in self.routes:
            return httpx.Response(404, json={"error": "not found"})
        route = self.routes[path]
        if isinstance(route, Pages):
            index = self._served.get(path, 0)
            self._served[path] = index + 1
            route = route[min(index, len(route) - 1)]
        if isinstance(route, httpx.Response):
            return route
        return httpx.Response(200, json=route)

    def paths(self) -> list[str]:
        return [r.url.path for r in self.requests]

    def requests_to(self, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path == path]


def mock_client(handler: RecordingHandler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def sync_config() -> SyncConfig:
    """Load the bundled sync config for tests."""
    return load_sync_config()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def credential_store() -> InMemoryCredentialStore:
    return InMemoryCredentialStore()


@pytest.fixture
def metric_store() -> InMemoryMetricStore:
    return InMemoryMetricStore()


@pytest.fixture
def status_store() -> InMemorySyncStatusStore:
    return InMemorySyncStatusStore()
