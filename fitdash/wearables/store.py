"""Persistence for credentials, normalized metrics and sync status.

All three stores sit on top of ``fitdash.services.database.Database`` and
translate driver failures (``asyncpg`` errors, dropped sockets, command
timeouts) into ``PersistenceError`` so the orchestrator can classify them.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import contextmanager
from datetime import date, datetime
from typing import Any, Iterator, Sequence
from uuid import UUID

import asyncpg

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
from fitdash.wearables.sync.dedup import (
    METRIC_COLUMNS,
    UPSERT_METRIC_SQL,
    build_upsert_query,
    collapse_duplicates,
    metric_row,
)

logger = logging.getLogger("fitdash.wearables.store")

_DB_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError)


@contextmanager
def _persistence(operation: str) -> Iterator[None]:
    try:
        yield
    except _DB_ERRORS as exc:
        logger.error("Database error during %s: %s", operation, exc.__class__.__name__)
        raise PersistenceError(f"{operation} failed: {exc.__class__.__name__}: {exc}") from exc


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------

_SELECT_ACTIVE = """
    SELECT * FROM user_integrations
    WHERE user_id = $1 AND provider = $2 AND is_active
"""

_SELECT_ALL_ACTIVE = """
    SELECT * FROM user_integrations
    WHERE user_id = $1 AND is_active
    ORDER BY provider
"""

_DEACTIVATE_PAIR = """
    UPDATE user_integrations
    SET is_active = FALSE, disconnected_at = $3, disconnect_reason = 'replaced', updated_at = NOW()
    WHERE user_id = $1 AND provider = $2 AND is_active
"""

_INSERT_CREDENTIAL = """
    INSERT INTO user_integrations (
        user_id, provider, provider_user_id, access_token, refresh_token,
        token_expires_at, scope, connected_at, is_active
    )
    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, TRUE)
    RETURNING *
"""

# Conditional update: only applies if nobody else refreshed since we read
_UPDATE_TOKENS = """
    UPDATE user_integrations
    SET access_token = $2,
        refresh_token = COALESCE($3, refresh_token),
        token_expires_at = $4,
        scope = COALESCE($5, scope),
        updated_at = NOW()
    WHERE id = $1
      AND is_active
      AND token_expires_at IS NOT DISTINCT FROM $6
      AND access_token = $7
    RETURNING *
"""

_DEACTIVATE = """
    UPDATE user_integrations
    SET is_active = FALSE, disconnected_at = $2, disconnect_reason = $3, updated_at = NOW()
    WHERE id = $1 AND is_active
    RETURNING id
"""

_TOUCH_LAST_SYNC = """
    UPDATE user_integrations
    SET last_sync_at = $2, updated_at = NOW()
    WHERE id = $1
"""


class CredentialStore:
    """The Token Store: one active ``user_integrations`` row per (user, provider)."""

    def __init__(self, db: Database) -> None:
        self._db = db

    async def get_active(self, user_id: UUID, provider: Provider) -> Credential | None:
        with _persistence("credential lookup"):
            row = await self._db.fetchrow(
                _SELECT_ACTIVE, user_id, provider.value, user_id=user_id
            )
        return Credential.from_record(row) if row else None

    async def list_active(self, user_id: UUID) -> dict[Provider, Credential]:
        with _persistence("credential listing"):
            rows = await self._db.fetch(_SELECT_ALL_ACTIVE, user_id, user_id=user_id)
        out: dict[Provider, Credential] = {}
        for row in rows:
            credential = Credential.from_record(row)
            out[credential.provider] = credential
        return out

    async def save_connection(
        self,
        user_id: UUID,
        provider: Provider,
        tokens: OAuthTokens,
        *,
        provider_user_id: str | None,
        now: datetime,
    ) -> Credential:
        """Store a freshly authorized credential, retiring any previous one."""
        with _persistence("credential save"):
            async with self._db.transaction(user_id=user_id) as conn:
                await conn.execute(_DEACTIVATE_PAIR, user_id, provider.value, now)
                row = await conn.fetchrow(
                    _INSERT_CREDENTIAL,
                    user_id,
                    provider.value,
                    provider_user_id,
                    tokens.access_token,
                    tokens.refresh_token,
                    tokens.expires_at,
                    tokens.scope,
                    now,
                )
        logger.info("Stored %s credential for user %s", provider.value, user_id)
        return Credential.from_record(row)

    async def update_tokens(
        self, credential: Credential, tokens: OAuthTokens
    ) -> Credential | None:
        """Persist refreshed tokens if the row is unchanged since ``credential`` was read.

        Returns the updated credential, or None when another writer got there
        first (the caller should re-read).
        """
        with _persistence("token update"):
            row = await self._db.fetchrow(
                _UPDATE_TOKENS,
                credential.id,
                tokens.access_token,
                tokens.refresh_token,
                tokens.expires_at,
                tokens.scope,
                credential.token_expires_at,
                credential.access_token,
                user_id=credential.user_id,
            )
        return Credential.from_record(row) if row else None

    async def deactivate(self, credential: Credential, *, reason: str, now: datetime) -> bool:
        """Soft-delete the credential. False if it was already inactive."""
        with _persistence("credential deactivate"):
            result = await self._db.fetchval(
                _DEACTIVATE, credential.id, now, reason, user_id=credential.user_id
            )
        if result is not None:
            logger.info(
                "Deactivated %s credential for user %s (%s)",
                credential.provider.value, credential.user_id, reason,
            )
        return result is not None

    async def touch_last_sync(self, credential: Credential, when: datetime) -> None:
        with _persistence("last-sync update"):
            await self._db.execute(
                _TOUCH_LAST_SYNC, credential.id, when, user_id=credential.user_id
            )


# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------


class MetricStore:
    """Normalized metric rows, upserted on their natural key."""

    def __init__(self, db: Database) -> None:
        self._db = db

    async def upsert_many(
        self,
        user_id: UUID,
        records: Sequence[NormalizedMetricRecord],
        *,
        synced_at: datetime,
    ) -> int:
        """Write all records in one transaction. Returns the number of rows written."""
        batch = collapse_duplicates(records)
        if not batch:
            return 0
        rows = [metric_row(user_id, record, synced_at) for record in batch]
        with _persistence("metric upsert"):
            await self._db.executemany(UPSERT_METRIC_SQL, rows, user_id=user_id)
        logger.debug("Upserted %d metric rows for user %s", len(rows), user_id)
        return len(rows)

    async def query(
        self,
        user_id: UUID,
        *,
        metric_type: MetricType | None = None,
        provider: Provider | None = None,
        start: date | None = None,
        end: date | None = None,
        limit: int = 500,
    ) -> list[dict[str, Any]]:
        clauses = ["user_id = $1"]
        args: list[Any] = [user_id]
        if metric_type is not None:
            args.append(metric_type.value)
            clauses.append(f"metric_type = ${len(args)}")
        if provider is not None:
            args.append(provider.value)
            clauses.append(f"provider = ${len(args)}")
        if start is not None:
            args.append(start)
            clauses.append(f"metric_date >= ${len(args)}")
        if end is not None:
            args.append(end)
            clauses.append(f"metric_date <= ${len(args)}")
        args.append(limit)
        query = (
            f"SELECT {', '.join(METRIC_COLUMNS)} FROM wearable_metrics "
            f"WHERE {' AND '.join(clauses)} "
            f"ORDER BY metric_date DESC, provider, metric_type, record_key "
            f"LIMIT ${len(args)}"
        )
        with _persistence("metric listing"):
            rows = await self._db.fetch(query, *args, user_id=user_id)
        return [dict(row) for row in rows]


# ---------------------------------------------------------------------------
# Sync status
# ---------------------------------------------------------------------------

_STATUS_COLUMNS = [
    "user_id",
    "provider",
    "last_attempt_at",
    "last_success_at",
    "outcome",
    "error_kind",
    "error_detail",
    "records_synced",
]

# last_success_at only moves when the new attempt succeeded
_UPSERT_STATUS = build_upsert_query(
    "wearable_sync_status",
    _STATUS_COLUMNS,
    ["user_id", "provider"],
    update_expressions={
        "last_success_at": (
            "COALESCE(EXCLUDED.last_success_at, wearable_sync_status.last_success_at)"
        ),
    },
)


class SyncStatusStore:
    def __init__(self, db: Database) -> None:
        self._db = db

    async def upsert(self, user_id: UUID, status: SyncStatusRecord) -> None:
        with _persistence("sync status upsert"):
            await self._db.execute(
                _UPSERT_STATUS,
                user_id,
                status.provider.value,
                status.last_attempt_at,
                status.last_success_at,
                status.outcome,
                status.error_kind,
                status.error_detail,
                status.records_synced,
                user_id=user_id,
            )

    async def for_user(self, user_id: UUID) -> list[SyncStatusRecord]:
        with _persistence("sync status listing"):
            rows = await self._db.fetch(
                "SELECT * FROM wearable_sync_status WHERE user_id = $1 ORDER BY provider",
                user_id,
                user_id=user_id,
            )
        return [SyncStatusRecord.from_record(row) for row in rows]
