"""asyncpg database handle with RLS context.

Every unit of work gets a connection inside a transaction where
``app.current_user_id`` is set transaction-locally, so Postgres Row-Level
Security policies see the correct identity.  The value disappears when the
connection is returned to the pool.

The ``Database`` object is created once at app startup and handed to the
stores explicitly; nothing in the wearable core reaches for a global pool.
"""

from __future__ import annotations

import json
import logging
import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncGenerator

import asyncpg

from fitdash.config import Settings, get_settings

logger = logging.getLogger("fitdash.db")

SCHEMA_PATH = Path(__file__).parent / "schema.sql"


async def _init_connection(conn: asyncpg.Connection) -> None:
    # json/jsonb columns round-trip as Python dicts and lists
    for type_name in ("json", "jsonb"):
        await conn.set_type_codec(
            type_name, encoder=json.dumps, decoder=json.loads, schema="pg_catalog"
        )


class Database:
    """Thin wrapper around an ``asyncpg.Pool``.

    Usage::

        db = await Database.connect(settings)
        async with db.transaction(user_id=user_id) as conn:
            rows = await conn.fetch("SELECT * FROM wearable_metrics WHERE user_id = $1", user_id)
        await db.close()
    """

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    @classmethod
    async def connect(cls, settings: Settings | None = None) -> "Database":
        """Create the connection pool. Call once at app startup."""
        s = settings or get_settings()
        pool = await asyncpg.create_pool(
            s.database_url,
            min_size=s.database_pool_min_size,
            max_size=s.database_pool_max_size,
            command_timeout=s.database_command_timeout,
            init=_init_connection,
        )
        logger.info(
            "Database pool initialized (min=%d, max=%d)",
            s.database_pool_min_size,
            s.database_pool_max_size,
        )
        return cls(pool)

    async def close(self) -> None:
        """Drain the pool. Call at app shutdown."""
        await self._pool.close()
        logger.info("Database pool closed")

    async def apply_schema(self) -> None:
        """Create tables and indexes if they do not exist."""
        sql = SCHEMA_PATH.read_text(encoding="utf-8")
        async with self._pool.acquire() as conn:
            await conn.execute(sql)
        logger.info("Schema applied from %s", SCHEMA_PATH.name)

    @asynccontextmanager
    async def transaction(
        self, user_id: uuid.UUID | None = None
    ) -> AsyncGenerator[asyncpg.Connection, None]:
        """Acquire a connection and open a transaction with RLS variables set."""
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                if user_id:
                    # SET LOCAL does not accept bind parameters; set_config(..., true) is equivalent
                    await conn.execute(
                        "SELECT set_config('app.current_user_id', $1, true)", str(user_id)
                    )
                yield conn

    async def execute(self, query: str, *args: Any, user_id: uuid.UUID | None = None) -> str:
        """Execute a single statement with RLS context and return status."""
        async with self.transaction(user_id=user_id) as conn:
            return await conn.execute(query, *args)

    async def executemany(
        self, query: str, args: list[tuple], user_id: uuid.UUID | None = None
    ) -> None:
        async with self.transaction(user_id=user_id) as conn:
            await conn.executemany(query, args)

    async def fetch(
        self, query: str, *args: Any, user_id: uuid.UUID | None = None
    ) -> list[asyncpg.Record]:
        """Fetch rows with RLS context."""
        async with self.transaction(user_id=user_id) as conn:
            return await conn.fetch(query, *args)

    async def fetchrow(
        self, query: str, *args: Any, user_id: uuid.UUID | None = None
    ) -> asyncpg.Record | None:
        """Fetch a single row with RLS context."""
        async with self.transaction(user_id=user_id) as conn:
            return await conn.fetchrow(query, *args)

    async def fetchval(self, query: str, *args: Any, user_id: uuid.UUID | None = None) -> Any:
        async with self.transaction(user_id=user_id) as conn:
            return await conn.fetchval(query, *args)
