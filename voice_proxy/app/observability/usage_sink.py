"""Best-effort Postgres sink for provider usage records."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any

import asyncpg

from ..routing.health import UsageRecord

_LOGGER = logging.getLogger(__name__)

CREATE_TABLE_SQL = """
    CREATE TABLE IF NOT EXISTS provider_usage (
        id BIGSERIAL PRIMARY KEY,
        provider TEXT NOT NULL,
        outcome TEXT NOT NULL,
        latency_ms DOUBLE PRECISION NOT NULL,
        error_kind TEXT,
        error_message TEXT,
        attempt INTEGER,
        recorded_at TIMESTAMPTZ NOT NULL
    )
"""

INSERT_SQL = """
    INSERT INTO provider_usage (provider, outcome, latency_ms, error_kind, error_message, attempt, recorded_at)
    VALUES ($1, $2, $3, $4, $5, $6, $7)
"""

PoolFactory = Callable[..., Awaitable[Any]]


class DbUsageSink:
    """Writes usage records to Postgres without affecting provider calls.

    The sink owns its connection pool: ``start()`` opens it and creates the
    table, ``close()`` releases it. Records arriving while no pool is open
    are dropped. Write failures are logged at debug level and never raised.
    """

    def __init__(self, dsn: str, *, max_pool_size: int = 10, pool_factory: PoolFactory = asyncpg.create_pool) -> None:
        self._dsn = dsn
        self._max_pool_size = max_pool_size
        self._pool_factory = pool_factory
        self._pool: Any | None = None

    @property
    def is_started(self) -> bool:
        return self._pool is not None

    async def start(self) -> None:
        """Opens the pool once and ensures the usage table exists."""
        if self._pool is None:
            _LOGGER.debug("Creating usage DB pool.", extra={"max_size": self._max_pool_size})
            self._pool = await self._pool_factory(self._dsn, max_size=self._max_pool_size)
        await self._execute("ensure_table", CREATE_TABLE_SQL, ())

    async def close(self) -> None:
        pool = self._pool
        self._pool = None
        if pool is not None:
            _LOGGER.debug("Closing usage DB pool.")
            await pool.close()

    async def record(self, usage: UsageRecord) -> None:
        error = usage.error
        await self._execute(
            "record_usage",
            INSERT_SQL,
            (
                usage.provider,
                usage.outcome,
                usage.latency_ms,
                error.kind.value if error else None,
                error.message if error else None,
                error.attempt if error else None,
                usage.timestamp,
            ),
        )

    async def _execute(self, operation_name: str, query: str, args: tuple[Any, ...]) -> None:
        """Runs a single SQL statement and logs failures without raising."""
        if self._pool is None:
            _LOGGER.debug("Usage DB pool not started; dropping %s", operation_name)
            return
        try:
            async with self._pool.acquire() as conn:
                await conn.execute(query, *args)
        except Exception:
            _LOGGER.debug("Usage DB write failed during %s", operation_name, exc_info=True)
