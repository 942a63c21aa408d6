# newsroom/services/db_service.py
from __future__ import annotations

import asyncio
import os
from contextlib import asynccontextmanager
from time import monotonic
from typing import Any, AsyncIterator, List, Optional
from urllib.parse import urlparse

import asyncpg

from newsroom.config import require_database_url
from newsroom.core.logging import get_logger

logger = get_logger()

APPLICATION_NAME = "newsroom-ingest"
STATEMENT_TIMEOUT_MS = int(os.getenv("STATEMENT_TIMEOUT_MS", "30000"))
IDLE_IN_TX_TIMEOUT_MS = int(os.getenv("IDLE_IN_TX_TIMEOUT_MS", "60000"))
LOCK_TIMEOUT_MS = int(os.getenv("LOCK_TIMEOUT_MS", "5000"))
DB_POOL_MIN_SIZE = int(os.getenv("DB_POOL_MIN_SIZE", "1"))
DB_POOL_MAX_SIZE = int(os.getenv("DB_POOL_MAX_SIZE", "4"))
DEFAULT_QUERY_TIMEOUT_MS = int(os.getenv("DEFAULT_QUERY_TIMEOUT_MS", "30000"))
SLOW_QUERY_THRESHOLD_MS = 1_000


def normalize_database_url(raw_dsn: str) -> str:
    """
    Rewrite a SQLAlchemy-style scheme (postgresql+asyncpg://) to the plain
    postgresql:// that asyncpg accepts. Nothing else is touched.
    """
    raw_dsn = raw_dsn.strip()
    if raw_dsn.startswith("postgresql+asyncpg://"):
        raw_dsn = "postgresql://" + raw_dsn[len("postgresql+asyncpg://"):]
    return raw_dsn


# --------------------------------------------------------------------
# Lightweight asyncpg pool + helpers
# --------------------------------------------------------------------
_pool: asyncpg.Pool | None = None
_pool_lock: asyncio.Lock | None = None


def _get_lock() -> asyncio.Lock:
    global _pool_lock
    if _pool_lock is None:
        _pool_lock = asyncio.Lock()
    return _pool_lock


async def ensure_pool() -> asyncpg.Pool:
    global _pool
    if _pool is not None:
        return _pool

    async with _get_lock():
        if _pool is not None:
            return _pool

        final_dsn = normalize_database_url(require_database_url())
        parsed = urlparse(final_dsn)
        logger.info(
            "db_pool_initializing",
            dsn_host=parsed.hostname,
            dsn_port=parsed.port,
            application_name=APPLICATION_NAME,
        )
        _pool = await asyncpg.create_pool(
            dsn=final_dsn,
            min_size=DB_POOL_MIN_SIZE,
            max_size=DB_POOL_MAX_SIZE,
            command_timeout=60,
            timeout=60,
            statement_cache_size=0,
            max_inactive_connection_lifetime=30,
            server_settings={
                "application_name": APPLICATION_NAME,
                "statement_timeout": str(STATEMENT_TIMEOUT_MS),
                "idle_in_transaction_session_timeout": str(IDLE_IN_TX_TIMEOUT_MS),
                "lock_timeout": str(LOCK_TIMEOUT_MS),
            },
        )
        return _pool


async def close_pool() -> None:
    global _pool
    if _pool is None:
        return
    pool, _pool = _pool, None
    await pool.close()
    logger.info("db_pool_closed")


async def _execute_with_timing(
    conn: asyncpg.Connection,
    method: str,
    query: str,
    *args: Any,
    timeout: Optional[float] = None,
) -> Any:
    start_ms = monotonic() * 1000
    try:
        func = getattr(conn, method)
        effective_timeout = (
            timeout if timeout is not None else DEFAULT_QUERY_TIMEOUT_MS / 1000
        )
        return await func(query, *args, timeout=effective_timeout)
    finally:
        duration_ms = (monotonic() * 1000) - start_ms
        if duration_ms >= SLOW_QUERY_THRESHOLD_MS:
            logger.warning(
                "db_slow_query",
                duration_ms=round(duration_ms, 2),
                method=method,
                arg_count=len(args),
                query_snippet=query.strip().split("\n")[0][:200],
            )


@asynccontextmanager
async def connection() -> AsyncIterator[asyncpg.Connection]:
    pool = await ensure_pool()
    async with pool.acquire() as conn:
        yield conn


async def fetch(
    query: str,
    *args: Any,
    timeout: Optional[float] = None,
) -> List[asyncpg.Record]:
    async with connection() as conn:
        return await _execute_with_timing(conn, "fetch", query, *args, timeout=timeout)


async def fetchval(query: str, *args: Any) -> Any:
    async with connection() as conn:
        return await _execute_with_timing(conn, "fetchval", query, *args)


async def execute(
    query: str,
    *args: Any,
    timeout: Optional[float] = None,
) -> str:
    async with connection() as conn:
        return await _execute_with_timing(conn, "execute", query, *args, timeout=timeout)


@asynccontextmanager
async def run_in_transaction(
    *,
    isolation: Optional[str] = None,
    readonly: bool = False,
) -> AsyncIterator[asyncpg.Connection]:
    pool = await ensure_pool()
    async with pool.acquire() as conn:
        tx = conn.transaction(isolation=isolation, readonly=readonly)
        await tx.start()
        try:
            yield conn
        except Exception:
            await tx.rollback()
            raise
        else:
            await tx.commit()


async def fetchrow_with_conn(
    conn: asyncpg.Connection,
    query: str,
    *args: Any,
    timeout: Optional[float] = None,
) -> Optional[asyncpg.Record]:
    return await _execute_with_timing(conn, "fetchrow", query, *args, timeout=timeout)
