"""Shared asyncpg pool for the subscriber and session-credential tables."""

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

import asyncpg

logger = logging.getLogger("subgate.db")

SCHEMA_PATH = os.path.join(os.path.dirname(__file__), "schema.sql")

# Seconds slept between pool attempts while Postgres is still starting
CONNECT_BACKOFF = (2, 4, 8, 8)

_pool: Optional[asyncpg.Pool] = None


async def init_db(dsn: str, min_size: int = 2, max_size: int = 10) -> asyncpg.Pool:
    """Open the process-wide pool.

    A database container that is still booting refuses connections for a
    few seconds, so the pool is retried on the ``CONNECT_BACKOFF`` schedule
    before the last error is re-raised.
    """
    global _pool
    attempts = len(CONNECT_BACKOFF) + 1
    for attempt, delay in enumerate((*CONNECT_BACKOFF, None), start=1):
        try:
            _pool = await asyncpg.create_pool(dsn, min_size=min_size, max_size=max_size)
        except (OSError, asyncpg.PostgresError, asyncpg.InterfaceError) as e:
            if delay is None:
                logger.error(f"Subscriber database unreachable after {attempts} attempts: {e}")
                raise
            logger.warning(f"Subscriber database not ready ({attempt}/{attempts}): {e}; retrying in {delay}s")
            await asyncio.sleep(delay)
        else:
            if attempt > 1:
                logger.info(f"Subscriber database reachable on attempt {attempt}")
            return _pool


async def close_db():
    global _pool
    pool, _pool = _pool, None
    if pool is not None:
        await pool.close()


def get_pool() -> asyncpg.Pool:
    if _pool is None:
        raise RuntimeError("Subscriber database pool is not open; call init_db() first")
    return _pool


@asynccontextmanager
async def get_connection():
    """Borrow a connection; entitlement and credential stores go through here."""
    async with get_pool().acquire() as conn:
        yield conn


async def apply_schema():
    """Create the subscribers and config tables when missing."""
    with open(SCHEMA_PATH, encoding="utf-8") as f:
        ddl = f.read()
    async with get_connection() as conn:
        await conn.execute(ddl)
    logger.info(f"Schema ensured from {os.path.basename(SCHEMA_PATH)}")
