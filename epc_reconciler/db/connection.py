import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import psycopg
from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool

from epc_reconciler.utils.config import settings

logger = logging.getLogger(__name__)

# Connection pool - initialized lazily
_pool: Optional[AsyncConnectionPool] = None


async def _get_pool() -> AsyncConnectionPool:
    """Get or create the connection pool."""
    global _pool
    if _pool is None:
        if not settings.database_url:
            raise ValueError("DATABASE_URL is not configured")
        pool = AsyncConnectionPool(
            settings.database_url,
            min_size=1,
            max_size=10,
            kwargs={"row_factory": dict_row},
            open=False,
        )
        await pool.open()
        _pool = pool
    return _pool


@asynccontextmanager
async def get_connection() -> AsyncIterator[psycopg.AsyncConnection]:
    """Get a database connection from the pool."""
    pool = await _get_pool()
    async with pool.connection() as conn:
        yield conn


async def close_pool() -> None:
    """Close the connection pool."""
    global _pool
    if _pool is not None:
        await _pool.close()
        _pool = None


async def check_connectivity() -> bool:
    """Check database connectivity.

    Returns True if database is reachable, False otherwise.
    """
    try:
        async with get_connection() as conn:
            async with conn.cursor() as cur:
                await cur.execute("SELECT 1")
                return await cur.fetchone() is not None
    except (psycopg.Error, ValueError) as e:
        logger.debug("Database connectivity check failed: %s", e)
        return False


async def wait_for_database(max_retries: int = 5, retry_interval: float = 2.0) -> bool:
    """Wait for database to become available.

    Args:
        max_retries: Maximum number of connection attempts.
        retry_interval: Seconds to wait between retries.

    Returns:
        True if database became available, False if all retries exhausted.
    """
    for attempt in range(1, max_retries + 1):
        if await check_connectivity():
            logger.info("Database connection established on attempt %d", attempt)
            return True

        if attempt < max_retries:
            logger.warning(
                "Database not available (attempt %d/%d), retrying in %.1fs...",
                attempt,
                max_retries,
                retry_interval,
            )
            await asyncio.sleep(retry_interval)

    logger.error("Failed to connect to database after %d attempts", max_retries)
    return False
