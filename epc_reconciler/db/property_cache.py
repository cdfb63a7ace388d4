"""Keyed store for reconciled property records, ``propertyData-<id>``."""

import logging
from typing import Optional, Protocol

from psycopg.types.json import Jsonb

from epc_reconciler.db.connection import get_connection
from epc_reconciler.db.models import PropertyRecord

logger = logging.getLogger(__name__)

CACHE_KEY_PREFIX = "propertyData-"

CREATE_TABLE_SQL = """
    CREATE TABLE IF NOT EXISTS property_cache (
        cache_key TEXT PRIMARY KEY,
        payload JSONB NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
"""


def cache_key(property_id: str) -> str:
    return f"{CACHE_KEY_PREFIX}{property_id}"


class PropertyCache(Protocol):
    async def get(self, property_id: str) -> Optional[PropertyRecord]: ...

    async def set(self, record: PropertyRecord) -> None: ...


class InMemoryPropertyCache:
    """Process-local cache; records are stored serialized so callers never share instances."""

    def __init__(self):
        self._entries: dict[str, dict] = {}

    async def get(self, property_id: str) -> Optional[PropertyRecord]:
        payload = self._entries.get(cache_key(property_id))
        if payload is None:
            return None
        return PropertyRecord.model_validate(payload)

    async def set(self, record: PropertyRecord) -> None:
        self._entries[cache_key(record.property_id)] = record.model_dump(mode="json")

    def keys(self) -> list[str]:
        return list(self._entries)


class PostgresPropertyCache:
    """PostgreSQL-backed cache in the ``property_cache`` table."""

    def __init__(self):
        self._table_ready = False

    async def _ensure_table(self, conn) -> None:
        if self._table_ready:
            return
        async with conn.cursor() as cur:
            await cur.execute(CREATE_TABLE_SQL)
        self._table_ready = True

    async def get(self, property_id: str) -> Optional[PropertyRecord]:
        async with get_connection() as conn:
            await self._ensure_table(conn)
            async with conn.cursor() as cur:
                await cur.execute(
                    "SELECT payload FROM property_cache WHERE cache_key = %s",
                    (cache_key(property_id),),
                )
                row = await cur.fetchone()
        if row is None:
            return None
        return PropertyRecord.model_validate(row["payload"])

    async def set(self, record: PropertyRecord) -> None:
        async with get_connection() as conn:
            await self._ensure_table(conn)
            async with conn.cursor() as cur:
                await cur.execute(
                    """
                    INSERT INTO property_cache (cache_key, payload, updated_at)
                    VALUES (%s, %s, now())
                    ON CONFLICT (cache_key) DO UPDATE
                    SET payload = EXCLUDED.payload, updated_at = now()
                    """,
                    (cache_key(record.property_id), Jsonb(record.model_dump(mode="json"))),
                )
        logger.debug("Stored %s", cache_key(record.property_id))


def create_property_cache(database_url: Optional[str]) -> PropertyCache:
    """PostgreSQL cache when a database is configured, in-memory otherwise."""
    if database_url:
        return PostgresPropertyCache()
    return InMemoryPropertyCache()
