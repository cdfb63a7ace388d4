"""Tests for the property record cache."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

from epc_reconciler.db.connection import check_connectivity, wait_for_database
from epc_reconciler.db.models import AddressRecord, ConfidenceTier, EpcRecord, PropertyRecord
from epc_reconciler.db.property_cache import (
    InMemoryPropertyCache,
    PostgresPropertyCache,
    cache_key,
    create_property_cache,
)

RECORD = PropertyRecord(
    property_id="prop-7",
    address=AddressRecord(postcode="LS1 1AA", display_address="12 Acacia Avenue", confidence=ConfidenceTier.HIGH),
    epc=EpcRecord(rating="C", confidence=ConfidenceTier.MEDIUM),
)


def _mock_get_connection(row=None):
    """Patchable stand-in for get_connection, returning the cursor it hands out."""
    cursor = MagicMock()
    cursor.execute = AsyncMock()
    cursor.fetchone = AsyncMock(return_value=row)
    conn = MagicMock()
    conn.cursor.return_value.__aenter__.return_value = cursor
    get_connection = MagicMock()
    get_connection.return_value.__aenter__.return_value = conn
    return get_connection, cursor


class TestCacheKey:
    def test_prefix(self):
        assert cache_key("prop-7") == "propertyData-prop-7"


class TestInMemoryPropertyCache:
    def test_round_trip(self):
        cache = InMemoryPropertyCache()

        asyncio.run(cache.set(RECORD))
        loaded = asyncio.run(cache.get("prop-7"))

        assert loaded == RECORD
        assert loaded is not RECORD
        assert cache.keys() == ["propertyData-prop-7"]

    def test_missing_record(self):
        assert asyncio.run(InMemoryPropertyCache().get("nope")) is None

    def test_stored_copy_is_isolated(self):
        cache = InMemoryPropertyCache()
        record = RECORD.model_copy(deep=True)
        asyncio.run(cache.set(record))

        record.epc.rating = "G"

        assert asyncio.run(cache.get("prop-7")).epc.rating == "C"


class TestPostgresPropertyCache:
    def test_get_existing_record(self):
        get_connection, cursor = _mock_get_connection(row={"payload": RECORD.model_dump(mode="json")})
        cache = PostgresPropertyCache()

        with patch("epc_reconciler.db.property_cache.get_connection", get_connection):
            loaded = asyncio.run(cache.get("prop-7"))

        assert loaded == RECORD
        select_call = cursor.execute.await_args_list[-1]
        assert select_call.args[1] == ("propertyData-prop-7",)

    def test_get_missing_record(self):
        get_connection, _ = _mock_get_connection(row=None)

        with patch("epc_reconciler.db.property_cache.get_connection", get_connection):
            assert asyncio.run(PostgresPropertyCache().get("prop-7")) is None

    def test_set_upserts_payload(self):
        get_connection, cursor = _mock_get_connection()
        cache = PostgresPropertyCache()

        with patch("epc_reconciler.db.property_cache.get_connection", get_connection):
            asyncio.run(cache.set(RECORD))

        sql, params = cursor.execute.await_args_list[-1].args
        assert "ON CONFLICT (cache_key) DO UPDATE" in sql
        assert params[0] == "propertyData-prop-7"
        assert params[1].obj["epc"]["rating"] == "C"

    def test_table_created_once(self):
        get_connection, cursor = _mock_get_connection(row=None)
        cache = PostgresPropertyCache()

        with patch("epc_reconciler.db.property_cache.get_connection", get_connection):
            asyncio.run(cache.get("a"))
            asyncio.run(cache.get("b"))

        create_calls = [c for c in cursor.execute.await_args_list if "CREATE TABLE" in c.args[0]]
        assert len(create_calls) == 1


class TestCreatePropertyCache:
    def test_in_memory_without_database(self):
        assert isinstance(create_property_cache(None), InMemoryPropertyCache)

    def test_postgres_with_database(self):
        assert isinstance(create_property_cache("postgresql://localhost/epc"), PostgresPropertyCache)


class TestDatabaseConnectivity:
    def test_unconfigured_database_is_unreachable(self, mock_env):
        assert asyncio.run(check_connectivity()) is False

    def test_wait_gives_up(self, mock_env):
        assert asyncio.run(wait_for_database(max_retries=2, retry_interval=0)) is False
