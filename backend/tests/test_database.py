"""
Tests for the key-value store backends.
"""
from unittest.mock import MagicMock, patch

import pytest

from db.database import (
    MemoryKeyValueStore,
    PostgresKeyValueStore,
    StorageQuotaExceeded,
    _normalize_db_url,
    create_store,
)


class TestMemoryStore:
    def test_get_set_remove(self):
        store = MemoryKeyValueStore()
        store.set("a", "1")
        assert store.get("a") == "1"
        store.remove("a")
        store.remove("a")
        assert store.get("a") is None

    def test_quota_counts_keys_and_values(self):
        store = MemoryKeyValueStore(max_bytes=10)
        store.set("ab", "1234")
        with pytest.raises(StorageQuotaExceeded):
            store.set("cd", "12345")
        # overwriting an existing key only counts the new value
        store.set("ab", "12345678")
        assert store.get("ab") == "12345678"

    def test_namespaces_are_isolated(self):
        store = MemoryKeyValueStore()
        one = store.namespace("client:1")
        two = store.namespace("client:2")
        one.set("progress", "x")

        assert two.get("progress") is None
        assert one.keys() == ["progress"]
        assert store.keys() == ["client:1:progress"]


def test_normalize_db_url():
    assert _normalize_db_url("postgres://h/db") == "postgres://h/db?sslmode=require"
    assert _normalize_db_url("postgres://h/db?x=1") == "postgres://h/db?x=1&sslmode=require"
    assert _normalize_db_url("postgres://h/db?sslmode=disable") == "postgres://h/db?sslmode=disable"
    with pytest.raises(ValueError):
        _normalize_db_url("")


def test_create_store_defaults_to_memory():
    assert isinstance(create_store(""), MemoryKeyValueStore)


class TestPostgresStore:
    @pytest.fixture
    def cursor(self):
        return MagicMock()

    @pytest.fixture
    def pg(self, cursor):
        conn = MagicMock()
        conn.cursor.return_value = cursor
        with patch("db.database.psycopg2_pool.ThreadedConnectionPool") as pool_cls:
            pool_cls.return_value.getconn.return_value = conn
            store = PostgresKeyValueStore("postgres://h/db")
        return store

    def test_init_creates_table(self, pg, cursor):
        assert "CREATE TABLE IF NOT EXISTS kv_store" in cursor.execute.call_args_list[0].args[0]
        pg._pool.getconn.return_value.commit.assert_called()

    def test_get_returns_value(self, pg, cursor):
        cursor.fetchone.return_value = {"value": "hello"}
        assert pg.get("k") == "hello"
        cursor.fetchone.return_value = None
        assert pg.get("missing") is None

    def test_set_upserts(self, pg, cursor):
        pg.set("k", "v")
        sql, params = cursor.execute.call_args.args
        assert "ON CONFLICT (key) DO UPDATE" in sql
        assert params == ("k", "v")

    def test_keys(self, pg, cursor):
        cursor.fetchall.return_value = [{"key": "a"}, {"key": "b"}]
        assert pg.keys() == ["a", "b"]
