"""Key-value storage for onboarding progress, images and submissions.

Values are plain strings (JSON documents for structured data), mirroring the
browser storage the wizard originally relied on. Two backends:

  - MemoryKeyValueStore: process-local dict, optional byte quota.
  - PostgresKeyValueStore: one row per (namespace, key) in ``kv_store``.

``NamespacedStore`` gives each client its own key space on top of either.
"""

import logging
import os
import threading
from typing import Dict, List, Optional

import psycopg2
from psycopg2 import pool as psycopg2_pool
from psycopg2.extras import RealDictCursor

logger = logging.getLogger(__name__)


DATABASE_URL = os.getenv("DATABASE_URL", "")


class StorageQuotaExceeded(Exception):
    """Raised when a write would exceed the store's byte quota."""


# ---------------------------------------------------------------- base ---

class KeyValueStore:
    """Minimal string key-value interface (get / set / remove / keys)."""

    def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def set(self, key: str, value: str) -> None:
        raise NotImplementedError

    def remove(self, key: str) -> None:
        raise NotImplementedError

    def keys(self) -> List[str]:
        raise NotImplementedError

    def namespace(self, prefix: str) -> "NamespacedStore":
        return NamespacedStore(self, prefix)


# -------------------------------------------------------------- memory ---

class MemoryKeyValueStore(KeyValueStore):
    """In-process store. ``max_bytes`` emulates a storage quota."""

    def __init__(self, max_bytes: Optional[int] = None):
        self._data: Dict[str, str] = {}
        self._lock = threading.Lock()
        self.max_bytes = max_bytes

    def _size_with(self, key: str, value: str) -> int:
        total = len(key) + len(value)
        for k, v in self._data.items():
            if k != key:
                total += len(k) + len(v)
        return total

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            if self.max_bytes is not None and self._size_with(key, value) > self.max_bytes:
                raise StorageQuotaExceeded(
                    f"Writing '{key}' ({len(value)} chars) exceeds quota of {self.max_bytes} bytes"
                )
            self._data[key] = value

    def remove(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._data.keys())


# ----------------------------------------------------------- namespace ---

class NamespacedStore(KeyValueStore):
    """View of another store where every key is prefixed with ``<prefix>:``."""

    def __init__(self, inner: KeyValueStore, prefix: str):
        self._inner = inner
        self._prefix = f"{prefix}:"

    def get(self, key: str) -> Optional[str]:
        return self._inner.get(self._prefix + key)

    def set(self, key: str, value: str) -> None:
        self._inner.set(self._prefix + key, value)

    def remove(self, key: str) -> None:
        self._inner.remove(self._prefix + key)

    def keys(self) -> List[str]:
        n = len(self._prefix)
        return [k[n:] for k in self._inner.keys() if k.startswith(self._prefix)]


# ------------------------------------------------------------ postgres ---

def _normalize_db_url(url: str) -> str:
    if not url:
        raise ValueError("DATABASE_URL is not set")
    if "sslmode=" in url:
        return url
    separator = "&" if "?" in url else "?"
    return f"{url}{separator}sslmode=require"


class PostgresKeyValueStore(KeyValueStore):
    """Postgres-backed store; connections come from a shared pool."""

    def __init__(self, database_url: str = DATABASE_URL, table: str = "kv_store"):
        self.table = table
        self._pool = psycopg2_pool.ThreadedConnectionPool(
            minconn=1,
            maxconn=10,
            dsn=_normalize_db_url(database_url),
            cursor_factory=RealDictCursor,
        )
        self.init_db()

    def _get_connection(self):
        return self._pool.getconn()

    def _release_connection(self, conn):
        self._pool.putconn(conn)

    def init_db(self) -> None:
        conn = self._get_connection()
        try:
            cursor = conn.cursor()
            cursor.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {self.table} (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at TIMESTAMPTZ DEFAULT NOW()
                )
                """
            )
            conn.commit()
        finally:
            self._release_connection(conn)

    def get(self, key: str) -> Optional[str]:
        conn = self._get_connection()
        try:
            cursor = conn.cursor()
            cursor.execute(f"SELECT value FROM {self.table} WHERE key = %s", (key,))
            row = cursor.fetchone()
            return row["value"] if row else None
        finally:
            self._release_connection(conn)

    def set(self, key: str, value: str) -> None:
        conn = self._get_connection()
        try:
            cursor = conn.cursor()
            cursor.execute(
                f"""
                INSERT INTO {self.table} (key, value, updated_at)
                VALUES (%s, %s, NOW())
                ON CONFLICT (key) DO UPDATE
                SET value = EXCLUDED.value, updated_at = NOW()
                """,
                (key, value),
            )
            conn.commit()
        except psycopg2.Error:
            conn.rollback()
            raise
        finally:
            self._release_connection(conn)

    def remove(self, key: str) -> None:
        conn = self._get_connection()
        try:
            cursor = conn.cursor()
            cursor.execute(f"DELETE FROM {self.table} WHERE key = %s", (key,))
            conn.commit()
        finally:
            self._release_connection(conn)

    def keys(self) -> List[str]:
        conn = self._get_connection()
        try:
            cursor = conn.cursor()
            cursor.execute(f"SELECT key FROM {self.table}")
            return [row["key"] for row in cursor.fetchall()]
        finally:
            self._release_connection(conn)


# ------------------------------------------------------------- factory ---

def create_store(database_url: str = DATABASE_URL) -> KeyValueStore:
    """Postgres when DATABASE_URL is configured, otherwise in-memory."""
    if database_url:
        logger.info("[DB] Using Postgres key-value store")
        return PostgresKeyValueStore(database_url)
    logger.info("[DB] DATABASE_URL not set, using in-memory key-value store")
    return MemoryKeyValueStore()
