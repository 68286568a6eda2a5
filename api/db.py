"""
api/db.py - SQLite storage for the playchain server.

SqliteStore implements the Store protocol: one `records` table holding every
collection as (collection, key) -> JSON value. One instance per server
lifetime, backed by a single SQLite file (or :memory: for tests).
"""

from __future__ import annotations

import json
import sqlite3
import threading
from datetime import datetime, timezone
from typing import Any, Generic, TypeVar

from playchain.store import IDENTITY, Codec

T = TypeVar("T")


class SqliteRepository(Generic[T]):
    """One collection inside the records table."""

    def __init__(self, db: "SqliteStore", collection: str, codec: Codec[T]):
        self._db = db
        self._collection = collection
        self._codec = codec

    def get(self, key: str) -> T | None:
        row = self._db.fetchone(
            "SELECT value FROM records WHERE collection = ? AND key = ?",
            (self._collection, key),
        )
        if row is None:
            return None
        return self._codec.decode(json.loads(row["value"]))

    def put(self, key: str, value: T) -> None:
        # Upsert keeps the original rowid, so list() order stays first-insertion order
        self._db.execute(
            "INSERT INTO records (collection, key, value, updated_at) VALUES (?, ?, ?, ?) "
            "ON CONFLICT(collection, key) DO UPDATE SET value = excluded.value, "
            "updated_at = excluded.updated_at",
            (self._collection, key, json.dumps(self._codec.encode(value)), _now()),
        )

    def delete(self, key: str) -> bool:
        cursor = self._db.execute(
            "DELETE FROM records WHERE collection = ? AND key = ?",
            (self._collection, key),
        )
        return cursor.rowcount > 0

    def list(self) -> list[T]:
        rows = self._db.fetchall(
            "SELECT value FROM records WHERE collection = ? ORDER BY rowid ASC",
            (self._collection,),
        )
        return [self._codec.decode(json.loads(row["value"])) for row in rows]

    def keys(self) -> list[str]:
        rows = self._db.fetchall(
            "SELECT key FROM records WHERE collection = ? ORDER BY rowid ASC",
            (self._collection,),
        )
        return [row["key"] for row in rows]


class SqliteStore:
    """Thin wrapper around SQLite implementing the Store protocol."""

    def __init__(self, path: str = "playchain.db"):
        self.path = path
        self._conn = sqlite3.connect(path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        # One connection shared by the threadpool
        self._lock = threading.Lock()
        self._create_tables()

    def _create_tables(self) -> None:
        self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS records (
                collection TEXT NOT NULL,
                key TEXT NOT NULL,
                value TEXT NOT NULL,
                updated_at TEXT,
                PRIMARY KEY (collection, key)
            );
            """
        )

    def repository(self, name: str, codec: Codec[T] = IDENTITY) -> SqliteRepository[T]:
        return SqliteRepository(self, name, codec)

    # ------------------------------------------------------------------
    # Query helpers
    # ------------------------------------------------------------------

    def execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        with self._lock:
            cursor = self._conn.execute(sql, params)
            self._conn.commit()
            return cursor

    def fetchone(self, sql: str, params: tuple = ()) -> sqlite3.Row | None:
        with self._lock:
            return self._conn.execute(sql, params).fetchone()

    def fetchall(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, params).fetchall()

    def counts(self) -> dict[str, Any]:
        """Row count per collection."""
        rows = self.fetchall("SELECT collection, COUNT(*) AS n FROM records GROUP BY collection")
        return {row["collection"]: row["n"] for row in rows}

    def close(self) -> None:
        with self._lock:
            self._conn.close()


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()
