"""SQLite storage backend: index blobs, memory records and dimensions in one file."""

import asyncio
import json
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, TypeVar

from loguru import logger

from storymem.errors import StorageError
from storymem.storage.base import MemoryStorage, record_key

T = TypeVar("T")


class SQLiteStorage(MemoryStorage):
    """
    Durable storage in a single SQLite database.

    Calls run in a worker thread (``asyncio.to_thread``) so the event loop
    never blocks on disk I/O; a lock serializes access to the connection.
    """

    def __init__(self, db_path: Path | str):
        self.db_path = Path(db_path).expanduser()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._conn: sqlite3.Connection | None = sqlite3.connect(self.db_path, check_same_thread=False)
        self._init_db()

    def _init_db(self) -> None:
        with self._lock:
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS rag_index (
                    collection TEXT PRIMARY KEY,
                    blob BLOB NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS rag_metadata (
                    key TEXT PRIMARY KEY,
                    collection TEXT NOT NULL,
                    record TEXT NOT NULL
                )
            """)
            self._conn.execute("CREATE INDEX IF NOT EXISTS idx_rag_metadata_collection ON rag_metadata(collection)")
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS rag_dimensions (
                    collection TEXT PRIMARY KEY,
                    dims INTEGER NOT NULL
                )
            """)
            self._conn.commit()

    async def _run(self, fn: Callable[[sqlite3.Connection], T]) -> T:
        def call() -> T:
            with self._lock:
                if self._conn is None:
                    raise StorageError(f"Storage at {self.db_path} is closed")
                try:
                    return fn(self._conn)
                except sqlite3.Error as e:
                    self._conn.rollback()
                    raise StorageError(f"SQLite error on {self.db_path}: {e}") from e

        return await asyncio.to_thread(call)

    # -- index blob --

    async def read_index(self, collection: str) -> bytes | None:
        def op(conn: sqlite3.Connection) -> bytes | None:
            row = conn.execute("SELECT blob FROM rag_index WHERE collection = ?", (collection,)).fetchone()
            return bytes(row[0]) if row else None

        return await self._run(op)

    async def write_index(self, collection: str, blob: bytes) -> None:
        def op(conn: sqlite3.Connection) -> None:
            conn.execute(
                "INSERT OR REPLACE INTO rag_index (collection, blob, updated_at) VALUES (?, ?, ?)",
                (collection, sqlite3.Binary(blob), datetime.now().isoformat()),
            )
            conn.commit()

        await self._run(op)

    async def delete_index(self, collection: str) -> None:
        def op(conn: sqlite3.Connection) -> None:
            conn.execute("DELETE FROM rag_index WHERE collection = ?", (collection,))
            conn.commit()

        await self._run(op)

    # -- metadata records --

    async def load_records(self, collection: str) -> list[dict[str, Any]]:
        def op(conn: sqlite3.Connection) -> list[dict[str, Any]]:
            rows = conn.execute(
                "SELECT record FROM rag_metadata WHERE collection = ?", (collection,)
            ).fetchall()
            return [json.loads(row[0]) for row in rows]

        return await self._run(op)

    async def save_records(self, collection: str, records: list[dict[str, Any]]) -> None:
        def op(conn: sqlite3.Connection) -> None:
            conn.execute("BEGIN IMMEDIATE")
            conn.execute("DELETE FROM rag_metadata WHERE collection = ?", (collection,))
            conn.executemany(
                "INSERT INTO rag_metadata (key, collection, record) VALUES (?, ?, ?)",
                [
                    (record_key(collection, r["id"]), collection, json.dumps(r, ensure_ascii=False))
                    for r in records
                ],
            )
            conn.commit()

        await self._run(op)

    async def delete_records(self, collection: str) -> None:
        def op(conn: sqlite3.Connection) -> None:
            conn.execute("DELETE FROM rag_metadata WHERE collection = ?", (collection,))
            conn.commit()

        await self._run(op)

    # -- dimension record --

    async def read_dimensions(self, collection: str) -> int | None:
        def op(conn: sqlite3.Connection) -> int | None:
            row = conn.execute("SELECT dims FROM rag_dimensions WHERE collection = ?", (collection,)).fetchone()
            if not row:
                return None
            dims = int(row[0])
            return dims if dims > 0 else None

        return await self._run(op)

    async def write_dimensions(self, collection: str, dims: int) -> None:
        def op(conn: sqlite3.Connection) -> None:
            conn.execute(
                "INSERT OR REPLACE INTO rag_dimensions (collection, dims) VALUES (?, ?)",
                (collection, int(dims)),
            )
            conn.commit()

        await self._run(op)

    async def delete_dimensions(self, collection: str) -> None:
        def op(conn: sqlite3.Connection) -> None:
            conn.execute("DELETE FROM rag_dimensions WHERE collection = ?", (collection,))
            conn.commit()

        await self._run(op)

    async def list_collections(self) -> list[str]:
        def op(conn: sqlite3.Connection) -> list[str]:
            rows = conn.execute("""
                SELECT collection FROM rag_index
                UNION SELECT collection FROM rag_metadata
                UNION SELECT collection FROM rag_dimensions
            """).fetchall()
            return sorted(row[0] for row in rows)

        return await self._run(op)

    async def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
                logger.debug(f"Closed storage {self.db_path}")
