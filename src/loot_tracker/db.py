"""SQLite key/value layer for activity snapshots, guild config and history."""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator, Optional, Protocol


DATETIME_FMT = "%Y-%m-%d %H:%M:%S.%f"

CONFIG_KEY = "guild_config"
CURRENT_ACTIVITY_KEY = "current_activity"
HISTORY_KEY = "activity_history"


class Store(Protocol):
    def load(self, key: str) -> Optional[Any]: ...

    def save(self, key: str, value: Any) -> None: ...

    def remove(self, key: str) -> None: ...


def open_database(path: Path, *, check_same_thread: bool = True) -> sqlite3.Connection:
    """Open (and initialize) the SQLite database."""
    conn = sqlite3.connect(
        path,
        isolation_level=None,
        check_same_thread=check_same_thread,
    )
    conn.row_factory = sqlite3.Row
    initialize_schema(conn)
    return conn


@contextmanager
def database_connection(
    path: Path, *, check_same_thread: bool = True
) -> Iterator[sqlite3.Connection]:
    conn = open_database(path, check_same_thread=check_same_thread)
    try:
        yield conn
    finally:
        conn.close()


def initialize_schema(conn: sqlite3.Connection) -> None:
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS blobs (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );
        """
    )


def load_blob(conn: sqlite3.Connection, key: str) -> Optional[str]:
    row = conn.execute("SELECT value FROM blobs WHERE key = ?", (key,)).fetchone()
    return row["value"] if row else None


def save_blob(conn: sqlite3.Connection, key: str, value: str) -> None:
    conn.execute(
        """
        INSERT INTO blobs (key, value, updated_at) VALUES (?, ?, ?)
        ON CONFLICT(key) DO UPDATE SET
            value = excluded.value,
            updated_at = excluded.updated_at
        """,
        (key, value, datetime.now().strftime(DATETIME_FMT)),
    )


def remove_blob(conn: sqlite3.Connection, key: str) -> None:
    conn.execute("DELETE FROM blobs WHERE key = ?", (key,))


class SqliteStore:
    """JSON blobs in SQLite; each save replaces the whole value for its key."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)

    def load(self, key: str) -> Optional[Any]:
        with database_connection(self.db_path) as conn:
            raw = load_blob(conn, key)
        return json.loads(raw) if raw is not None else None

    def save(self, key: str, value: Any) -> None:
        payload = json.dumps(value, ensure_ascii=False)
        with database_connection(self.db_path) as conn:
            save_blob(conn, key, payload)

    def remove(self, key: str) -> None:
        with database_connection(self.db_path) as conn:
            remove_blob(conn, key)
