"""
Durable key-value store for the offline queue and entity store.
SQLite-backed, thread-safe; records survive process restarts.
"""

import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Protocol

from core.exceptions import StorageError

_PROJECT_ROOT = Path(__file__).resolve().parent.parent


def _resolve_path(db_path: str) -> Path:
    """Resolve db_path relative to project root if not absolute."""
    p = Path(db_path)
    if p.is_absolute():
        return p
    return (_PROJECT_ROOT / db_path).resolve()


class KeyValueStore(Protocol):
    """Persistence primitive used by both stores. Values are opaque strings."""

    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...

    def delete(self, key: str) -> bool: ...

    def list_by_prefix(self, prefix: str) -> list[tuple[str, str]]: ...

    def delete_by_prefix(self, prefix: str) -> int: ...

    def close(self) -> None: ...


class SQLiteKeyValueStore:
    """
    SQLite-backed key-value table. Thread-safe via a single lock.
    Every sqlite3 failure is re-raised as StorageError.
    """

    def __init__(self, db_path: Optional[str] = None) -> None:
        if db_path is None:
            from config import get_settings
            db_path = get_settings().storage.path
        self._lock = threading.Lock()
        try:
            if db_path == ":memory:":
                self._path = Path(":memory:")
                self._conn = sqlite3.connect(":memory:", check_same_thread=False)
            else:
                path = _resolve_path(db_path)
                path.parent.mkdir(parents=True, exist_ok=True)
                self._path = path
                self._conn = sqlite3.connect(str(path), check_same_thread=False)
            self._conn.execute("PRAGMA journal_mode=WAL")
        except (sqlite3.Error, OSError) as exc:
            raise StorageError("open", str(db_path), str(exc)) from exc
        self._init_schema()

    @property
    def path(self) -> Path:
        return self._path

    def _init_schema(self) -> None:
        with self._lock:
            try:
                self._conn.execute("""
                    CREATE TABLE IF NOT EXISTS kv_records (
                        key TEXT PRIMARY KEY,
                        value TEXT NOT NULL,
                        updated_at TEXT NOT NULL
                    )
                """)
                self._conn.commit()
            except sqlite3.Error as exc:
                raise StorageError("init", None, str(exc)) from exc

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            try:
                cur = self._conn.execute("SELECT value FROM kv_records WHERE key = ?", (key,))
                row = cur.fetchone()
            except sqlite3.Error as exc:
                raise StorageError("get", key, str(exc)) from exc
        return row[0] if row else None

    def set(self, key: str, value: str) -> None:
        """Insert or replace one record and commit."""
        updated_at = datetime.now(timezone.utc).isoformat()
        with self._lock:
            try:
                self._conn.execute(
                    """INSERT INTO kv_records (key, value, updated_at) VALUES (?, ?, ?)
                       ON CONFLICT(key) DO UPDATE SET value = excluded.value,
                                                      updated_at = excluded.updated_at""",
                    (key, value, updated_at),
                )
                self._conn.commit()
            except sqlite3.Error as exc:
                raise StorageError("set", key, str(exc)) from exc

    def delete(self, key: str) -> bool:
        """Delete one record. Returns True if it existed."""
        with self._lock:
            try:
                cur = self._conn.execute("DELETE FROM kv_records WHERE key = ?", (key,))
                self._conn.commit()
            except sqlite3.Error as exc:
                raise StorageError("delete", key, str(exc)) from exc
        return cur.rowcount > 0

    def list_by_prefix(self, prefix: str) -> list[tuple[str, str]]:
        """Return (key, value) pairs whose key starts with prefix, ordered by key."""
        with self._lock:
            try:
                cur = self._conn.execute(
                    """SELECT key, value FROM kv_records
                       WHERE substr(key, 1, ?) = ? ORDER BY key ASC""",
                    (len(prefix), prefix),
                )
                rows = cur.fetchall()
            except sqlite3.Error as exc:
                raise StorageError("list", prefix, str(exc)) from exc
        return [(k, v) for k, v in rows]

    def delete_by_prefix(self, prefix: str) -> int:
        """Delete every record under prefix in a single statement. Returns count deleted."""
        with self._lock:
            try:
                cur = self._conn.execute(
                    "DELETE FROM kv_records WHERE substr(key, 1, ?) = ?",
                    (len(prefix), prefix),
                )
                self._conn.commit()
            except sqlite3.Error as exc:
                raise StorageError("delete", prefix, str(exc)) from exc
        return cur.rowcount

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._conn.close()


class MemoryKeyValueStore:
    """Non-durable store with the same contract; used in tests and ephemeral setups."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            self._data[key] = value

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._data.pop(key, None) is not None

    def list_by_prefix(self, prefix: str) -> list[tuple[str, str]]:
        with self._lock:
            return sorted((k, v) for k, v in self._data.items() if k.startswith(prefix))

    def delete_by_prefix(self, prefix: str) -> int:
        with self._lock:
            keys = [k for k in self._data if k.startswith(prefix)]
            for k in keys:
                del self._data[k]
            return len(keys)

    def close(self) -> None:
        pass
