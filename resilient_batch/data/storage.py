"""
Key/value storage backends for checkpoint persistence.

Values are JSON-compatible structures. Every backend supports per-key
atomic writes, atomic multi-key writes and a single-operation prefix delete.
"""

import copy
import json
import sqlite3
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

from resilient_batch.utils.logging import get_logger
from resilient_batch.utils.errors import StorageError


logger = get_logger(__name__)


def prefix_upper_bound(prefix: str) -> str:
    """Smallest string greater than every string starting with `prefix`."""
    if not prefix:
        raise StorageError("Prefix must not be empty")
    return prefix[:-1] + chr(ord(prefix[-1]) + 1)


class KeyValueStore(ABC):
    """Storage interface used by the checkpoint manager."""

    @abstractmethod
    def get(self, key: str) -> Optional[Any]:
        """Value stored under `key`, or None."""

    @abstractmethod
    def put(self, key: str, value: Any) -> None:
        """Insert or overwrite a single key."""

    @abstractmethod
    def put_many(self, entries: Dict[str, Any]) -> None:
        """Write several keys atomically: all of them or none."""

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Remove a key. Returns True if it existed."""

    @abstractmethod
    def scan_prefix(self, prefix: str) -> List[Tuple[str, Any]]:
        """All (key, value) pairs whose key starts with `prefix`, sorted by key."""

    @abstractmethod
    def count_prefix(self, prefix: str) -> int:
        """Number of keys starting with `prefix`."""

    @abstractmethod
    def delete_prefix(self, prefix: str) -> int:
        """Remove every key starting with `prefix` in one operation."""

    def close(self) -> None:
        """Release backend resources."""

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


class InMemoryStore(KeyValueStore):
    """Dictionary-backed store. Values are deep-copied in and out."""

    def __init__(self):
        self._data: Dict[str, Any] = {}
        self._lock = threading.RLock()

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            value = self._data.get(key)
            return copy.deepcopy(value)

    def put(self, key: str, value: Any) -> None:
        with self._lock:
            self._data[key] = copy.deepcopy(value)

    def put_many(self, entries: Dict[str, Any]) -> None:
        staged = {key: copy.deepcopy(value) for key, value in entries.items()}
        with self._lock:
            self._data.update(staged)

    def delete(self, key: str) -> bool:
        with self._lock:
            if key not in self._data:
                return False
            del self._data[key]
            return True

    def scan_prefix(self, prefix: str) -> List[Tuple[str, Any]]:
        with self._lock:
            return [
                (key, copy.deepcopy(self._data[key]))
                for key in sorted(self._data)
                if key.startswith(prefix)
            ]

    def count_prefix(self, prefix: str) -> int:
        with self._lock:
            return sum(1 for key in self._data if key.startswith(prefix))

    def delete_prefix(self, prefix: str) -> int:
        with self._lock:
            doomed = [key for key in self._data if key.startswith(prefix)]
            for key in doomed:
                del self._data[key]
            return len(doomed)

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)


class SQLiteStore(KeyValueStore):
    """
    SQLite-backed store with a single `kv` table.

    File databases open a connection per operation (WAL journal, busy
    timeout). `:memory:` keeps one shared connection for the lifetime of the
    store. Writes are serialized by a lock.
    """

    def __init__(self, database_path: str = "data/checkpoints.db", timeout: float = 30.0):
        """
        Initialize SQLite store.

        Args:
            database_path: Path to the database file, or ":memory:"
            timeout: Seconds to wait on a locked database
        """
        self.database_path = database_path
        self.timeout = timeout
        self._write_lock = threading.RLock()
        self._shared_conn: Optional[sqlite3.Connection] = None

        if database_path == ":memory:":
            self._shared_conn = sqlite3.connect(":memory:", timeout=timeout, check_same_thread=False)
        else:
            Path(database_path).parent.mkdir(parents=True, exist_ok=True)

        self.initialize()

    def initialize(self) -> None:
        """Create the table if it does not exist."""
        try:
            with self.get_connection() as conn:
                if self._shared_conn is None:
                    conn.execute("PRAGMA journal_mode=WAL")
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS kv (
                        key TEXT PRIMARY KEY,
                        value TEXT NOT NULL
                    )
                    """
                )
                conn.commit()
            logger.info(f"SQLite checkpoint store initialized at {self.database_path}")
        except sqlite3.Error as e:
            raise StorageError(
                "Failed to initialize SQLite store",
                {"path": self.database_path, "error": str(e)}
            )

    @contextmanager
    def get_connection(self) -> Iterator[sqlite3.Connection]:
        """
        Get a database connection.

        Yields:
            SQLite connection; changes are rolled back if the block raises
        """
        if self._shared_conn is not None:
            with self._write_lock:
                try:
                    yield self._shared_conn
                except sqlite3.Error as e:
                    self._shared_conn.rollback()
                    raise StorageError("SQLite operation failed", {"error": str(e)})
            return

        conn = None
        try:
            conn = sqlite3.connect(self.database_path, timeout=self.timeout, check_same_thread=False)
            yield conn
        except sqlite3.Error as e:
            if conn is not None:
                conn.rollback()
            raise StorageError(
                "SQLite operation failed",
                {"path": self.database_path, "error": str(e)}
            )
        finally:
            if conn is not None:
                conn.close()

    @staticmethod
    def _encode(value: Any) -> str:
        try:
            return json.dumps(value, ensure_ascii=False)
        except (TypeError, ValueError) as e:
            raise StorageError("Value is not JSON serializable", {"error": str(e)})

    def get(self, key: str) -> Optional[Any]:
        with self.get_connection() as conn:
            row = conn.execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
        return json.loads(row[0]) if row else None

    def put(self, key: str, value: Any) -> None:
        encoded = self._encode(value)
        with self._write_lock:
            with self.get_connection() as conn:
                conn.execute(
                    "INSERT OR REPLACE INTO kv (key, value) VALUES (?, ?)",
                    (key, encoded)
                )
                conn.commit()

    def put_many(self, entries: Dict[str, Any]) -> None:
        rows = [(key, self._encode(value)) for key, value in entries.items()]
        with self._write_lock:
            with self.get_connection() as conn:
                conn.executemany("INSERT OR REPLACE INTO kv (key, value) VALUES (?, ?)", rows)
                conn.commit()

    def delete(self, key: str) -> bool:
        with self._write_lock:
            with self.get_connection() as conn:
                cursor = conn.execute("DELETE FROM kv WHERE key = ?", (key,))
                conn.commit()
                return cursor.rowcount > 0

    def scan_prefix(self, prefix: str) -> List[Tuple[str, Any]]:
        with self.get_connection() as conn:
            rows = conn.execute(
                "SELECT key, value FROM kv WHERE key >= ? AND key < ? ORDER BY key",
                (prefix, prefix_upper_bound(prefix))
            ).fetchall()
        return [(key, json.loads(value)) for key, value in rows]

    def count_prefix(self, prefix: str) -> int:
        with self.get_connection() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM kv WHERE key >= ? AND key < ?",
                (prefix, prefix_upper_bound(prefix))
            ).fetchone()
        return row[0]

    def delete_prefix(self, prefix: str) -> int:
        with self._write_lock:
            with self.get_connection() as conn:
                cursor = conn.execute(
                    "DELETE FROM kv WHERE key >= ? AND key < ?",
                    (prefix, prefix_upper_bound(prefix))
                )
                conn.commit()
                return cursor.rowcount

    def close(self) -> None:
        if self._shared_conn is not None:
            self._shared_conn.close()
            self._shared_conn = None
