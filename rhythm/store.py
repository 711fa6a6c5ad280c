"""
Durable Store

Key-value storage with point reads/writes, used for every piece of
scheduler state. Keys are slash-separated paths:

    alarms/{alarm_id}
    status/{routine_id}/{date_key}
    snoozeCount/{routine_id}/{date_key}
    activeNotif/{notification_id}
    history/{routine_id}/{date_key}
    cache/routines

Values are JSON-serialisable. No cross-key transactions; ``update`` gives an
atomic read-modify-write on a single key.
"""

import json
import sqlite3
import threading
from pathlib import Path
from typing import Any, Callable, Dict, List, Tuple

from rhythm.logger import get_logger


class StoreError(Exception):
    """Durable store I/O failure. Never swallowed by the store itself."""


class SQLiteStore:
    """SQLite-backed key-value store."""

    def __init__(self, db_path, config=None):
        self.logger = get_logger(__name__, config)
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db_lock = threading.Lock()
        self._init_db()

    # ------------------------------------------------------------------
    # Database
    # ------------------------------------------------------------------

    def _init_db(self):
        """Create the kv table if it doesn't exist."""
        with self._db_lock:
            try:
                conn = sqlite3.connect(str(self.db_path))
            except sqlite3.Error as e:
                raise StoreError(f"Failed to open store at {self.db_path}: {e}") from e
            try:
                conn.execute("""
                    CREATE TABLE IF NOT EXISTS kv (
                        key         TEXT PRIMARY KEY,
                        value       TEXT NOT NULL,
                        updated_at  TEXT NOT NULL DEFAULT (datetime('now', 'localtime'))
                    )
                """)
                conn.commit()
            except sqlite3.Error as e:
                raise StoreError(f"Failed to initialise store at {self.db_path}: {e}") from e
            finally:
                conn.close()
        self.logger.info(f"Scheduler store ready at {self.db_path}")

    def _conn(self) -> sqlite3.Connection:
        """Get a new SQLite connection in autocommit mode."""
        conn = sqlite3.connect(str(self.db_path), timeout=10, isolation_level=None)
        conn.row_factory = sqlite3.Row
        return conn

    # ------------------------------------------------------------------
    # Point operations
    # ------------------------------------------------------------------

    def get(self, key: str, default=None) -> Any:
        with self._db_lock:
            try:
                conn = self._conn()
            except sqlite3.Error as e:
                raise StoreError(f"get {key}: {e}") from e
            try:
                row = conn.execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
            except sqlite3.Error as e:
                raise StoreError(f"get {key}: {e}") from e
            finally:
                conn.close()
        return json.loads(row["value"]) if row else default

    def put(self, key: str, value: Any):
        payload = json.dumps(value)
        with self._db_lock:
            try:
                conn = self._conn()
            except sqlite3.Error as e:
                raise StoreError(f"put {key}: {e}") from e
            try:
                conn.execute("""
                    INSERT INTO kv (key, value) VALUES (?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        value = excluded.value,
                        updated_at = datetime('now', 'localtime')
                """, (key, payload))
            except sqlite3.Error as e:
                raise StoreError(f"put {key}: {e}") from e
            finally:
                conn.close()

    def delete(self, key: str) -> bool:
        with self._db_lock:
            try:
                conn = self._conn()
            except sqlite3.Error as e:
                raise StoreError(f"delete {key}: {e}") from e
            try:
                cur = conn.execute("DELETE FROM kv WHERE key = ?", (key,))
                return cur.rowcount > 0
            except sqlite3.Error as e:
                raise StoreError(f"delete {key}: {e}") from e
            finally:
                conn.close()

    def update(self, key: str, fn: Callable[[Any], Any]) -> Tuple[Any, Any]:
        """Atomically replace the value at ``key`` with ``fn(current)``.

        ``current`` is None when the key is absent. If fn returns the current
        value unchanged nothing is written. Returns (old, new).
        """
        with self._db_lock:
            try:
                conn = self._conn()
            except sqlite3.Error as e:
                raise StoreError(f"update {key}: {e}") from e
            try:
                conn.execute("BEGIN IMMEDIATE")
                row = conn.execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
                old = json.loads(row["value"]) if row else None
                new = fn(old)
                if new != old:
                    if new is None:
                        conn.execute("DELETE FROM kv WHERE key = ?", (key,))
                    else:
                        conn.execute("""
                            INSERT INTO kv (key, value) VALUES (?, ?)
                            ON CONFLICT(key) DO UPDATE SET
                                value = excluded.value,
                                updated_at = datetime('now', 'localtime')
                        """, (key, json.dumps(new)))
                conn.execute("COMMIT")
                return old, new
            except sqlite3.Error as e:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise StoreError(f"update {key}: {e}") from e
            except Exception:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
            finally:
                conn.close()

    # ------------------------------------------------------------------
    # Prefix scans
    # ------------------------------------------------------------------

    def items(self, prefix: str = "") -> List[Tuple[str, Any]]:
        """All (key, value) pairs whose key starts with prefix, key-ordered."""
        pattern = _like_prefix(prefix)
        with self._db_lock:
            try:
                conn = self._conn()
            except sqlite3.Error as e:
                raise StoreError(f"scan {prefix}: {e}") from e
            try:
                rows = conn.execute(
                    "SELECT key, value FROM kv WHERE key LIKE ? ESCAPE '\\' ORDER BY key",
                    (pattern,)
                ).fetchall()
            except sqlite3.Error as e:
                raise StoreError(f"scan {prefix}: {e}") from e
            finally:
                conn.close()
        return [(r["key"], json.loads(r["value"])) for r in rows]

    def keys(self, prefix: str = "") -> List[str]:
        return [k for k, _ in self.items(prefix)]


class MemoryStore:
    """In-process store with the same contract. Not durable across restarts."""

    def __init__(self):
        self._data: Dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, key: str, default=None) -> Any:
        with self._lock:
            raw = self._data.get(key)
        return json.loads(raw) if raw is not None else default

    def put(self, key: str, value: Any):
        payload = json.dumps(value)
        with self._lock:
            self._data[key] = payload

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._data.pop(key, None) is not None

    def update(self, key: str, fn: Callable[[Any], Any]) -> Tuple[Any, Any]:
        with self._lock:
            raw = self._data.get(key)
            old = json.loads(raw) if raw is not None else None
            new = fn(old)
            if new != old:
                if new is None:
                    self._data.pop(key, None)
                else:
                    self._data[key] = json.dumps(new)
            return old, new

    def items(self, prefix: str = "") -> List[Tuple[str, Any]]:
        with self._lock:
            pairs = [(k, v) for k, v in self._data.items() if k.startswith(prefix)]
        return [(k, json.loads(v)) for k, v in sorted(pairs)]

    def keys(self, prefix: str = "") -> List[str]:
        return [k for k, _ in self.items(prefix)]


def _like_prefix(prefix: str) -> str:
    escaped = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return escaped + "%"


def open_store(config) -> SQLiteStore:
    """Open the SQLite store at the configured path."""
    db_path = config.get("store.db_path")
    if not db_path:
        storage = Path(config.get("system.storage_path", "./data"))
        db_path = storage / "rhythm.db"
    return SQLiteStore(db_path, config)
