"""Local SQLite key-value storage for entity collections."""

import json
import logging
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Mapping

from ..errors import StorageError

logger = logging.getLogger(__name__)

# SQL schema for the key-value store
SCHEMA = """
-- One JSON document per key: entity collections, tombstones, sync metadata
CREATE TABLE IF NOT EXISTS kv_store (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
"""


class LocalStore:
    """Namespaced key -> JSON persistence on SQLite.

    Pure storage: no business logic. Every write commits before returning,
    and ``set_many`` writes several keys in one transaction so callers can
    rewrite related collections atomically.
    """

    def __init__(self, db_path: str | Path, namespace: str = "rollcall"):
        """Initialize the local store.

        Args:
            db_path: Path to SQLite database file (":memory:" for tests).
            namespace: Prefix applied to every key.
        """
        self.db_path = db_path if str(db_path) == ":memory:" else Path(db_path).expanduser()
        self.namespace = namespace
        self._conn: sqlite3.Connection | None = None

    def connect(self) -> None:
        """Initialize database connection and schema."""
        if self._conn is not None:
            return

        try:
            if isinstance(self.db_path, Path):
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.executescript(SCHEMA)
            self._conn.commit()
        except (sqlite3.Error, OSError) as e:
            raise StorageError(f"Cannot open local store {self.db_path}: {e}") from e

        logger.info(f"LocalStore connected to {self.db_path}")

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None
            logger.info("LocalStore connection closed")

    def _ensure_connected(self) -> sqlite3.Connection:
        """Ensure we have a database connection."""
        if self._conn is None:
            self.connect()
        return self._conn

    def _full_key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    # ==================== Key Operations ====================

    def get(self, key: str) -> Any:
        """Read a JSON document.

        Args:
            key: Logical key (without namespace).

        Returns:
            Decoded JSON value, or None if the key is absent.
        """
        conn = self._ensure_connected()
        try:
            row = conn.execute(
                "SELECT value FROM kv_store WHERE key = ?", (self._full_key(key),)
            ).fetchone()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to read {key}: {e}") from e

        if row is None:
            return None
        try:
            return json.loads(row["value"])
        except json.JSONDecodeError as e:
            raise StorageError(f"Corrupt JSON under {key}: {e}") from e

    def set(self, key: str, value: Any) -> None:
        """Write a JSON document, replacing any previous value."""
        self.set_many({key: value})

    def remove(self, key: str) -> None:
        """Delete a key if present."""
        self.set_many({key: None})

    def set_many(self, values: Mapping[str, Any]) -> None:
        """Write several keys in a single transaction.

        Args:
            values: Logical key -> JSON value. A value of None removes the key.
        """
        if not values:
            return

        conn = self._ensure_connected()
        now = datetime.now().isoformat()
        try:
            with conn:
                for key, value in values.items():
                    if value is None:
                        conn.execute(
                            "DELETE FROM kv_store WHERE key = ?", (self._full_key(key),)
                        )
                    else:
                        conn.execute(
                            """
                            INSERT INTO kv_store (key, value, updated_at)
                            VALUES (?, ?, ?)
                            ON CONFLICT(key) DO UPDATE SET
                                value = excluded.value,
                                updated_at = excluded.updated_at
                            """,
                            (self._full_key(key), json.dumps(value), now),
                        )
        except (sqlite3.Error, TypeError, ValueError) as e:
            raise StorageError(f"Failed to write {sorted(values)}: {e}") from e

    def keys(self) -> list[str]:
        """List logical keys in this namespace."""
        conn = self._ensure_connected()
        prefix = f"{self.namespace}:"
        try:
            cursor = conn.execute(
                "SELECT key FROM kv_store WHERE key LIKE ? ORDER BY key",
                (f"{prefix}%",),
            )
            return [row["key"][len(prefix):] for row in cursor]
        except sqlite3.Error as e:
            raise StorageError(f"Failed to list keys: {e}") from e

    def migrate_keys(self, names: Iterable[str]) -> int:
        """Move un-namespaced legacy keys under the namespace.

        A legacy key is only moved when the namespaced key does not exist
        yet.

        Returns:
            Number of keys migrated.
        """
        conn = self._ensure_connected()
        migrated = 0
        try:
            with conn:
                for name in names:
                    row = conn.execute(
                        "SELECT value, updated_at FROM kv_store WHERE key = ?", (name,)
                    ).fetchone()
                    if row is None:
                        continue
                    conn.execute(
                        "INSERT OR IGNORE INTO kv_store (key, value, updated_at) VALUES (?, ?, ?)",
                        (self._full_key(name), row["value"], row["updated_at"]),
                    )
                    conn.execute("DELETE FROM kv_store WHERE key = ?", (name,))
                    migrated += 1
                    logger.info(f"Migrated {name} -> {self._full_key(name)}")
        except sqlite3.Error as e:
            raise StorageError(f"Key migration failed: {e}") from e
        return migrated

    def get_stats(self) -> dict[str, Any]:
        """Get store statistics.

        Returns:
            Dictionary with key count and database size.
        """
        stats: dict[str, Any] = {
            "namespace": self.namespace,
            "keys": len(self.keys()),
        }
        if isinstance(self.db_path, Path) and self.db_path.exists():
            stats["db_size_mb"] = round(self.db_path.stat().st_size / (1024 * 1024), 2)
        return stats
