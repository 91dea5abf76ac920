"""
Persistent key-value store for app settings and cached reference data.

Values are stored as JSON in SQLite. The store enforces a byte quota the way
browser extension storage does; writes past the quota raise a storage error
flagged as a quota failure so callers can evict and retry.
"""
import json
import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

from ..errors import ClientError

logger = logging.getLogger("storage.kv")

SCHEMA = """
CREATE TABLE IF NOT EXISTS kv (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""

QUOTA_MESSAGE = "QUOTA_BYTES quota exceeded"


def is_quota_error(error: ClientError) -> bool:
    return "quota" in error.message.lower()


class KeyValueStore:
    """
    JSON key-value storage backed by SQLite.

    Missing keys read as None; get_many returns only the keys that exist.
    """

    def __init__(self, db_path: Path, quota_bytes: Optional[int] = None):
        self.db_path = Path(db_path)
        self.quota_bytes = quota_bytes
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            with self._get_connection() as conn:
                conn.executescript(SCHEMA)
                conn.commit()
        except (OSError, sqlite3.Error) as e:
            raise ClientError.storage(f"Failed to open key-value store: {e}", e) from e

    @contextmanager
    def _get_connection(self):
        conn = sqlite3.connect(str(self.db_path))
        try:
            yield conn
        finally:
            conn.close()

    def get(self, key: str) -> Any:
        return self.get_many([key]).get(key)

    def get_many(self, keys: Iterable[str]) -> Dict[str, Any]:
        keys = list(keys)
        if not keys:
            return {}
        placeholders = ", ".join("?" for _ in keys)
        try:
            with self._get_connection() as conn:
                rows = conn.execute(
                    f"SELECT key, value FROM kv WHERE key IN ({placeholders})", keys
                ).fetchall()
        except sqlite3.Error as e:
            raise ClientError.storage(f"Failed to read storage: {e}", e) from e
        return {key: json.loads(value) for key, value in rows}

    def get_all(self) -> Dict[str, Any]:
        try:
            with self._get_connection() as conn:
                rows = conn.execute("SELECT key, value FROM kv").fetchall()
        except sqlite3.Error as e:
            raise ClientError.storage(f"Failed to read storage: {e}", e) from e
        return {key: json.loads(value) for key, value in rows}

    def set(self, key: str, value: Any) -> None:
        self.set_many({key: value})

    def set_many(self, items: Dict[str, Any]) -> None:
        """Write all items or none of them."""
        try:
            encoded = {key: json.dumps(value) for key, value in items.items()}
        except (TypeError, ValueError) as e:
            raise ClientError.storage(f"Value is not JSON serializable: {e}", e) from e

        try:
            with self._get_connection() as conn:
                if self.quota_bytes is not None:
                    self._check_quota(conn, encoded)
                conn.executemany(
                    "INSERT OR REPLACE INTO kv (key, value) VALUES (?, ?)",
                    list(encoded.items()),
                )
                conn.commit()
        except sqlite3.Error as e:
            raise ClientError.storage(f"Failed to write storage: {e}", e) from e

    def _check_quota(self, conn: sqlite3.Connection, encoded: Dict[str, str]) -> None:
        rows = conn.execute("SELECT key, value FROM kv").fetchall()
        usage = {key: len(key) + len(value) for key, value in rows}
        for key, value in encoded.items():
            usage[key] = len(key) + len(value)
        total = sum(usage.values())
        if total > self.quota_bytes:
            logger.warning(f"Storage quota exceeded: {total} > {self.quota_bytes} bytes")
            raise ClientError.storage(QUOTA_MESSAGE)

    def remove(self, keys: Iterable[str]) -> None:
        keys = list(keys)
        if not keys:
            return
        try:
            with self._get_connection() as conn:
                conn.executemany("DELETE FROM kv WHERE key = ?", [(k,) for k in keys])
                conn.commit()
        except sqlite3.Error as e:
            raise ClientError.storage(f"Failed to remove keys: {e}", e) from e

    def clear(self) -> None:
        try:
            with self._get_connection() as conn:
                conn.execute("DELETE FROM kv")
                conn.commit()
        except sqlite3.Error as e:
            raise ClientError.storage(f"Failed to clear storage: {e}", e) from e
