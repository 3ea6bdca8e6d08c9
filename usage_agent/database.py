"""Key/value persistence for account records and small scalars."""

import datetime
import logging
import os
import sqlite3
from contextlib import contextmanager
from typing import Generator, Optional

# Database schema
CREATE_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS kv_store (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at INTEGER NOT NULL
);
"""


class SecureStore:
    """SQLite-backed key/value store with get/set/delete semantics.

    Each call opens its own connection and commits on its own; there is no
    atomicity across keys.
    """

    def __init__(self, db_file_path: str):
        self.db_file = db_file_path
        self.logger = logging.getLogger(self.__class__.__name__)
        self._init_db()

    def _init_db(self) -> None:
        """Create the table and restrict the file to its owner."""
        try:
            db_dir = os.path.dirname(self.db_file)
            if db_dir and not os.path.exists(db_dir):
                os.makedirs(db_dir, mode=0o700)
            with self._get_connection() as conn:
                conn.executescript(CREATE_TABLE_SQL)
                conn.commit()
            if self.db_file != ":memory:":
                os.chmod(self.db_file, 0o600)
            self.logger.info(f"Secure store initialized: {self.db_file}")
        except (sqlite3.Error, OSError) as e:
            self.logger.critical(
                f"Failed to initialize secure store {self.db_file}: {str(e)}"
            )
            raise

    @contextmanager
    def _get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """One short-lived connection per operation; closed on exit, errors logged and re-raised."""
        conn = None
        try:
            conn = sqlite3.connect(self.db_file)
            conn.row_factory = sqlite3.Row
            yield conn
        except sqlite3.Error as e:
            self.logger.error(f"Secure store error ({self.db_file}): {str(e)}")
            raise
        finally:
            if conn:
                conn.close()

    def get(self, key: str) -> Optional[str]:
        """Return the stored value for key, or None if absent or unreadable."""
        try:
            with self._get_connection() as conn:
                row = conn.execute(
                    "SELECT value FROM kv_store WHERE key = ?", (key,)
                ).fetchone()
                if row is None:
                    self.logger.debug(f"No value stored for key '{key}'")
                    return None
                return row["value"]
        except sqlite3.Error as e:
            self.logger.error(f"Error reading key '{key}': {str(e)}")
            return None

    def set(self, key: str, value: str) -> None:
        """Insert or replace the value stored under key."""
        now = int(datetime.datetime.now(datetime.timezone.utc).timestamp())
        try:
            with self._get_connection() as conn:
                with conn:
                    conn.execute(
                        """
                        INSERT INTO kv_store (key, value, updated_at)
                        VALUES (?, ?, ?)
                        ON CONFLICT(key) DO UPDATE SET
                            value = excluded.value,
                            updated_at = excluded.updated_at
                        """,
                        (key, value, now),
                    )
            self.logger.debug(f"Stored key '{key}' ({len(value)} bytes)")
        except sqlite3.Error as e:
            self.logger.error(f"Error storing key '{key}': {str(e)}")
            raise

    def delete(self, key: str) -> bool:
        """Delete key; returns whether a value was removed."""
        try:
            with self._get_connection() as conn:
                with conn:
                    cursor = conn.execute("DELETE FROM kv_store WHERE key = ?", (key,))
                    deleted = cursor.rowcount > 0
            if deleted:
                self.logger.debug(f"Deleted key '{key}'")
            return deleted
        except sqlite3.Error as e:
            self.logger.error(f"Error deleting key '{key}': {str(e)}")
            raise
