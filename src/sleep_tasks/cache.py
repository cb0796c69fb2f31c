"""Local cache: a small synchronous key-value store on the client.

Mirrors whatever state the client currently shows so a restart (or a dead
server) still has the last document. Backed by a single SQLite table; every
operation is best-effort and failures are logged, never raised.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from pathlib import Path

from .model import SharedState

logger = logging.getLogger("sleep_tasks.cache")

STORAGE_KEY = "sleep_tasks_v1"


class LocalCache:
    """Write-through mirror of the displayed SharedState."""

    def __init__(self, path: Path | str, key: str = STORAGE_KEY):
        self.path = Path(path)
        self.key = key
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.path)
        conn.execute("PRAGMA busy_timeout=5000")
        return conn

    def _init_db(self) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            conn = self._connect()
            try:
                # WAL so a second client process reading the cache never blocks a write
                conn.execute("PRAGMA journal_mode=WAL")
                conn.execute("""
                    CREATE TABLE IF NOT EXISTS kv (
                        key TEXT PRIMARY KEY,
                        value TEXT NOT NULL
                    )
                """)
                conn.commit()
            finally:
                conn.close()
        except (OSError, sqlite3.Error) as e:
            logger.warning(f"Local cache unavailable at {self.path}: {e}")

    def load(self) -> dict | None:
        """Return the cached raw document, or None if absent or unreadable."""
        try:
            conn = self._connect()
            try:
                row = conn.execute("SELECT value FROM kv WHERE key = ?", (self.key,)).fetchone()
            finally:
                conn.close()
        except sqlite3.Error as e:
            logger.warning(f"Failed to read local cache: {e}")
            return None

        if row is None:
            return None
        try:
            parsed = json.loads(row[0])
        except json.JSONDecodeError:
            logger.warning("Local cache entry is not valid JSON, ignoring it")
            return None
        return parsed if isinstance(parsed, dict) else None

    def save(self, state: SharedState) -> bool:
        """Persist ``{bedtime, tasks, updatedAt}`` under the storage key."""
        value = json.dumps(state.to_dict())
        try:
            conn = self._connect()
            try:
                conn.execute(
                    "INSERT INTO kv (key, value) VALUES (?, ?) "
                    "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                    (self.key, value),
                )
                conn.commit()
            finally:
                conn.close()
        except sqlite3.Error as e:
            logger.warning(f"Failed to write local cache: {e}")
            return False
        return True

    def clear(self) -> None:
        try:
            conn = self._connect()
            try:
                conn.execute("DELETE FROM kv WHERE key = ?", (self.key,))
                conn.commit()
            finally:
                conn.close()
        except sqlite3.Error as e:
            logger.warning(f"Failed to clear local cache: {e}")
