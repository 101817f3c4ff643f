"""
cache/store.py -- SQLite-backed durable slots for the client session cache.

Keeps the current token pair across process restarts so a CLI or UI process
does not force a fresh login every time it starts. Only four slots exist:
access_token, refresh_token, access_expires_at, refresh_expires_at.

Usage:
    slots = TokenSlots()                       # file next to this module
    slots = TokenSlots(":memory:")             # throwaway, for tests
    slots.set_many({"access_token": "...", "access_expires_at": "1700000000"})
    value = slots.get("access_token")          # str or None
    slots.clear()
"""

import sqlite3
import threading
import time
from pathlib import Path
from typing import Mapping, Optional, Union

_DEFAULT_DB = Path(__file__).parent / "session_cache.db"

SLOT_NAMES = frozenset({"access_token", "refresh_token", "access_expires_at", "refresh_expires_at"})

_DDL = """
CREATE TABLE IF NOT EXISTS session_slots (
    slot        TEXT PRIMARY KEY,
    value       TEXT NOT NULL,
    stored_at   REAL NOT NULL
);
"""


class TokenSlots:
    def __init__(self, db_path: Union[Path, str] = _DEFAULT_DB) -> None:
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        if str(db_path) != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute(_DDL)
        self._conn.commit()

    def get(self, slot: str) -> Optional[str]:
        """Return the stored value for slot, or None."""
        with self._lock:
            row = self._conn.execute("SELECT value FROM session_slots WHERE slot = ?", (slot,)).fetchone()
        return None if row is None else row[0]

    def set_many(self, values: Mapping[str, str]) -> None:
        """Write several slots in one transaction, so readers never see half a pair."""
        unknown = set(values) - SLOT_NAMES
        if unknown:
            raise ValueError(f"unknown cache slot(s): {sorted(unknown)}")
        now = time.time()
        with self._lock, self._conn:
            self._conn.executemany(
                "INSERT OR REPLACE INTO session_slots (slot, value, stored_at) VALUES (?, ?, ?)",
                [(slot, value, now) for slot, value in values.items()],
            )

    def clear(self) -> None:
        with self._lock, self._conn:
            self._conn.execute("DELETE FROM session_slots")

    def close(self) -> None:
        self._conn.close()
