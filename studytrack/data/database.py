"""
SQLite database initialization and connection management.

Single responsibility: own the connection and create the key-value tables.
All actual queries live in KeyValueStore.
"""

from __future__ import annotations

import logging
import sqlite3
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

# Default DB lives next to the repo root
DEFAULT_DB_PATH = Path(__file__).resolve().parent.parent.parent / "studytrack.db"

SCHEMA_SQL = """
-- Key-value entries ----------------------------------------------------------
CREATE TABLE IF NOT EXISTS kv_entries (
    key         TEXT    PRIMARY KEY,
    value       TEXT    NOT NULL,
    updated_at  TEXT    NOT NULL DEFAULT (datetime('now'))
);

-- Change feed (latest set/remove per key, read by other connections) --------
CREATE TABLE IF NOT EXISTS kv_changes (
    seq         INTEGER PRIMARY KEY AUTOINCREMENT,
    key         TEXT    NOT NULL,
    writer_id   TEXT    NOT NULL,
    changed_at  TEXT    NOT NULL DEFAULT (datetime('now'))
);

-- Indexes for common queries -------------------------------------------------
CREATE UNIQUE INDEX IF NOT EXISTS idx_kv_changes_key ON kv_changes(key);
"""


class Database:
    """Thin wrapper around a SQLite connection."""

    def __init__(self, db_path: Optional[Path] = None) -> None:
        self.db_path = db_path or DEFAULT_DB_PATH
        self.conn: Optional[sqlite3.Connection] = None

    # -- lifecycle -----------------------------------------------------------

    def connect(self) -> sqlite3.Connection:
        """Open (or return existing) connection and ensure schema exists."""
        if self.conn is not None:
            return self.conn
        logger.info("Connecting to SQLite at %s", self.db_path)
        self.conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode=WAL")
        self._create_tables()
        return self.conn

    def close(self) -> None:
        if self.conn:
            self.conn.close()
            self.conn = None
            logger.info("Database connection closed.")

    # -- internal ------------------------------------------------------------

    def _create_tables(self) -> None:
        assert self.conn is not None
        self.conn.executescript(SCHEMA_SQL)
        self.conn.commit()
        logger.info("Database schema ensured.")


# ---------------------------------------------------------------------------
# Explanation (for interviews)
# ---------------------------------------------------------------------------
# What this file does:
#   Provides the raw key-value medium the persisted envelopes live in.
#
# Key pieces:
#   - kv_entries: one row per storage key, value is an opaque JSON string.
#   - kv_changes: the last write to each key and who made it, ordered by seq.
#     A second window on the same file polls it to notice writes it did not
#     make itself, the same job a browser "storage" event does.
#   - WAL mode: two app windows can read while one writes.
