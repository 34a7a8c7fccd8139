"""
KeyValueStore — the single place where SQL lives.

Exposes the synchronous get/set/remove-by-string-key medium the persisted
envelopes sit on, plus a polled "key changed elsewhere" notification.
"""

from __future__ import annotations

import logging
import sqlite3
import uuid
from typing import Callable, List, Optional, Tuple

logger = logging.getLogger(__name__)

ChangeListener = Callable[[str, Optional[str]], None]


class KeyValueStore:
    """String key → string value storage over a sqlite3 connection."""

    def __init__(self, conn: sqlite3.Connection, writer_id: Optional[str] = None) -> None:
        self.conn = conn
        self.writer_id = writer_id or str(uuid.uuid4())
        self._listeners: List[ChangeListener] = []
        # Only changes made after we attached are reported
        self._last_seq = self._max_seq()

    # ── Basic access ────────────────────────────────────────────────────────

    def get(self, key: str) -> Optional[str]:
        row = self.conn.execute(
            "SELECT value FROM kv_entries WHERE key = ?", (key,)
        ).fetchone()
        return row["value"] if row else None

    def set(self, key: str, value: str) -> None:
        self.conn.execute(
            """INSERT INTO kv_entries (key, value, updated_at)
               VALUES (?, ?, datetime('now'))
               ON CONFLICT(key) DO UPDATE SET
                   value = excluded.value,
                   updated_at = excluded.updated_at""",
            (key, value),
        )
        self._record_change(key)
        self.conn.commit()

    def remove(self, key: str) -> None:
        cur = self.conn.execute("DELETE FROM kv_entries WHERE key = ?", (key,))
        if cur.rowcount:
            self._record_change(key)
        self.conn.commit()

    def keys(self, prefix: str = "") -> List[str]:
        rows = self.conn.execute(
            "SELECT key FROM kv_entries WHERE key LIKE ? ESCAPE '\\' ORDER BY key",
            (self._escape_like(prefix) + "%",),
        ).fetchall()
        return [r["key"] for r in rows]

    # ── Change notifications ────────────────────────────────────────────────

    def subscribe(self, listener: ChangeListener) -> Callable[[], None]:
        """Register a listener; returns a function that unregisters it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def poll_changes(self) -> List[Tuple[str, Optional[str]]]:
        """
        Report keys written by other writers since the last poll.

        Each changed key is reported once with its current raw value (None if
        it was removed), and every subscribed listener is called with it.
        """
        rows = self.conn.execute(
            """SELECT seq, key, writer_id FROM kv_changes
               WHERE seq > ? ORDER BY seq""",
            (self._last_seq,),
        ).fetchall()
        if not rows:
            return []
        self._last_seq = rows[-1]["seq"]

        changed: List[str] = []
        for row in rows:
            if row["writer_id"] == self.writer_id or row["key"] in changed:
                continue
            changed.append(row["key"])

        events = [(key, self.get(key)) for key in changed]
        for key, raw in events:
            logger.debug("External change detected for %s", key)
            for listener in list(self._listeners):
                listener(key, raw)
        return events

    # ── Internal ────────────────────────────────────────────────────────────

    def _record_change(self, key: str) -> None:
        # Only the latest change per key is kept; readers need nothing older
        self.conn.execute("DELETE FROM kv_changes WHERE key = ?", (key,))
        self.conn.execute(
            "INSERT INTO kv_changes (key, writer_id) VALUES (?, ?)",
            (key, self.writer_id),
        )

    def _max_seq(self) -> int:
        row = self.conn.execute("SELECT MAX(seq) AS seq FROM kv_changes").fetchone()
        return row["seq"] or 0

    @staticmethod
    def _escape_like(text: str) -> str:
        return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


# ---------------------------------------------------------------------------
# Explanation (for interviews)
# ---------------------------------------------------------------------------
# What this file does:
#   Wraps the SQLite tables in the tiny storage contract the engine needs:
#   get/set/remove by string key, plus "tell me when someone else wrote".
#
# Data flow:
#   PersistedStore.write() → set() → row upserted + change recorded
#   Other window's TickService → poll_changes() → listener(key, raw)
#
# Talking points:
#   1. Own writes are skipped by writer_id rather than by sequence number,
#      so another window's write to a different key that lands between
#      two of ours is still reported. If we overwrite the same key first,
#      our value is the current one and nothing needs adopting.
#   2. Deleted keys are reported with value None, which the envelope layer
#      treats as "reset to defaults".
#   3. The feed holds one row per key. A new write replaces the old row with
#      a higher sequence number, so the table never outgrows the key count.
