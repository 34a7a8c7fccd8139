"""
PersistedStore — a versioned envelope around one logical value.

Each storage key holds ``{"version": int, "updatedAt": iso, "data": ...}``.
Reading runs the caller's migration chain up to the current version, then an
optional validator, then a decode hook that turns the JSON into a typed
value. Any failure along the way falls back to defaults; nothing here raises
to the caller.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from typing import Any, Callable, Dict, Generic, Optional, Tuple, TypeVar

from studytrack.config import corrupt_key
from studytrack.data.repository import KeyValueStore
from studytrack.services.clock import SystemClock

logger = logging.getLogger(__name__)

T = TypeVar("T")

Migration = Callable[[Any], Any]
Validator = Callable[[Any], bool]

# Errors a decode/migrate hook may raise on data it cannot coerce
DATA_ERRORS = (ValueError, TypeError, KeyError, AttributeError)


class CorruptPayload(ValueError):
    """The raw string is not JSON, or looks like a broken envelope."""


def parse_envelope(raw: str) -> Tuple[int, Any, bool]:
    """
    Split a raw payload into ``(version, data, is_envelope)``.

    Anything that is valid JSON but not an envelope is treated as version-0
    data, which lets a migration chain adopt values written before envelopes
    existed. Raises CorruptPayload for unparseable text or an envelope with a
    non-integer version.
    """
    try:
        parsed = json.loads(raw)
    except ValueError as exc:
        raise CorruptPayload(f"invalid JSON: {exc}") from exc

    if isinstance(parsed, dict) and "version" in parsed and "data" in parsed:
        version = parsed["version"]
        if isinstance(version, bool) or not isinstance(version, int):
            raise CorruptPayload(f"envelope version is not an integer: {version!r}")
        return version, parsed["data"], True
    return 0, parsed, False


class PersistedStore(Generic[T]):
    """Read/write one versioned value under ``key``."""

    def __init__(
        self,
        kv: KeyValueStore,
        key: str,
        version: int,
        default_factory: Callable[[], T],
        migrations: Optional[Dict[int, Migration]] = None,
        validator: Optional[Validator] = None,
        decode: Optional[Callable[[Any], T]] = None,
        encode: Optional[Callable[[T], Any]] = None,
        clock: Optional[SystemClock] = None,
    ) -> None:
        self.kv = kv
        self.key = key
        self.version = version
        self.default_factory = default_factory
        self.migrations = migrations or {}
        self.validator = validator
        self.decode = decode or (lambda data: data)
        self.encode = encode or (lambda value: value)
        self.clock = clock or SystemClock()

    # ── Public API ──────────────────────────────────────────────────────────

    def read(self) -> T:
        """Load, migrate, validate and decode the stored value."""
        raw = self.kv.get(self.key)
        if raw is None:
            return self.default_factory()
        return self._load(raw)

    def write(self, value: T) -> None:
        """Persist the full envelope for ``value``."""
        envelope = {
            "version": self.version,
            "updatedAt": self.clock.now_iso(),
            "data": self.encode(value),
        }
        self.kv.set(self.key, json.dumps(envelope, separators=(",", ":")))

    def clear(self) -> None:
        self.kv.remove(self.key)

    def handle_external_change(self, raw: Optional[str]) -> Optional[T]:
        """
        React to another writer changing this key.

        Returns the value to adopt, or None when the change should be ignored.
        A deletion adopts defaults; a different schema version goes through
        the full read/migrate path.
        """
        if raw is None:
            return self.default_factory()
        try:
            version, data, is_envelope = parse_envelope(raw)
        except CorruptPayload as exc:
            logger.warning("Ignoring unparseable external write to %s: %s", self.key, exc)
            return None
        if not is_envelope:
            logger.warning("Ignoring non-envelope external write to %s", self.key)
            return None
        if version != self.version:
            return self._load(raw)
        if self.validator is not None and not self.validator(data):
            logger.warning("Ignoring external write to %s that failed validation", self.key)
            return None
        try:
            return self.decode(data)
        except DATA_ERRORS as exc:
            logger.warning("Ignoring undecodable external write to %s: %s", self.key, exc)
            return None

    # ── Internal ────────────────────────────────────────────────────────────

    def _load(self, raw: str) -> T:
        try:
            stored_version, data, _ = parse_envelope(raw)
        except CorruptPayload as exc:
            logger.warning("Corrupt payload under %s (%s); resetting to defaults", self.key, exc)
            self._archive_corrupt(raw)
            return self.default_factory()

        if stored_version > self.version:
            logger.warning(
                "%s has schema v%d, newer than supported v%d; using defaults",
                self.key, stored_version, self.version,
            )
            return self.default_factory()

        migrated = stored_version < self.version
        try:
            while stored_version < self.version:
                step = self.migrations.get(stored_version)
                if step is None:
                    logger.warning(
                        "No migration from v%d for %s; using defaults",
                        stored_version, self.key,
                    )
                    return self.default_factory()
                data = step(data)
                stored_version += 1
        except DATA_ERRORS as exc:
            logger.warning("Migration of %s failed (%s); resetting to defaults", self.key, exc)
            self._archive_corrupt(raw)
            return self.default_factory()

        if self.validator is not None and not self.validator(data):
            logger.warning("Stored value for %s failed validation; using defaults", self.key)
            return self.default_factory()

        try:
            value = self.decode(data)
        except DATA_ERRORS as exc:
            logger.warning("Could not decode %s (%s); resetting to defaults", self.key, exc)
            self._archive_corrupt(raw)
            return self.default_factory()

        if migrated or self.encode(value) != data:
            logger.debug("Writing back normalized value for %s", self.key)
            self.write(value)
        return value

    def _archive_corrupt(self, raw: str) -> None:
        side_key = corrupt_key(self.key, self.clock.now_ms())
        try:
            self.kv.set(side_key, raw)
            self.kv.remove(self.key)
        except sqlite3.Error as exc:
            logger.warning("Could not archive corrupt value of %s: %s", self.key, exc)
            return
        logger.info("Archived corrupt value of %s under %s", self.key, side_key)


# ---------------------------------------------------------------------------
# Explanation (for interviews)
# ---------------------------------------------------------------------------
# What this file does:
#   Gives every persisted object the same life cycle: envelope, migrate,
#   validate, decode, and write back when normalization changed something.
#
# Data flow:
#   kv.get(key) → parse_envelope → migrations[v](data) ... → validator
#   → decode(data) → typed value (and a write-back if it differs)
#
# Talking points:
#   1. Forward-incompatible data (written by a newer build) is left on disk
#      untouched and the session runs on defaults.
#   2. Corrupt data is copied to "<key>:corrupt:<ms>" before being removed,
#      so it can still be inspected by hand.
#   3. External changes are more conservative than reads: a payload that is
#      not a valid envelope is ignored instead of wiping local state.
