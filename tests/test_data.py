"""Unit tests for the data layer (database, key-value store, persisted envelopes)."""

import json
import pytest

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from studytrack import config
from studytrack.data.database import Database
from studytrack.data.migrations import (
    DAILY_TASK_MIGRATIONS,
    ensure_timer,
    is_daily_tasks_payload,
)
from studytrack.data.models import TimerMode, TimerPhase
from studytrack.data.persisted import CorruptPayload, PersistedStore, parse_envelope
from studytrack.data.repository import KeyValueStore
from studytrack.services.clock import ManualClock, start_of_day
from studytrack.services.session_service import SessionService


@pytest.fixture
def db(tmp_path):
    database = Database(db_path=tmp_path / "test.db")
    database.connect()
    yield database
    database.close()


@pytest.fixture
def kv(db):
    return KeyValueStore(db.conn)


@pytest.fixture
def clock():
    return ManualClock(start_of_day("2024-03-04") + 9 * 3600)


def _counter_store(kv, clock, validator=None):
    """A store whose value is a dict; v0 gains 'b', v1 gains 'c'."""
    return PersistedStore(
        kv,
        "test:counter",
        2,
        default_factory=lambda: {"default": True},
        migrations={
            0: lambda data: {**data, "b": 2},
            1: lambda data: {**data, "c": 3},
        },
        validator=validator,
        clock=clock,
    )


class TestKeyValueStore:
    def test_set_get_remove(self, kv):
        kv.set("a:1", "x")
        assert kv.get("a:1") == "x"
        kv.set("a:1", "y")
        assert kv.get("a:1") == "y"
        kv.remove("a:1")
        assert kv.get("a:1") is None

    def test_keys_by_prefix(self, kv):
        kv.set("a:1", "x")
        kv.set("a:2", "x")
        kv.set("b:1", "x")
        assert kv.keys("a:") == ["a:1", "a:2"]
        assert len(kv.keys()) == 3

    def test_keys_prefix_is_literal(self, kv):
        kv.set("a_b", "x")
        kv.set("axb", "x")
        assert kv.keys("a_") == ["a_b"]

    def test_poll_sees_other_connection(self, tmp_path):
        path = tmp_path / "shared.db"
        db1, db2 = Database(db_path=path), Database(db_path=path)
        kv1 = KeyValueStore(db1.connect())
        kv2 = KeyValueStore(db2.connect())
        seen = []
        kv2.subscribe(lambda key, raw: seen.append((key, raw)))

        kv1.set("k", "v")
        assert kv2.poll_changes() == [("k", "v")]
        assert seen == [("k", "v")]
        # Own writes are never reported back
        assert kv1.poll_changes() == []
        # Nothing new since the last poll
        assert kv2.poll_changes() == []

        kv1.remove("k")
        assert kv2.poll_changes() == [("k", None)]
        db1.close()
        db2.close()

    def test_change_feed_keeps_one_row_per_key(self, kv):
        for i in range(200):
            kv.set("a", str(i))
            kv.set("b", str(i))
        kv.remove("b")
        count = kv.conn.execute("SELECT COUNT(*) AS n FROM kv_changes").fetchone()["n"]
        assert count == 2

    def test_latest_write_wins_in_feed(self, tmp_path):
        path = tmp_path / "shared.db"
        db1, db2 = Database(db_path=path), Database(db_path=path)
        kv1 = KeyValueStore(db1.connect())
        kv2 = KeyValueStore(db2.connect())

        kv1.set("k", "one")
        kv1.set("k", "two")
        kv1.set("other", "x")
        assert kv2.poll_changes() == [("k", "two"), ("other", "x")]

        kv1.set("k", "three")
        # Our own overwrite replaces theirs; our value is already current
        kv2.set("k", "mine")
        assert kv2.poll_changes() == []
        assert kv1.poll_changes() == [("k", "mine")]
        db1.close()
        db2.close()

    def test_unsubscribe(self, tmp_path):
        path = tmp_path / "shared.db"
        db1, db2 = Database(db_path=path), Database(db_path=path)
        kv1 = KeyValueStore(db1.connect())
        kv2 = KeyValueStore(db2.connect())
        seen = []
        unsubscribe = kv2.subscribe(lambda key, raw: seen.append(key))
        unsubscribe()
        kv1.set("k", "v")
        kv2.poll_changes()
        assert seen == []
        db1.close()
        db2.close()


class TestEnvelope:
    def test_parse_envelope(self):
        assert parse_envelope('{"version": 3, "data": [1]}') == (3, [1], True)

    def test_bare_json_is_version_zero(self):
        assert parse_envelope('{"a": 1}') == (0, {"a": 1}, False)

    def test_invalid_json(self):
        with pytest.raises(CorruptPayload):
            parse_envelope("{not json")

    def test_non_integer_version(self):
        with pytest.raises(CorruptPayload):
            parse_envelope('{"version": "2", "data": {}}')


class TestPersistedStore:
    def test_missing_key_gives_defaults(self, kv, clock):
        assert _counter_store(kv, clock).read() == {"default": True}

    def test_write_then_read(self, kv, clock):
        store = _counter_store(kv, clock)
        store.write({"a": 1})
        assert store.read() == {"a": 1}
        stored = json.loads(kv.get("test:counter"))
        assert stored["version"] == 2
        assert stored["updatedAt"].startswith("2024-03-0")

    def test_legacy_value_is_migrated_and_written_back(self, kv, clock):
        kv.set("test:counter", json.dumps({"a": 1}))
        store = _counter_store(kv, clock)
        assert store.read() == {"a": 1, "b": 2, "c": 3}
        stored = json.loads(kv.get("test:counter"))
        assert stored["version"] == 2
        assert stored["data"] == {"a": 1, "b": 2, "c": 3}

    def test_partial_migration_chain(self, kv, clock):
        kv.set("test:counter", json.dumps({"version": 1, "data": {"a": 1}}))
        assert _counter_store(kv, clock).read() == {"a": 1, "c": 3}

    def test_corrupt_value_is_archived(self, kv, clock):
        kv.set("test:counter", "{not json")
        store = _counter_store(kv, clock)
        assert store.read() == {"default": True}
        assert kv.get("test:counter") is None
        archived = kv.keys("test:counter:corrupt:")
        assert len(archived) == 1
        assert kv.get(archived[0]) == "{not json"

    def test_newer_version_falls_back_to_defaults(self, kv, clock):
        raw = json.dumps({"version": 9, "data": {"a": 1}})
        kv.set("test:counter", raw)
        assert _counter_store(kv, clock).read() == {"default": True}
        # Left in place for the newer build that wrote it
        assert kv.get("test:counter") == raw

    def test_failed_validation_gives_defaults(self, kv, clock):
        kv.set("test:counter", json.dumps({"version": 2, "data": {"a": 1}}))
        store = _counter_store(kv, clock, validator=lambda data: "required" in data)
        assert store.read() == {"default": True}


class TestExternalChange:
    def test_deletion_adopts_defaults(self, kv, clock):
        assert _counter_store(kv, clock).handle_external_change(None) == {"default": True}

    def test_current_version_is_adopted(self, kv, clock):
        raw = json.dumps({"version": 2, "updatedAt": "x", "data": {"a": 5}})
        assert _counter_store(kv, clock).handle_external_change(raw) == {"a": 5}

    def test_unparseable_is_ignored(self, kv, clock):
        assert _counter_store(kv, clock).handle_external_change("{oops") is None

    def test_non_envelope_is_ignored(self, kv, clock):
        assert _counter_store(kv, clock).handle_external_change('{"a": 1}') is None

    def test_invalid_payload_is_ignored(self, kv, clock):
        store = _counter_store(kv, clock, validator=lambda data: "required" in data)
        raw = json.dumps({"version": 2, "data": {"a": 1}})
        assert store.handle_external_change(raw) is None

    def test_older_version_goes_through_migrations(self, kv, clock):
        raw = json.dumps({"version": 1, "data": {"a": 1}})
        assert _counter_store(kv, clock).handle_external_change(raw) == {"a": 1, "c": 3}


class TestMigrations:
    def test_bare_daily_task_list(self):
        migrated = DAILY_TASK_MIGRATIONS[0]([{"id": "d1"}])
        assert migrated["tasks"] == [{"id": "d1"}]
        assert migrated["statsByDate"] == {}
        assert is_daily_tasks_payload(migrated)

    def test_ensure_timer_drops_inconsistent_running_state(self):
        timer = ensure_timer({"mode": "pomodoro", "phase": "nap", "isRunning": True})
        assert timer.mode == TimerMode.POMODORO
        assert timer.phase == TimerPhase.FOCUS
        # Running without a start timestamp is not running
        assert timer.is_running is False
        assert timer.started_at_ms is None

    def test_ensure_timer_junk(self):
        timer = ensure_timer("garbage")
        assert timer.mode == TimerMode.STOPWATCH
        assert timer.accumulated_ms == 0

    def test_unversioned_profile_data_is_adopted(self, kv, clock):
        start = start_of_day("2024-03-01") + 10 * 3600
        kv.set(config.PROFILES_KEY, json.dumps({
            "activeProfileId": "p1",
            "profiles": [{"id": "p1", "name": "Old"}],
        }))
        kv.set(config.user_data_key("p1"), json.dumps({
            "subjects": [{"id": "s1", "name": "Math"}],
            "sessions": [{
                "id": "x1",
                "subjectId": "s1",
                "durationSeconds": 600,
                "startTime": start,
                "endTime": start + 600,
            }],
        }))

        svc = SessionService(kv, clock)
        profile = svc.open_profile()
        assert profile.id == "p1"
        assert profile.name == "Old"
        assert svc.data.profile_id == "p1"
        assert [s.name for s in svc.data.subjects] == ["Math"]
        assert svc.data.sessions[0].duration_seconds == 600

        stored = json.loads(kv.get(config.user_data_key("p1")))
        assert stored["version"] == config.APP_SCHEMA_VERSION
        assert stored["data"]["profileId"] == "p1"
