"""Unit tests for the service layer."""

import json
import pytest

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from studytrack import config
from studytrack.data.database import Database
from studytrack.data.models import (
    DailyTask,
    DailyTasksState,
    SessionPhase,
    SessionRating,
    SessionStatus,
    TaskBucket,
    TaskPriority,
    TimerMode,
    TimerPhase,
    TimerSettings,
    TimerSnapshot,
)
from studytrack.data.repository import KeyValueStore
from studytrack.services import daily_tasks as daily
from studytrack.services import timer_engine
from studytrack.services.clock import ManualClock, add_days, start_of_day
from studytrack.services.reconcile import normalize_user_data, renormalize
from studytrack.services.session_ledger import (
    normalize_session,
    normalize_sessions,
    rebalance_allocations,
)
from studytrack.services.session_service import SessionService
from studytrack.services.task_aggregator import recompute_task_totals

TODAY = "2024-03-04"
NOW = start_of_day(TODAY) + 9 * 3600


@pytest.fixture
def kv(tmp_path):
    db = Database(db_path=tmp_path / "test.db")
    conn = db.connect()
    yield KeyValueStore(conn)
    db.close()


@pytest.fixture
def clock():
    return ManualClock(NOW)


@pytest.fixture
def svc(kv, clock):
    service = SessionService(kv, clock)
    service.open_profile("Tester")
    return service


@pytest.fixture
def seeded_svc(svc):
    """Service with a subject and a task selected on the timer."""
    subject = svc.add_subject("Math").value
    task = svc.add_task("Homework", subject.id).value
    svc.select_subject(subject.id)
    svc.select_task(task.id)
    return svc, subject.id, task.id


# ── Timer engine ────────────────────────────────────────────────────────────

class TestTimerEngine:
    def test_elapsed_grows_while_running(self):
        timer = timer_engine.start(TimerSnapshot(), 1_000)
        assert timer_engine.elapsed_ms(timer, 1_000) == 0
        assert timer_engine.elapsed_ms(timer, 6_000) == 5_000

    def test_elapsed_constant_while_paused(self):
        timer = timer_engine.pause(timer_engine.start(TimerSnapshot(), 0), 4_000)
        assert timer_engine.elapsed_ms(timer, 4_000) == 4_000
        assert timer_engine.elapsed_ms(timer, 90_000) == 4_000

    def test_pause_resume_accumulates(self):
        timer = timer_engine.start(TimerSnapshot(), 0)
        timer = timer_engine.pause(timer, 3_000)
        timer = timer_engine.resume(timer, 10_000)
        assert timer_engine.elapsed_ms(timer, 12_000) == 5_000

    def test_transitions_are_idempotent(self):
        running = timer_engine.start(TimerSnapshot(), 0)
        assert timer_engine.start(running, 5_000) is running
        paused = timer_engine.pause(running, 1_000)
        assert timer_engine.pause(paused, 2_000) is paused

    def test_resume_without_time_is_noop(self):
        idle = TimerSnapshot()
        assert timer_engine.resume(idle, 1_000) is idle

    def test_clock_going_backwards_never_negative(self):
        timer = timer_engine.start(TimerSnapshot(), 10_000)
        assert timer_engine.elapsed_ms(timer, 5_000) == 0

    def test_next_phase(self):
        assert timer_engine.next_phase(TimerPhase.FOCUS, 0, 4) == (TimerPhase.SHORT_BREAK, 1)
        assert timer_engine.next_phase(TimerPhase.FOCUS, 3, 4) == (TimerPhase.LONG_BREAK, 4)
        assert timer_engine.next_phase(TimerPhase.SHORT_BREAK, 1, 4) == (TimerPhase.FOCUS, 1)
        assert timer_engine.next_phase(TimerPhase.LONG_BREAK, 4, 4) == (TimerPhase.FOCUS, 4)

    def test_complete_phase_if_due(self):
        settings = TimerSettings()
        timer = timer_engine.start(TimerSnapshot(mode=TimerMode.POMODORO), 0)
        focus_ms = settings.focus_minutes * 60_000
        assert timer_engine.complete_phase_if_due(timer, settings, focus_ms - 1) is None

        transition = timer_engine.complete_phase_if_due(timer, settings, focus_ms)
        assert transition.completed_focus
        assert transition.focus_elapsed_ms == focus_ms
        assert transition.snapshot.phase == TimerPhase.SHORT_BREAK
        assert transition.snapshot.cycle_count == 1
        assert transition.snapshot.is_running is False

    def test_stopwatch_never_completes_phase(self):
        timer = timer_engine.start(TimerSnapshot(), 0)
        assert timer_engine.complete_phase_if_due(timer, TimerSettings(), 10 ** 9) is None

    def test_switch_mode_keeps_outer_elapsed(self):
        timer = timer_engine.start(TimerSnapshot(), 0)
        switched = timer_engine.switch_mode(timer, TimerMode.POMODORO, 60_000)
        assert timer_engine.elapsed_ms(switched, 60_000) == 60_000
        assert timer_engine.phase_elapsed_ms(switched, 60_000) == 0
        assert switched.phase == TimerPhase.FOCUS


# ── Session ledger ──────────────────────────────────────────────────────────

class TestAllocations:
    def test_deficit_taken_from_preferred_first(self):
        result = rebalance_allocations({"A": 4000, "B": 100}, ["A", "B"], 3600, "A")
        assert result == {"A": 3500, "B": 100}

    def test_deficit_never_goes_negative(self):
        result = rebalance_allocations({"A": 4000, "B": 100}, ["A", "B"], 3600, "B")
        assert result == {"A": 3600}
        assert all(v >= 0 for v in result.values())

    def test_surplus_goes_to_preferred(self):
        result = rebalance_allocations({"A": 100}, ["A", "B"], 400, "B")
        assert result == {"A": 100, "B": 300}

    def test_empty_allocations_go_to_preferred(self):
        assert rebalance_allocations({}, ["A", "B"], 90, None) == {"A": 90}

    def test_unknown_tasks_are_dropped(self):
        result = rebalance_allocations({"A": 50, "Z": 500}, ["A"], 50, "A")
        assert result == {"A": 50}

    def test_zero_duration(self):
        assert rebalance_allocations({"A": 50}, ["A"], 0, "A") == {}


class TestSessionNormalization:
    def test_legacy_single_task_session(self):
        session = normalize_session({
            "id": "s1",
            "taskId": "t1",
            "accumulatedTime": 1200,
            "isActive": False,
            "startTime": 1_700_000_000_000,
            "rating": "great",
        }, NOW)
        assert session.status == SessionStatus.COMPLETED
        assert session.task_ids == ["t1"]
        assert session.task_allocations == {"t1": 1200}
        assert session.start_time == 1_700_000_000.0
        assert session.end_time == 1_700_000_000.0 + 1200
        assert session.reflection_rating == SessionRating.PRODUCTIVE

    def test_end_never_before_start_plus_duration(self):
        session = normalize_session(
            {"startTime": 1000, "endTime": 1100, "durationSeconds": 600}, NOW,
        )
        assert session.end_time == 1600

    def test_allocations_repaired_to_duration(self):
        session = normalize_session({
            "taskIds": ["a", "b"],
            "taskAllocations": {"a": 500, "b": 500, "c": 100},
            "durationSeconds": 600,
            "startTime": 1000,
        }, NOW)
        assert session.task_allocations == {"a": 100, "b": 500}
        assert sum(session.task_allocations.values()) == session.duration_seconds

    def test_duration_is_clamped(self):
        session = normalize_session({"durationSeconds": -50, "startTime": 1000}, NOW)
        assert session.duration_seconds == 0

    def test_corrupt_records_are_dropped(self):
        sessions = normalize_sessions([
            {"id": "good", "durationSeconds": 60, "startTime": 1000},
            {"id": "bad", "durationSeconds": "sixty"},
            "not a record",
        ], NOW)
        assert [s.id for s in sessions] == ["good"]

    def test_duplicate_ids_are_regenerated(self):
        sessions = normalize_sessions([
            {"id": "same", "durationSeconds": 60, "startTime": 1000},
            {"id": "same", "durationSeconds": 60, "startTime": 2000},
        ], NOW)
        assert sessions[0].id == "same"
        assert sessions[1].id != "same"

    def test_only_latest_active_session_survives(self):
        sessions = normalize_sessions([
            {"id": "a", "status": "running", "startTime": 100, "durationSeconds": 60, "taskIds": ["t"]},
            {"id": "b", "status": "running", "startTime": 200, "durationSeconds": 60, "taskIds": ["t"]},
        ], NOW)
        first, second = sessions
        assert first.status == SessionStatus.COMPLETED
        assert first.end_time == 160
        assert first.task_allocations == {"t": 60}
        assert second.status == SessionStatus.RUNNING


# ── Task aggregation & reconcile ────────────────────────────────────────────

def _raw_profile():
    yesterday = add_days(TODAY, -1)
    return {
        "profileId": "p1",
        "subjects": [{"id": "s1", "name": "Math"}],
        "tasks": [
            {"id": "t1", "title": "Homework", "subjectId": "s1", "dueDate": TODAY},
            {"id": "t2", "title": "Reading", "subjectId": "gone", "dueDate": yesterday},
        ],
        "sessions": [
            {"id": "x1", "subjectId": "s1", "taskIds": ["t1", "t2"],
             "taskAllocations": {"t1": 300, "t2": 300}, "durationSeconds": 600,
             "startTime": NOW - 7200},
            {"id": "x2", "subjectId": "s1", "taskIds": ["t1"], "durationSeconds": 900,
             "startTime": NOW - 3600},
            {"id": "x3", "status": "running", "subjectId": "s1", "taskIds": ["t1"],
             "durationSeconds": 120, "startTime": NOW - 120},
        ],
        "settings": {},
        "timer": {},
    }


class TestTaskAggregator:
    def test_totals_from_completed_sessions_only(self):
        data = normalize_user_data(_raw_profile(), NOW)
        t1, t2 = data.tasks
        assert t1.total_time_seconds == 1200
        assert t1.session_count == 2
        assert t2.total_time_seconds == 300
        assert t2.session_count == 1
        assert t1.last_worked_at == NOW - 3600 + 900

    def test_normalization_is_idempotent(self):
        once = normalize_user_data(_raw_profile(), NOW)
        twice = renormalize(once, NOW)
        assert once.to_dict() == twice.to_dict()

    def test_overdue_task_enters_backlog(self):
        data = normalize_user_data(_raw_profile(), NOW)
        t1, t2 = data.tasks
        assert t1.bucket == TaskBucket.DAILY
        assert t2.is_backlog
        assert t2.bucket == TaskBucket.BACKLOG
        assert t2.backlog_since == NOW

    def test_dangling_subject_is_cleared(self):
        data = normalize_user_data(_raw_profile(), NOW)
        assert data.tasks[1].subject_id is None

    def test_active_session_index(self):
        data = normalize_user_data(_raw_profile(), NOW)
        assert data.active_session_id == "x3"

    def test_recompute_ignores_stale_cached_totals(self):
        data = normalize_user_data(_raw_profile(), NOW)
        tasks = recompute_task_totals(data.tasks, [])
        assert all(t.total_time_seconds == 0 and t.session_count == 0 for t in tasks)

    def test_non_mapping_payload_raises(self):
        with pytest.raises(TypeError):
            normalize_user_data(["nope"], NOW)


# ── Daily tasks ─────────────────────────────────────────────────────────────

def _daily(task_id, scheduled_for, completed=False, priority=TaskPriority.MEDIUM):
    return DailyTask(id=task_id, title=task_id, priority=priority,
                     scheduled_for=scheduled_for, completed=completed,
                     created_at=f"{scheduled_for}T08:00:00.000Z")


class TestDailyTasks:
    def test_rollover_moves_unfinished_tasks(self):
        yesterday = add_days(TODAY, -1)
        tasks = [_daily("open", yesterday), _daily("done", yesterday, completed=True)]
        state = DailyTasksState(tasks=tasks, stats_by_date=daily.recompute_day_stats(tasks))

        rolled = daily.rollover_daily_tasks(state, TODAY, "now")
        moved = next(t for t in rolled.tasks if t.id == "open")
        assert moved.scheduled_for == TODAY
        assert moved.is_rolled_over
        assert moved.rollover_count == 1
        assert rolled.last_rollover_date == TODAY
        assert rolled.stats_by_date == daily.recompute_day_stats(rolled.tasks)
        assert rolled.stats_by_date[yesterday].total == 1
        assert rolled.stats_by_date[TODAY].rollover == 1

    def test_rollover_runs_once_per_day(self):
        state = DailyTasksState(tasks=[_daily("open", add_days(TODAY, -1))])
        rolled = daily.rollover_daily_tasks(state, TODAY, "now")
        assert daily.rollover_daily_tasks(rolled, TODAY, "later") is rolled

    def test_schedule_limited_to_today_or_tomorrow(self):
        ok = daily.build_daily_task("d1", "Read", TaskPriority.HIGH, add_days(TODAY, 1), TODAY, "now")
        assert ok
        too_far = daily.build_daily_task("d2", "Read", TaskPriority.HIGH, add_days(TODAY, 2), TODAY, "now")
        assert not too_far
        assert too_far.error == daily.SCHEDULE_ERROR
        past = daily.build_daily_task("d3", "Read", TaskPriority.HIGH, add_days(TODAY, -1), TODAY, "now")
        assert past.error == daily.SCHEDULE_ERROR

    def test_blank_title_rejected(self):
        assert not daily.build_daily_task("d1", "   ", TaskPriority.LOW, TODAY, TODAY, "now")

    def test_stats_follow_every_mutation(self):
        state = DailyTasksState()
        for task in (_daily("a", TODAY, priority=TaskPriority.HIGH), _daily("b", TODAY)):
            state = daily.insert_daily_task(state, task)
        state = daily.toggle_daily_task(state, "a", True, "now").value
        state = daily.update_daily_task(state, "b", TODAY, "now",
                                        priority=TaskPriority.LOW,
                                        scheduled_for=add_days(TODAY, 1)).value
        assert state.stats_by_date == daily.recompute_day_stats(state.tasks)
        assert state.stats_by_date[TODAY].completed == 1
        assert state.stats_by_date[add_days(TODAY, 1)].by_priority[TaskPriority.LOW] == 1

        state = daily.delete_daily_task(state, "a").value
        assert TODAY not in state.stats_by_date

    def test_unknown_task(self):
        result = daily.toggle_daily_task(DailyTasksState(), "missing", True, "now")
        assert result.error == daily.NOT_FOUND_ERROR

    def test_stale_stats_rebuilt_on_parse(self):
        state = daily.parse_daily_tasks_state({
            "tasks": [_daily("a", TODAY).to_dict()],
            "statsByDate": {TODAY: {"total": 9, "completed": 9}},
            "lastRolloverDate": TODAY,
        })
        assert state.stats_by_date[TODAY].total == 1
        assert state.stats_by_date[TODAY].completed == 0


# ── Session service ─────────────────────────────────────────────────────────

class TestSessionService:
    def test_requires_open_profile(self, kv, clock):
        service = SessionService(kv, clock)
        with pytest.raises(RuntimeError, match="open_profile"):
            service.add_subject("Math")

    def test_start_creates_running_session(self, seeded_svc):
        svc, subject_id, task_id = seeded_svc
        svc.start_timer()
        active = svc.data.active_session
        assert active is not None
        assert active.status == SessionStatus.RUNNING
        assert active.subject_id == subject_id
        assert active.task_ids == [task_id]

    def test_stop_records_session(self, seeded_svc, clock):
        svc, subject_id, task_id = seeded_svc
        svc.start_timer()
        clock.advance(1500)
        finished = svc.stop_timer().value

        assert finished.status == SessionStatus.COMPLETED
        assert finished.duration_seconds == 1500
        assert finished.task_allocations == {task_id: 1500}
        assert finished.end_time == clock.now()
        assert svc.data.active_session_id is None
        assert svc.pending_reflection.session_id == finished.id
        assert svc.data.timer.accumulated_ms == 0
        assert svc.data.timer.is_running is False

        task = svc.data.find_task(task_id)
        assert task.total_time_seconds == 1500
        assert task.session_count == 1

    def test_pause_freezes_session(self, seeded_svc, clock):
        svc, _, _ = seeded_svc
        svc.start_timer()
        clock.advance(600)
        svc.pause_timer()
        clock.advance(1000)
        assert svc.elapsed_ms() == 600_000
        assert svc.data.active_session.status == SessionStatus.PAUSED
        assert svc.data.active_session.duration_seconds == 600

        svc.resume_timer()
        clock.advance(300)
        assert svc.stop_timer().value.duration_seconds == 900

    def test_stop_without_subject_records_nothing(self, svc, clock):
        svc.start_timer()
        clock.advance(60)
        assert svc.stop_timer().value is None
        assert svc.data.sessions == []

    def test_deselecting_subject_mid_run_records_nothing(self, seeded_svc, clock):
        svc, _, task_id = seeded_svc
        svc.start_timer()
        clock.advance(600)
        svc.pause_timer()
        svc.resume_timer()
        svc.select_subject(None)
        clock.advance(60)

        assert svc.stop_timer().value is None
        assert svc.data.sessions == []
        assert svc.data.active_session_id is None
        assert svc.data.find_task(task_id).total_time_seconds == 0
        assert svc.pending_reflection is None

    def test_reflection(self, seeded_svc, clock):
        svc, _, _ = seeded_svc
        svc.start_timer()
        clock.advance(120)
        finished = svc.stop_timer().value
        result = svc.save_reflection(finished.id, "good", "  focused  ")
        assert result.value.reflection_rating == SessionRating.PRODUCTIVE
        assert result.value.reflection_comment == "focused"
        assert svc.pending_reflection is None
        assert not svc.save_reflection(finished.id, "amazing")

    def test_update_session_duration_bounds(self, seeded_svc, clock):
        svc, _, task_id = seeded_svc
        svc.start_timer()
        clock.advance(1500)
        finished = svc.stop_timer().value

        assert not svc.update_session_duration(finished.id, 0)
        assert not svc.update_session_duration(finished.id, 1441)
        edited = svc.update_session_duration(finished.id, 30).value
        assert edited.duration_seconds == 1800
        assert edited.end_time == finished.end_time
        assert edited.start_time == finished.end_time - 1800
        assert edited.task_allocations == {task_id: 1800}
        assert svc.data.find_task(task_id).total_time_seconds == 1800

    def test_active_session_cannot_be_edited(self, seeded_svc, clock):
        svc, _, _ = seeded_svc
        svc.start_timer()
        clock.advance(60)
        result = svc.update_session_duration(svc.data.active_session_id, 10)
        assert result.error == "Only completed sessions can be edited."

    def test_continue_session(self, seeded_svc, clock):
        svc, subject_id, task_id = seeded_svc
        svc.start_timer()
        clock.advance(1500)
        finished = svc.stop_timer().value

        continued = svc.continue_session(finished.id).value
        assert continued.id != finished.id
        assert continued.status == SessionStatus.RUNNING
        assert continued.subject_id == subject_id
        assert continued.task_ids == [task_id]
        assert svc.data.timer.is_running

        clock.advance(600)
        svc.stop_timer()
        task = svc.data.find_task(task_id)
        assert task.total_time_seconds == 2100
        assert task.session_count == 2

    def test_continue_session_needs_idle_timer(self, seeded_svc, clock):
        svc, _, _ = seeded_svc
        svc.start_timer()
        clock.advance(60)
        finished = svc.stop_timer().value
        svc.start_timer()
        result = svc.continue_session(finished.id)
        assert result.error == "Stop the current timer before continuing a session."

    def test_continue_with_new_task(self, seeded_svc, clock):
        svc, subject_id, first = seeded_svc
        second = svc.add_task("Reading", subject_id).value.id
        svc.start_timer()
        clock.advance(600)
        svc.continue_with_new_task(second)
        clock.advance(300)
        finished = svc.stop_timer().value

        assert finished.task_ids == [first, second]
        assert finished.task_allocations == {first: 600, second: 300}
        assert finished.duration_seconds == 900
        assert svc.data.find_task(second).total_time_seconds == 300

    def test_continue_with_new_task_needs_active_session(self, seeded_svc):
        svc, _, task_id = seeded_svc
        assert svc.continue_with_new_task(task_id).error == "No active session to extend."

    def test_select_task_closes_out_previous_time(self, seeded_svc, clock):
        svc, subject_id, first = seeded_svc
        second = svc.add_task("Reading", subject_id).value.id
        svc.start_timer()
        clock.advance(400)
        svc.select_task(second)
        clock.advance(200)
        svc.stop_timer()

        assert svc.data.find_task(first).total_time_seconds == 400
        assert svc.data.find_task(second).total_time_seconds == 200

    def test_pomodoro_focus_completion(self, seeded_svc, clock):
        svc, _, _ = seeded_svc
        svc.set_timer_mode(TimerMode.POMODORO)
        svc.start_timer()
        clock.advance(25 * 60)

        transition = svc.tick()
        assert transition.completed_focus
        assert svc.data.timer.phase == TimerPhase.SHORT_BREAK
        assert svc.data.active_session_id is None
        [session] = svc.data.sessions
        assert session.duration_seconds == 25 * 60
        assert session.mode == TimerMode.POMODORO
        assert session.phase == SessionPhase.FOCUS
        assert svc.pending_reflection.session_id == session.id
        assert svc.tick() is None

        # Break time is never recorded
        svc.start_timer()
        clock.advance(5 * 60)
        transition = svc.tick()
        assert not transition.completed_focus
        assert svc.data.timer.phase == TimerPhase.FOCUS
        assert len(svc.data.sessions) == 1

    def test_reset_needs_confirmation(self, seeded_svc, clock):
        svc, _, _ = seeded_svc
        svc.start_timer()
        clock.advance(60)
        assert not svc.reset_timer()
        assert svc.reset_timer(force=True)
        assert svc.data.sessions == []
        assert svc.elapsed_ms() == 0

    def test_delete_active_session_resets_timer(self, seeded_svc, clock):
        svc, _, _ = seeded_svc
        svc.start_timer()
        clock.advance(60)
        svc.delete_session(svc.data.active_session_id)
        assert svc.data.sessions == []
        assert svc.data.timer.is_running is False

    def test_delete_subject_clears_references(self, seeded_svc):
        svc, subject_id, task_id = seeded_svc
        svc.delete_subject(subject_id)
        assert svc.data.find_task(task_id).subject_id is None
        assert svc.data.timer.subject_id is None

    def test_daily_rollover_on_tick(self, svc, clock):
        task = svc.add_daily_task("Read", TaskPriority.HIGH).value
        clock.advance(86400)
        svc.tick()
        moved = svc.daily.tasks[0]
        assert moved.id == task.id
        assert moved.scheduled_for == clock.today()
        assert moved.is_rolled_over
        assert moved.rollover_count == 1
        assert svc.daily.stats_by_date == daily.recompute_day_stats(svc.daily.tasks)
        assert svc.data.last_rollover_date == clock.today()

    def test_daily_task_schedule_error(self, svc):
        result = svc.add_daily_task("Read", scheduled_for=add_days(TODAY, 2))
        assert result.error == daily.SCHEDULE_ERROR

    def test_timer_settings(self, svc):
        assert svc.update_timer_settings(focus_minutes=50).value.timer.focus_minutes == 50
        assert not svc.update_timer_settings(nap_minutes=5)

    def test_state_survives_reopen(self, seeded_svc, kv, clock):
        svc, _, task_id = seeded_svc
        svc.start_timer()
        clock.advance(300)

        reopened = SessionService(kv, clock)
        reopened.open_profile()
        assert reopened.elapsed_ms() == 300_000
        assert reopened.data.active_session is not None
        clock.advance(100)
        assert reopened.stop_timer().value.duration_seconds == 400


class TestCrossWindow:
    """Two services on one database file, as two app windows would be."""

    @pytest.fixture
    def windows(self, seeded_svc, tmp_path, clock):
        first, subject_id, task_id = seeded_svc
        db = Database(db_path=tmp_path / "test.db")
        kv = KeyValueStore(db.connect())
        second = SessionService(kv, clock)
        second.open_profile()
        yield first, second, kv, task_id
        second.close()
        db.close()

    def test_both_windows_share_the_profile(self, windows):
        first, second, _, _ = windows
        assert second.profile.id == first.profile.id
        assert [s.name for s in second.data.subjects] == ["Math"]

    def test_recorded_session_is_adopted(self, windows, clock):
        first, second, kv, task_id = windows
        first.start_timer()
        clock.advance(900)
        finished = first.stop_timer().value

        keys = [key for key, _ in kv.poll_changes()]
        assert config.user_data_key(first.profile.id) in keys
        assert [s.id for s in second.data.sessions] == [finished.id]
        assert second.data.sessions[0].duration_seconds == 900
        assert second.data.find_task(task_id).total_time_seconds == 900
        assert second.data.active_session_id is None
        # Reflections are prompted only in the window that stopped the timer
        assert second.pending_reflection is None

    def test_running_session_is_adopted(self, windows, clock):
        first, second, kv, _ = windows
        first.start_timer()
        kv.poll_changes()
        assert second.data.active_session_id == first.data.active_session_id
        assert second.data.timer.is_running

        clock.advance(120)
        assert second.elapsed_ms() == 120_000

    def test_duplicate_running_sessions_are_deduplicated(self, windows, kv, clock):
        first, second, second_kv, task_id = windows
        payload = first.data.to_dict()
        subject_id = first.data.timer.subject_id
        payload["sessions"] = [
            {"id": "r1", "status": "running", "subjectId": subject_id, "taskIds": [task_id],
             "startTime": NOW - 600, "durationSeconds": 60},
            {"id": "r2", "status": "running", "subjectId": subject_id, "taskIds": [task_id],
             "startTime": NOW - 300, "durationSeconds": 60},
        ]
        kv.set(config.user_data_key(first.profile.id), json.dumps({
            "version": config.APP_SCHEMA_VERSION,
            "updatedAt": "2024-03-04T09:00:00.000Z",
            "data": payload,
        }))

        second_kv.poll_changes()
        older, latest = second.data.sessions
        assert second.data.active_session_id == "r2"
        assert latest.status == SessionStatus.RUNNING
        assert older.status == SessionStatus.COMPLETED
        assert second.data.find_task(task_id).total_time_seconds == 60

    def test_pending_reflection_dropped_when_session_deleted_elsewhere(self, windows, kv, clock):
        first, second, second_kv, _ = windows
        second.start_timer()
        clock.advance(300)
        finished = second.stop_timer().value
        assert second.pending_reflection.session_id == finished.id

        kv.poll_changes()
        assert first.delete_session(finished.id)
        second_kv.poll_changes()
        assert second.data.sessions == []
        assert second.pending_reflection is None

    def test_unparseable_write_is_ignored(self, windows, kv):
        first, second, _, _ = windows
        before = second.data
        kv.set(config.user_data_key(first.profile.id), "{broken")
        second.handle_storage_change(config.user_data_key(first.profile.id), "{broken")
        assert second.data is before

    def test_deleted_key_resets_to_defaults(self, windows, kv):
        first, second, second_kv, _ = windows
        kv.remove(config.user_data_key(first.profile.id))
        second_kv.poll_changes()
        assert second.data.subjects == []
        assert second.data.sessions == []


class TestExportImport:
    def _other_service(self, tmp_path, clock):
        db = Database(db_path=tmp_path / "other.db")
        service = SessionService(KeyValueStore(db.connect()), clock)
        service.open_profile("Other")
        return service

    def _with_history(self, seeded_svc, clock):
        svc, _, _ = seeded_svc
        svc.start_timer()
        clock.advance(1500)
        finished = svc.stop_timer().value
        svc.save_reflection(finished.id, SessionRating.AVERAGE, "ok")
        return svc

    def test_round_trip(self, seeded_svc, clock, tmp_path):
        svc = self._with_history(seeded_svc, clock)
        other = self._other_service(tmp_path, clock)

        assert other.import_profile_data(svc.export_profile_data())
        exported = svc.data.to_dict()
        imported = other.data.to_dict()
        exported.pop("profileId")
        imported.pop("profileId")
        assert imported == exported
        assert other.data.profile_id == other.profile.id

    def test_legacy_bundle_round_trip(self, seeded_svc, clock, tmp_path):
        svc = self._with_history(seeded_svc, clock)
        other = self._other_service(tmp_path, clock)

        assert other.import_profile_data(svc.export_legacy_bundle())
        assert [s.name for s in other.data.subjects] == ["Math"]
        assert [t.title for t in other.data.tasks] == ["Homework"]
        [session] = other.data.sessions
        assert session.duration_seconds == 1500
        assert session.reflection_rating == SessionRating.AVERAGE
        assert other.data.tasks[0].total_time_seconds == 1500

    def test_garbage_is_rejected_without_changes(self, seeded_svc, clock):
        svc = self._with_history(seeded_svc, clock)
        before = svc.data.to_dict()
        assert not svc.import_profile_data("not json")
        assert not svc.import_profile_data("[1, 2]")
        assert svc.import_profile_data(json.dumps({"foo": 1})).error == "Unrecognized import format."
        assert svc.data.to_dict() == before

    def test_reset_profile_data(self, seeded_svc):
        svc, _, _ = seeded_svc
        svc.reset_profile_data()
        assert svc.data.subjects == []
        assert svc.data.tasks == []
