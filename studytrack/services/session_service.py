"""
Session Service — the state container the UI talks to.

Holds the open profile's UserData and DailyTasksState. Every operation
computes the next state with the pure functions in this package, runs it
back through the reconcile pipeline and persists the full envelope. Errors a
user can cause come back as ``Result.failure(...)``; nothing is half-applied.

The live timer and the ledger are kept in step here: while a subject is
selected and the timer has time on it (outside pomodoro breaks) there is
exactly one running/paused session mirroring it.
"""

from __future__ import annotations

import json
import logging
from dataclasses import fields, replace
from typing import Any, Dict, List, Optional, Tuple

from studytrack import config
from studytrack.analytics import engine as analytics_engine
from studytrack.data.coerce import (
    as_finite_number,
    as_id,
    is_iso_date,
    is_record,
    new_id,
    unique_ids,
)
from studytrack.data.migrations import (
    DAILY_TASK_MIGRATIONS,
    PROFILE_MIGRATIONS,
    USER_DATA_MIGRATIONS,
    ensure_goal_settings,
    ensure_settings,
    ensure_timer,
    ensure_timer_settings,
    is_daily_tasks_payload,
    is_profiles_payload,
    is_user_data_payload,
)
from studytrack.data.models import (
    DailyTasksState,
    PendingReflection,
    Profile,
    ProfilesState,
    Result,
    StudySession,
    Subject,
    Task,
    TaskPriority,
    TimerMode,
    TimerSnapshot,
    UserData,
)
from studytrack.data.persisted import DATA_ERRORS, PersistedStore
from studytrack.data.repository import KeyValueStore
from studytrack.services import daily_tasks as daily
from studytrack.services import timer_engine
from studytrack.services.clock import SystemClock, end_of_day
from studytrack.services.legacy_bundle import build_legacy_bundle, legacy_bundle_to_payload
from studytrack.services.reconcile import empty_user_data, normalize_user_data, renormalize
from studytrack.services.session_ledger import (
    apply_reflection,
    build_active_session,
    extend_task_set,
    finalize_session,
    force_complete,
    normalize_rating,
    replace_session,
    sync_active_session,
    update_duration,
)

logger = logging.getLogger(__name__)

# Marks "argument not passed" where None is a meaningful value
_UNSET: Any = object()


def _decode_profiles(data: Dict[str, Any]) -> ProfilesState:
    profiles = []
    for item in data.get("profiles", []):
        if is_record(item) and as_id(item.get("id")) and isinstance(item.get("name"), str):
            profiles.append(Profile(
                id=item["id"],
                name=item["name"],
                created_at=item.get("createdAt") or "",
                last_active_at=item.get("lastActiveAt") or "",
            ))
    return ProfilesState(active_profile_id=data.get("activeProfileId"), profiles=profiles)


class SessionService:
    """
    Application state for one open profile.

    Call ``open_profile()`` before anything else; ``reload()`` re-reads
    storage, and ``handle_storage_change()`` is subscribed to the key-value
    store so writes from another window are adopted on the next poll.
    """

    def __init__(self, kv: KeyValueStore, clock: Optional[SystemClock] = None) -> None:
        self.kv = kv
        self.clock = clock or SystemClock()
        self.profiles_store: PersistedStore[ProfilesState] = PersistedStore(
            kv,
            config.PROFILES_KEY,
            config.PROFILES_SCHEMA_VERSION,
            default_factory=ProfilesState,
            migrations=PROFILE_MIGRATIONS,
            validator=is_profiles_payload,
            decode=_decode_profiles,
            encode=lambda state: state.to_dict(),
            clock=self.clock,
        )
        self.profiles: ProfilesState = self.profiles_store.read()
        self.profile: Optional[Profile] = None
        self.data: Optional[UserData] = None
        self.daily: DailyTasksState = DailyTasksState()
        self.pending_reflection: Optional[PendingReflection] = None
        self._data_store: Optional[PersistedStore[UserData]] = None
        self._daily_store: Optional[PersistedStore[DailyTasksState]] = None
        self._unsubscribe = kv.subscribe(self.handle_storage_change)

    # ── Profile & load cycle ────────────────────────────────────────────────

    def open_profile(self, name: str = "Default") -> Profile:
        """Open the active profile, creating one called ``name`` if none exist."""
        now_iso = self.clock.now_iso()
        profile = self.profiles.find(self.profiles.active_profile_id)
        if profile is None and self.profiles.profiles:
            profile = self.profiles.profiles[0]
        if profile is None:
            profile = Profile(id=new_id(), name=name.strip() or "Default",
                              created_at=now_iso, last_active_at=now_iso)
            self.profiles.profiles.append(profile)
            logger.info("Created profile %s (%s)", profile.name, profile.id)

        profile.last_active_at = now_iso
        self.profiles.active_profile_id = profile.id
        self.profiles_store.write(self.profiles)
        self.profile = profile

        self._data_store = PersistedStore(
            self.kv,
            config.user_data_key(profile.id),
            config.APP_SCHEMA_VERSION,
            default_factory=lambda: empty_user_data(profile.id, self.clock.now()),
            migrations=USER_DATA_MIGRATIONS,
            validator=is_user_data_payload,
            decode=lambda data: normalize_user_data(data, self.clock.now(), profile.id),
            encode=lambda value: value.to_dict(),
            clock=self.clock,
        )
        self._daily_store = PersistedStore(
            self.kv,
            config.daily_tasks_key(profile.id),
            config.DAILY_TASKS_SCHEMA_VERSION,
            default_factory=DailyTasksState,
            migrations=DAILY_TASK_MIGRATIONS,
            validator=is_daily_tasks_payload,
            decode=daily.parse_daily_tasks_state,
            encode=daily.encode_daily_tasks_state,
            clock=self.clock,
        )
        self.reload()
        logger.info("Opened profile %s (%s)", profile.name, profile.id)
        return profile

    def reload(self) -> UserData:
        """Re-read, migrate and normalize everything for the open profile."""
        self._require_profile()
        self.data = self._data_store.read()
        self.daily = self._daily_store.read()
        self.pending_reflection = None
        self.rollover_daily_tasks()
        return self.data

    def close(self) -> None:
        self._unsubscribe()

    def handle_storage_change(self, key: str, raw: Optional[str]) -> None:
        """Adopt a value another writer stored under one of our keys."""
        if key == config.PROFILES_KEY:
            value = self.profiles_store.handle_external_change(raw)
            if value is not None:
                self.profiles = value
            return
        if self._data_store is not None and key == self._data_store.key:
            value = self._data_store.handle_external_change(raw)
            if value is None:
                return
            self.data = value
            pending = self.pending_reflection
            if pending is not None and value.find_session(pending.session_id) is None:
                self.pending_reflection = None
            logger.info("Adopted external change to %s", key)
            return
        if self._daily_store is not None and key == self._daily_store.key:
            value = self._daily_store.handle_external_change(raw)
            if value is not None:
                self.daily = value
                logger.info("Adopted external change to %s", key)

    # ── Internal ────────────────────────────────────────────────────────────

    def _require_profile(self) -> None:
        if self._data_store is None or self.profile is None:
            raise RuntimeError("No profile is open; call open_profile() first.")

    def _require_data(self) -> UserData:
        self._require_profile()
        return self.data

    def _commit(self, data: UserData) -> UserData:
        data = renormalize(replace(data, profile_id=self.profile.id), self.clock.now())
        data = replace(data, updated_at=self.clock.now_iso())
        self.data = data
        self._data_store.write(data)
        return data

    def _commit_daily(self, state: DailyTasksState) -> DailyTasksState:
        self.daily = state
        self._daily_store.write(state)
        return state

    def _now(self) -> Tuple[float, int]:
        now = self.clock.now()
        return now, int(now * 1000)

    @staticmethod
    def _with_sessions(data: UserData, sessions: List[StudySession],
                       active_id: Optional[str]) -> UserData:
        return replace(data, sessions=sessions, active_session_id=active_id)

    def _mirror_timer(self, data: UserData, timer: TimerSnapshot, now: float, now_ms: int) -> UserData:
        """Create or sync the active session so it reflects ``timer``."""
        data = replace(data, timer=timer)
        tracking = (
            timer.subject_id is not None
            and not timer_engine.is_on_break(timer)
            and (timer.is_running or timer.accumulated_ms > 0)
        )
        if not tracking:
            return data

        elapsed = timer_engine.elapsed_ms(timer, now_ms) // 1000
        active = data.active_session
        if active is None:
            active = build_active_session(
                [timer.task_id] if timer.task_id else [],
                timer.task_id,
                timer.subject_id,
                timer.mode,
                timer_engine.session_phase(timer.mode),
                start_time=now - elapsed,
                now=now,
                duration_seconds=elapsed,
                running=timer.is_running,
            )
            logger.info("Session %s started", active.id)
            return self._with_sessions(data, [*data.sessions, active], active.id)

        synced = sync_active_session(active, elapsed, now, timer.is_running, subject_id=timer.subject_id)
        return self._with_sessions(data, replace_session(data.sessions, synced), synced.id)

    def _retire_active(self, data: UserData) -> UserData:
        """Close a leftover active session: empty ones vanish, others complete."""
        active = data.active_session
        if active is None:
            return data
        if active.duration_seconds <= 0:
            sessions = [s for s in data.sessions if s.id != active.id]
        else:
            logger.info("Completing stale active session %s", active.id)
            sessions = replace_session(data.sessions, force_complete(active))
        return self._with_sessions(data, sessions, None)

    def _discard_active(self, data: UserData) -> UserData:
        """Drop the live session without recording it."""
        active = data.active_session
        if active is None:
            return data
        logger.info("Discarding unrecorded session %s", active.id)
        return self._with_sessions(data, [s for s in data.sessions if s.id != active.id], None)

    def _materialize(self, data: UserData, timer: TimerSnapshot, elapsed_ms: int,
                     now: float) -> Tuple[UserData, Optional[StudySession]]:
        """Turn the timer's elapsed time into a completed session."""
        seconds = elapsed_ms // 1000
        if seconds <= 0 or timer.subject_id is None:
            return self._discard_active(data), None

        active = data.active_session
        if active is None:
            active = build_active_session(
                [timer.task_id] if timer.task_id else [],
                timer.task_id,
                timer.subject_id,
                timer.mode,
                timer_engine.session_phase(timer.mode),
                start_time=now - seconds,
                now=now,
                duration_seconds=seconds,
                running=False,
            )
            sessions = [*data.sessions, active]
        else:
            sessions = list(data.sessions)

        finished = finalize_session(replace(active, subject_id=timer.subject_id), seconds, now)
        logger.info("Session %s completed (%ds)", finished.id, finished.duration_seconds)
        return self._with_sessions(data, replace_session(sessions, finished), None), finished

    # ── Subjects ────────────────────────────────────────────────────────────

    def add_subject(self, name: str, color: Optional[str] = None) -> Result:
        data = self._require_data()
        name = (name or "").strip()
        if not name:
            return Result.failure("Subject name is required.")
        now_iso = self.clock.now_iso()
        subject = Subject(id=new_id(), name=name, color=color or config.DEFAULT_SUBJECT_COLOR,
                          created_at=now_iso, updated_at=now_iso)
        self._commit(replace(data, subjects=[*data.subjects, subject]))
        return Result.success(subject)

    def update_subject(self, subject_id: str, name: Optional[str] = None,
                       color: Optional[str] = None) -> Result:
        data = self._require_data()
        subject = data.find_subject(subject_id)
        if subject is None:
            return Result.failure("Subject not found.")
        if name is not None and not name.strip():
            return Result.failure("Subject name is required.")
        updated = replace(
            subject,
            name=name.strip() if name is not None else subject.name,
            color=color or subject.color,
            updated_at=self.clock.now_iso(),
        )
        subjects = [updated if s.id == subject_id else s for s in data.subjects]
        self._commit(replace(data, subjects=subjects))
        return Result.success(updated)

    def delete_subject(self, subject_id: str) -> Result:
        """Remove a subject. Tasks, sessions and the timer keep no reference."""
        data = self._require_data()
        if data.find_subject(subject_id) is None:
            return Result.failure("Subject not found.")
        subjects = [s for s in data.subjects if s.id != subject_id]
        # reconcile nulls the dangling subject ids
        self._commit(replace(data, subjects=subjects))
        return Result.success()

    # ── Tasks ───────────────────────────────────────────────────────────────

    def add_task(
        self,
        title: str,
        subject_id: Optional[str] = None,
        priority: str = TaskPriority.MEDIUM,
        due_date: Optional[str] = None,
        description: str = "",
    ) -> Result:
        data = self._require_data()
        title = (title or "").strip()
        if not title:
            return Result.failure("Task title is required.")
        if priority not in TaskPriority.ALL:
            return Result.failure(f"Unknown priority: {priority!r}")
        if subject_id is not None and data.find_subject(subject_id) is None:
            return Result.failure("Subject not found.")
        due_date = due_date or self.clock.today()
        if not is_iso_date(due_date):
            return Result.failure("Due date must be an ISO date (YYYY-MM-DD).")

        now_iso = self.clock.now_iso()
        task = Task(
            id=new_id(),
            title=title,
            description=(description or "").strip(),
            subject_id=subject_id,
            priority=priority,
            due_date=due_date,
            deadline=end_of_day(due_date),
            order=max((t.order for t in data.tasks), default=0) + 1,
            created_at=now_iso,
            updated_at=now_iso,
        )
        committed = self._commit(replace(data, tasks=[*data.tasks, task]))
        return Result.success(committed.find_task(task.id))

    def update_task(
        self,
        task_id: str,
        title: Optional[str] = None,
        description: Optional[str] = None,
        subject_id: Any = _UNSET,
        priority: Optional[str] = None,
        due_date: Any = _UNSET,
    ) -> Result:
        data = self._require_data()
        task = data.find_task(task_id)
        if task is None:
            return Result.failure("Task not found.")
        if title is not None and not title.strip():
            return Result.failure("Task title is required.")
        if priority is not None and priority not in TaskPriority.ALL:
            return Result.failure(f"Unknown priority: {priority!r}")
        if subject_id is not _UNSET and subject_id is not None and data.find_subject(subject_id) is None:
            return Result.failure("Subject not found.")
        if due_date is not _UNSET and due_date is not None and not is_iso_date(due_date):
            return Result.failure("Due date must be an ISO date (YYYY-MM-DD).")

        next_due = task.due_date if due_date is _UNSET else due_date
        updated = replace(
            task,
            title=title.strip() if title is not None else task.title,
            description=description.strip() if description is not None else task.description,
            subject_id=task.subject_id if subject_id is _UNSET else subject_id,
            priority=priority or task.priority,
            due_date=next_due,
            deadline=end_of_day(next_due) if next_due else None,
            updated_at=self.clock.now_iso(),
        )
        tasks = [updated if t.id == task_id else t for t in data.tasks]
        committed = self._commit(replace(data, tasks=tasks))
        return Result.success(committed.find_task(task_id))

    def toggle_task(self, task_id: str, completed: bool) -> Result:
        data = self._require_data()
        task = data.find_task(task_id)
        if task is None:
            return Result.failure("Task not found.")
        now_iso = self.clock.now_iso()
        updated = replace(
            task,
            completed=completed,
            completed_at=now_iso if completed else None,
            updated_at=now_iso,
        )
        tasks = [updated if t.id == task_id else t for t in data.tasks]
        committed = self._commit(replace(data, tasks=tasks))
        return Result.success(committed.find_task(task_id))

    def delete_task(self, task_id: str) -> Result:
        """Remove a task. Recorded sessions keep their allocations as history."""
        data = self._require_data()
        if data.find_task(task_id) is None:
            return Result.failure("Task not found.")
        self._commit(replace(data, tasks=[t for t in data.tasks if t.id != task_id]))
        return Result.success()

    # ── Timer ───────────────────────────────────────────────────────────────

    def elapsed_ms(self) -> int:
        return timer_engine.elapsed_ms(self._require_data().timer, self._now()[1])

    def phase_remaining_ms(self) -> int:
        data = self._require_data()
        return timer_engine.phase_remaining_ms(data.timer, data.settings.timer, self._now()[1])

    def select_subject(self, subject_id: Optional[str]) -> Result:
        data = self._require_data()
        if subject_id is not None and data.find_subject(subject_id) is None:
            return Result.failure("Subject not found.")
        now, now_ms = self._now()
        active = data.active_session
        if active is not None:
            data = self._with_sessions(
                data, replace_session(data.sessions, replace(active, subject_id=subject_id)), active.id,
            )
        timer = replace(data.timer, subject_id=subject_id)
        self._commit(self._mirror_timer(data, timer, now, now_ms))
        return Result.success(self.data.timer)

    def select_task(self, task_id: Optional[str]) -> Result:
        """
        Point the timer at another task. Time already on the clock is closed
        out as a session for the previous task, then counting restarts.
        """
        data = self._require_data()
        if task_id is not None and data.find_task(task_id) is None:
            return Result.failure("Task not found.")
        timer = data.timer
        if task_id == timer.task_id:
            return Result.success(timer)

        now, now_ms = self._now()
        elapsed = timer_engine.elapsed_ms(timer, now_ms)
        if elapsed > 0 and not timer_engine.is_on_break(timer):
            data, _ = self._materialize(data, timer, elapsed, now)
            timer = timer_engine.restart_accumulators(timer, now_ms)
        timer = replace(timer, task_id=task_id)
        self._commit(self._mirror_timer(data, timer, now, now_ms))
        return Result.success(self.data.timer)

    def set_timer_mode(self, mode: str) -> Result:
        data = self._require_data()
        if mode not in (TimerMode.STOPWATCH, TimerMode.POMODORO):
            return Result.failure(f"Unknown timer mode: {mode!r}")
        if mode == data.timer.mode:
            return Result.success(data.timer)
        now, now_ms = self._now()
        timer = timer_engine.switch_mode(data.timer, mode, now_ms)
        active = data.active_session
        if active is not None:
            relabeled = replace(active, mode=mode, phase=timer_engine.session_phase(mode))
            data = self._with_sessions(data, replace_session(data.sessions, relabeled), active.id)
        self._commit(self._mirror_timer(data, timer, now, now_ms))
        logger.info("Timer mode set to %s", mode)
        return Result.success(self.data.timer)

    def start_timer(self) -> Result:
        data = self._require_data()
        if data.timer.is_running:
            return Result.success(data.timer)
        now, now_ms = self._now()
        if timer_engine.elapsed_ms(data.timer, now_ms) == 0:
            # A fresh run never continues a session left over from elsewhere
            data = self._retire_active(data)
        timer = timer_engine.start(data.timer, now_ms)
        self._commit(self._mirror_timer(data, timer, now, now_ms))
        logger.info("Timer started (%s)", timer.mode)
        return Result.success(self.data.timer)

    def pause_timer(self) -> Result:
        data = self._require_data()
        if not data.timer.is_running:
            return Result.success(data.timer)
        now, now_ms = self._now()
        timer = timer_engine.pause(data.timer, now_ms)
        self._commit(self._mirror_timer(data, timer, now, now_ms))
        logger.info("Timer paused at %dms", timer.accumulated_ms)
        return Result.success(self.data.timer)

    def resume_timer(self) -> Result:
        data = self._require_data()
        now, now_ms = self._now()
        timer = timer_engine.resume(data.timer, now_ms)
        if timer is data.timer:
            return Result.success(timer)
        self._commit(self._mirror_timer(data, timer, now, now_ms))
        logger.info("Timer resumed")
        return Result.success(self.data.timer)

    def stop_timer(self) -> Result:
        """
        Stop and record. The value is the completed session, or None when
        nothing was recorded (no subject, nothing elapsed, or on a break).
        """
        data = self._require_data()
        now, now_ms = self._now()
        timer = data.timer
        finished = None
        if timer_engine.should_materialize(timer, now_ms):
            data, finished = self._materialize(data, timer, timer_engine.elapsed_ms(timer, now_ms), now)
        else:
            data = self._discard_active(data)
        if finished is not None:
            self.pending_reflection = PendingReflection(
                finished.id, finished.subject_id, finished.duration_seconds,
            )
        self._commit(replace(data, timer=timer_engine.reset(timer)))
        return Result.success(finished)

    def reset_timer(self, force: bool = False) -> Result:
        """Discard the clock and the live session without recording anything."""
        data = self._require_data()
        now, now_ms = self._now()
        elapsed = timer_engine.elapsed_ms(data.timer, now_ms)
        if data.settings.timer.prevent_accidental_reset and elapsed > 0 and not force:
            return Result.failure("The timer has recorded time; confirm the reset to discard it.")
        sessions = [s for s in data.sessions if not s.is_active]
        data = self._with_sessions(data, sessions, None)
        self._commit(replace(data, timer=timer_engine.reset(data.timer)))
        logger.info("Timer reset, %dms discarded", elapsed)
        return Result.success(self.data.timer)

    def tick(self) -> Optional[timer_engine.PhaseTransition]:
        """
        Periodic host callback. Advances a due pomodoro phase and runs the
        daily rollover when the date has changed. Safe at any cadence.
        """
        if self.data is None:
            return None
        if self.daily.last_rollover_date != self.clock.today():
            self.rollover_daily_tasks()

        data = self.data
        now, now_ms = self._now()
        transition = timer_engine.complete_phase_if_due(data.timer, data.settings.timer, now_ms)
        if transition is None:
            return None

        if transition.completed_focus:
            data, finished = self._materialize(data, data.timer, transition.focus_elapsed_ms, now)
            if finished is not None:
                self.pending_reflection = PendingReflection(
                    finished.id, finished.subject_id, finished.duration_seconds,
                )
        else:
            data = self._retire_active(data)
        self._commit(self._mirror_timer(data, transition.snapshot, now, now_ms))
        return transition

    # ── Sessions ────────────────────────────────────────────────────────────

    def save_reflection(self, session_id: str, rating: Optional[str], comment: str = "") -> Result:
        data = self._require_data()
        session = data.find_session(session_id)
        if session is None:
            return Result.failure("Session not found.")
        normalized = normalize_rating(rating) if rating is not None else None
        if rating is not None and normalized is None:
            return Result.failure(f"Unknown rating: {rating!r}")
        updated = apply_reflection(session, normalized, comment or "", self.clock.now())
        self._commit(self._with_sessions(data, replace_session(data.sessions, updated),
                                         data.active_session_id))
        if self.pending_reflection is not None and self.pending_reflection.session_id == session_id:
            self.pending_reflection = None
        return Result.success(self.data.find_session(session_id))

    def dismiss_pending_reflection(self) -> None:
        self.pending_reflection = None

    def update_session_duration(self, session_id: str, minutes: float) -> Result:
        """Edit a completed session's length; the end time stays put."""
        data = self._require_data()
        value = as_finite_number(minutes)
        if (
            value is None
            or value < config.SESSION_EDIT_MIN_MINUTES
            or value > config.SESSION_EDIT_MAX_MINUTES
        ):
            return Result.failure(
                f"Duration must be between {config.SESSION_EDIT_MIN_MINUTES} and "
                f"{config.SESSION_EDIT_MAX_MINUTES} minutes."
            )
        session = data.find_session(session_id)
        if session is None:
            return Result.failure("Session not found.")
        if session.is_active:
            return Result.failure("Only completed sessions can be edited.")

        updated = update_duration(session, int(round(value * 60)))
        self._commit(self._with_sessions(data, replace_session(data.sessions, updated),
                                         data.active_session_id))
        logger.info("Session %s duration set to %ds", session_id, updated.duration_seconds)
        return Result.success(self.data.find_session(session_id))

    def delete_session(self, session_id: str) -> Result:
        data = self._require_data()
        session = data.find_session(session_id)
        if session is None:
            return Result.failure("Session not found.")
        sessions = [s for s in data.sessions if s.id != session_id]
        if session.is_active:
            # The live session is gone, so the clock behind it goes too
            data = replace(data, timer=timer_engine.reset(data.timer))
        self._commit(self._with_sessions(data, sessions, None if session.is_active else data.active_session_id))
        if self.pending_reflection is not None and self.pending_reflection.session_id == session_id:
            self.pending_reflection = None
        return Result.success()

    def continue_session(self, session_id: str, new_task_id: Optional[str] = None) -> Result:
        """
        Re-open a completed session's subject and tasks as a new running
        session, optionally adding ``new_task_id`` as the task to work on.
        """
        data = self._require_data()
        now, now_ms = self._now()
        if not timer_engine.is_idle(data.timer):
            return Result.failure("Stop the current timer before continuing a session.")
        source = data.find_session(session_id)
        if source is None:
            return Result.failure("Session not found.")
        if source.is_active:
            return Result.failure("That session is still in progress.")
        if source.subject_id is None or data.find_subject(source.subject_id) is None:
            return Result.failure("The session's subject no longer exists.")
        if new_task_id is not None and data.find_task(new_task_id) is None:
            return Result.failure("Task not found.")

        task_ids = unique_ids([t for t in source.task_ids if data.find_task(t) is not None] + [new_task_id])
        active_task = new_task_id or (task_ids[-1] if task_ids else None)
        data = self._retire_active(data)
        timer = replace(
            timer_engine.reset(data.timer),
            subject_id=source.subject_id,
            task_id=active_task,
        )
        timer = timer_engine.start(timer, now_ms)
        session = build_active_session(
            task_ids, active_task, source.subject_id, timer.mode,
            timer_engine.session_phase(timer.mode), start_time=now, now=now,
        )
        data = self._with_sessions(data, [*data.sessions, session], session.id)
        self._commit(replace(data, timer=timer))
        logger.info("Continued session %s as %s", session_id, session.id)
        return Result.success(self.data.find_session(session.id))

    def continue_with_new_task(self, task_id: str) -> Result:
        """Add a task to the live session; time from here on accrues to it."""
        data = self._require_data()
        active = data.active_session
        if active is None:
            return Result.failure("No active session to extend.")
        if data.find_task(task_id) is None:
            return Result.failure("Task not found.")

        now, now_ms = self._now()
        timer = data.timer
        elapsed = timer_engine.elapsed_ms(timer, now_ms) // 1000
        synced = sync_active_session(active, elapsed, now, timer.is_running)
        extended = extend_task_set(synced, task_id, now)
        data = self._with_sessions(data, replace_session(data.sessions, extended), extended.id)
        self._commit(replace(data, timer=replace(timer, task_id=task_id)))
        return Result.success(self.data.find_session(extended.id))

    # ── Daily tasks ─────────────────────────────────────────────────────────

    def add_daily_task(self, title: str, priority: str = TaskPriority.MEDIUM,
                       scheduled_for: Optional[str] = None) -> Result:
        self._require_profile()
        today = self.clock.today()
        result = daily.build_daily_task(
            new_id(), title, priority, scheduled_for or today, today, self.clock.now_iso(),
        )
        if not result:
            return result
        self._commit_daily(daily.insert_daily_task(self.daily, result.value))
        return result

    def update_daily_task(self, task_id: str, title: Optional[str] = None,
                          priority: Optional[str] = None,
                          scheduled_for: Optional[str] = None) -> Result:
        self._require_profile()
        result = daily.update_daily_task(
            self.daily, task_id, self.clock.today(), self.clock.now_iso(),
            title=title, priority=priority, scheduled_for=scheduled_for,
        )
        if result:
            self._commit_daily(result.value)
        return result

    def toggle_daily_task(self, task_id: str, completed: bool) -> Result:
        self._require_profile()
        result = daily.toggle_daily_task(self.daily, task_id, completed, self.clock.now_iso())
        if result and result.value is not self.daily:
            self._commit_daily(result.value)
        return result

    def delete_daily_task(self, task_id: str) -> Result:
        self._require_profile()
        result = daily.delete_daily_task(self.daily, task_id)
        if result:
            self._commit_daily(result.value)
        return result

    def rollover_daily_tasks(self, today: Optional[str] = None) -> DailyTasksState:
        """Once-per-day pass moving unfinished past tasks to today."""
        self._require_profile()
        today = today or self.clock.today()
        rolled = daily.rollover_daily_tasks(self.daily, today, self.clock.now_iso())
        if rolled is not self.daily:
            self._commit_daily(rolled)
        if self.data.last_rollover_date != today:
            self._commit(replace(self.data, last_rollover_date=today))
        return self.daily

    # ── Settings ────────────────────────────────────────────────────────────

    def _update_settings(self, settings) -> Result:
        data = self._require_data()
        self._commit(replace(data, settings=settings))
        return Result.success(self.data.settings)

    def update_timer_settings(self, **changes: Any) -> Result:
        data = self._require_data()
        known = {f.name for f in fields(data.settings.timer)}
        unknown = sorted(set(changes) - known)
        if unknown:
            return Result.failure(f"Unknown timer setting(s): {', '.join(unknown)}")
        timer_settings = ensure_timer_settings(replace(data.settings.timer, **changes).to_dict())
        return self._update_settings(replace(data.settings, timer=timer_settings))

    def update_goals(self, daily_hours: Optional[float] = None, weekly_hours: Optional[float] = None,
                     monthly_hours: Optional[float] = None) -> Result:
        data = self._require_data()
        for value in (daily_hours, weekly_hours, monthly_hours):
            if value is not None and (as_finite_number(value) is None or value < 0):
                return Result.failure("Goals must be non-negative numbers of hours.")
        goals = data.settings.goals
        merged = ensure_goal_settings({
            "dailyHours": goals.daily_hours if daily_hours is None else daily_hours,
            "weeklyHours": goals.weekly_hours if weekly_hours is None else weekly_hours,
            "monthlyHours": goals.monthly_hours if monthly_hours is None else monthly_hours,
        })
        return self._update_settings(replace(data.settings, goals=merged))

    def set_theme(self, theme: str) -> Result:
        data = self._require_data()
        if theme not in config.THEMES:
            return Result.failure(f"Unknown theme: {theme!r}")
        return self._update_settings(replace(data.settings, theme=theme))

    # ── Export / import ─────────────────────────────────────────────────────

    def export_profile_data(self) -> str:
        data = self._require_data()
        return json.dumps({
            "schemaVersion": config.APP_SCHEMA_VERSION,
            "exportedAt": self.clock.now_iso(),
            "profile": {"id": self.profile.id, "name": self.profile.name},
            "data": data.to_dict(),
        }, indent=2)

    def export_legacy_bundle(self) -> str:
        data = self._require_data()
        return json.dumps(build_legacy_bundle(data, self.clock.now()), indent=2)

    def import_profile_data(self, raw: str) -> Result:
        """
        Replace the open profile's data with an export (current or legacy
        shape). Nothing is written unless the whole payload normalizes.
        """
        self._require_profile()
        try:
            parsed = json.loads(raw)
        except (TypeError, ValueError) as exc:
            return Result.failure(f"Import is not valid JSON: {exc}")
        if not is_record(parsed):
            return Result.failure("Import must be a JSON object.")

        now = self.clock.now()
        profile_id = self.profile.id
        candidate = None
        if is_record(parsed.get("data")):
            modern = {
                **parsed["data"],
                "profileId": profile_id,
                "version": config.APP_SCHEMA_VERSION,
                "settings": ensure_settings(parsed["data"].get("settings")).to_dict(),
                "timer": ensure_timer(parsed["data"].get("timer")).to_dict(),
            }
            if is_user_data_payload(modern):
                candidate = modern
        if candidate is None:
            candidate = legacy_bundle_to_payload(parsed, profile_id, now)
        if candidate is None:
            return Result.failure("Unrecognized import format.")

        try:
            imported = normalize_user_data(candidate, now, profile_id)
        except DATA_ERRORS as exc:
            logger.warning("Import rejected: %s", exc)
            return Result.failure(f"Import could not be read: {exc}")

        self.data = imported
        self._data_store.write(imported)
        self.pending_reflection = None
        logger.info(
            "Imported %d subject(s), %d task(s), %d session(s) into %s",
            len(imported.subjects), len(imported.tasks), len(imported.sessions), profile_id,
        )
        return Result.success(imported)

    def reset_profile_data(self) -> UserData:
        self._require_profile()
        self.data = empty_user_data(self.profile.id, self.clock.now())
        self._data_store.write(self.data)
        self.pending_reflection = None
        logger.info("Reset data for profile %s", self.profile.id)
        return self.data

    # ── Analytics ───────────────────────────────────────────────────────────

    def analytics(self) -> Dict[str, Any]:
        data = self._require_data()
        return analytics_engine.study_summary(data, self.clock.today(), self.clock.now())

    def daily_analytics(self) -> Dict[str, Any]:
        self._require_profile()
        return analytics_engine.daily_task_analytics(self.daily, self.clock.today())


# ---------------------------------------------------------------------------
# Explanation (for interviews)
# ---------------------------------------------------------------------------
# What this file does:
#   The one mutable object in the engine. It owns the current UserData and
#   DailyTasksState, and every public method is "compute next state, then
#   _commit()".
#
# Data flow:
#   UI call → pure transition (timer_engine / session_ledger / daily_tasks)
#   → normalize_user_data() → PersistedStore.write() → self.data
#
# Key pieces:
#   - _mirror_timer(): while the timer holds focus time for a subject there
#     is exactly one running/paused session, kept in sync on every timer
#     operation rather than every tick.
#   - _materialize(): stop and pomodoro focus completion both end here, so
#     "what a finished session looks like" is defined once.
#   - handle_storage_change(): wired to KeyValueStore.poll_changes(); another
#     window's write is adopted only if it decodes cleanly.
#
# Talking points:
#   1. Crash safety: the timer snapshot stores start timestamps, so after a
#      restart the elapsed time (and the session it feeds) is recomputed, not
#      lost.
#   2. Results not exceptions: anything the user can get wrong comes back as
#      Result.failure(message); RuntimeError is reserved for call-order bugs
#      such as using the service before open_profile().
