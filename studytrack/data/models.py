"""
Data models for StudyTrack.

Plain dataclasses for everything that gets persisted. They are the canonical
shape: raw JSON only ever turns into one of these through the normalizers in
``studytrack.services`` and ``studytrack.data.migrations``, and every model
knows how to write itself back out (``to_dict``) in the persisted camelCase
layout.

Time units: instants are epoch seconds (float), durations are whole seconds,
and the timer snapshot keeps epoch milliseconds.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from studytrack import config


# ── Enumerations ────────────────────────────────────────────────────────────

class SessionStatus:
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"

    ALL = (RUNNING, PAUSED, COMPLETED)
    ACTIVE = (RUNNING, PAUSED)


class TimerMode:
    STOPWATCH = "stopwatch"
    POMODORO = "pomodoro"


class TimerPhase:
    FOCUS = "focus"
    SHORT_BREAK = "shortBreak"
    LONG_BREAK = "longBreak"

    BREAKS = (SHORT_BREAK, LONG_BREAK)


class SessionPhase:
    """Phase stamped on a session record: pomodoro focus or manual stopwatch."""
    FOCUS = "focus"
    MANUAL = "manual"


class TaskPriority:
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    ALL = (HIGH, MEDIUM, LOW)


class TaskBucket:
    DAILY = "daily"
    BACKLOG = "backlog"


class SessionRating:
    PRODUCTIVE = "productive"
    AVERAGE = "average"
    DISTRACTED = "distracted"

    ALL = (PRODUCTIVE, AVERAGE, DISTRACTED)


# ── Result ──────────────────────────────────────────────────────────────────

@dataclass
class Result:
    """Outcome of a user-triggered operation. Never raised, always returned."""
    ok: bool
    error: Optional[str] = None
    value: Any = None

    @classmethod
    def success(cls, value: Any = None) -> "Result":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: str) -> "Result":
        return cls(ok=False, error=error)

    def __bool__(self) -> bool:
        return self.ok


# ── Profiles ────────────────────────────────────────────────────────────────

@dataclass
class Profile:
    """One user's isolated data set."""
    id: str = ""
    name: str = ""
    created_at: str = ""
    last_active_at: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "createdAt": self.created_at,
            "lastActiveAt": self.last_active_at,
        }


@dataclass
class ProfilesState:
    version: int = config.PROFILES_SCHEMA_VERSION
    active_profile_id: Optional[str] = None
    profiles: List[Profile] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "activeProfileId": self.active_profile_id,
            "profiles": [p.to_dict() for p in self.profiles],
        }

    def find(self, profile_id: Optional[str]) -> Optional[Profile]:
        for profile in self.profiles:
            if profile.id == profile_id:
                return profile
        return None


# ── Subjects & tasks ────────────────────────────────────────────────────────

@dataclass
class Subject:
    """Something studied (e.g. 'Linear Algebra')."""
    id: str = ""
    name: str = ""
    color: str = config.DEFAULT_SUBJECT_COLOR
    created_at: str = ""
    updated_at: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "color": self.color,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


@dataclass
class Task:
    """
    A general task. ``is_backlog``, ``backlog_since`` and ``bucket`` are
    derived from the deadline; ``total_time_seconds``, ``session_count`` and
    ``last_worked_at`` are derived from the session ledger.
    """
    id: str = ""
    title: str = ""
    description: str = ""
    subject_id: Optional[str] = None
    priority: str = TaskPriority.MEDIUM
    completed: bool = False
    completed_at: Optional[str] = None
    due_date: Optional[str] = None
    deadline: Optional[float] = None
    is_backlog: bool = False
    backlog_since: Optional[float] = None
    bucket: str = TaskBucket.DAILY
    order: int = 0
    total_time_seconds: int = 0
    session_count: int = 0
    last_worked_at: Optional[float] = None
    created_at: str = ""
    updated_at: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "subjectId": self.subject_id,
            "priority": self.priority,
            "completed": self.completed,
            "completedAt": self.completed_at,
            "dueDate": self.due_date,
            "deadline": self.deadline,
            "isBacklog": self.is_backlog,
            "backlogSince": self.backlog_since,
            "bucket": self.bucket,
            "order": self.order,
            "totalTimeSeconds": self.total_time_seconds,
            "sessionCount": self.session_count,
            "lastWorkedAt": self.last_worked_at,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


# ── Sessions ────────────────────────────────────────────────────────────────

@dataclass
class StudySession:
    """
    One block of tracked time, optionally split across several tasks.

    ``task_allocations`` maps task id → seconds and always sums to
    ``duration_seconds`` once the session has at least one task.
    """
    id: str = ""
    subject_id: Optional[str] = None
    task_ids: List[str] = field(default_factory=list)
    task_allocations: Dict[str, int] = field(default_factory=dict)
    active_task_id: Optional[str] = None
    status: str = SessionStatus.COMPLETED
    start_time: float = 0.0
    end_time: Optional[float] = None
    duration_seconds: int = 0
    last_start_timestamp: Optional[float] = None
    mode: str = TimerMode.STOPWATCH
    phase: str = SessionPhase.MANUAL
    reflection_rating: Optional[str] = None
    reflection_comment: str = ""
    reflection_timestamp: Optional[float] = None
    created_at: str = ""

    @property
    def is_active(self) -> bool:
        return self.status in SessionStatus.ACTIVE

    @property
    def effective_end(self) -> float:
        """End instant, or where the session would end if stopped now."""
        if self.end_time is not None:
            return self.end_time
        return self.start_time + self.duration_seconds

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "subjectId": self.subject_id,
            "taskIds": list(self.task_ids),
            "taskAllocations": dict(self.task_allocations),
            "activeTaskId": self.active_task_id,
            "status": self.status,
            "startTime": self.start_time,
            "endTime": self.end_time,
            "durationSeconds": self.duration_seconds,
            "lastStartTimestamp": self.last_start_timestamp,
            "mode": self.mode,
            "phase": self.phase,
            "reflectionRating": self.reflection_rating,
            "reflectionComment": self.reflection_comment,
            "reflectionTimestamp": self.reflection_timestamp,
            "createdAt": self.created_at,
        }


@dataclass
class PendingReflection:
    """Raised after a focus session is saved; the UI asks for a rating."""
    session_id: str
    subject_id: Optional[str]
    duration_seconds: int


# ── Timer ───────────────────────────────────────────────────────────────────

@dataclass
class TimerSnapshot:
    """Live timer state. All instants and durations in milliseconds."""
    mode: str = TimerMode.STOPWATCH
    phase: str = TimerPhase.FOCUS
    is_running: bool = False
    started_at_ms: Optional[int] = None
    accumulated_ms: int = 0
    phase_started_at_ms: Optional[int] = None
    phase_accumulated_ms: int = 0
    cycle_count: int = 0
    subject_id: Optional[str] = None
    task_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mode": self.mode,
            "phase": self.phase,
            "isRunning": self.is_running,
            "startedAtMs": self.started_at_ms,
            "accumulatedMs": self.accumulated_ms,
            "phaseStartedAtMs": self.phase_started_at_ms,
            "phaseAccumulatedMs": self.phase_accumulated_ms,
            "cycleCount": self.cycle_count,
            "subjectId": self.subject_id,
            "taskId": self.task_id,
        }


# ── Settings ────────────────────────────────────────────────────────────────

@dataclass
class GoalSettings:
    daily_hours: float = config.DEFAULT_GOALS["dailyHours"]
    weekly_hours: float = config.DEFAULT_GOALS["weeklyHours"]
    monthly_hours: float = config.DEFAULT_GOALS["monthlyHours"]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "dailyHours": self.daily_hours,
            "weeklyHours": self.weekly_hours,
            "monthlyHours": self.monthly_hours,
        }


@dataclass
class TimerSettings:
    focus_minutes: int = config.DEFAULT_TIMER_SETTINGS["focusMinutes"]
    short_break_minutes: int = config.DEFAULT_TIMER_SETTINGS["shortBreakMinutes"]
    long_break_minutes: int = config.DEFAULT_TIMER_SETTINGS["longBreakMinutes"]
    long_break_interval: int = config.DEFAULT_TIMER_SETTINGS["longBreakInterval"]
    auto_start_next_phase: bool = config.DEFAULT_TIMER_SETTINGS["autoStartNextPhase"]
    sound_enabled: bool = config.DEFAULT_TIMER_SETTINGS["soundEnabled"]
    prevent_accidental_reset: bool = config.DEFAULT_TIMER_SETTINGS["preventAccidentalReset"]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "focusMinutes": self.focus_minutes,
            "shortBreakMinutes": self.short_break_minutes,
            "longBreakMinutes": self.long_break_minutes,
            "longBreakInterval": self.long_break_interval,
            "autoStartNextPhase": self.auto_start_next_phase,
            "soundEnabled": self.sound_enabled,
            "preventAccidentalReset": self.prevent_accidental_reset,
        }


@dataclass
class AppSettings:
    goals: GoalSettings = field(default_factory=GoalSettings)
    timer: TimerSettings = field(default_factory=TimerSettings)
    theme: str = config.DEFAULT_THEME

    def to_dict(self) -> Dict[str, Any]:
        return {
            "goals": self.goals.to_dict(),
            "timer": self.timer.to_dict(),
            "theme": self.theme,
        }


# ── Root aggregate ──────────────────────────────────────────────────────────

@dataclass
class UserData:
    """Everything one profile owns, replaced wholesale on import/reset."""
    version: int = config.APP_SCHEMA_VERSION
    profile_id: str = ""
    subjects: List[Subject] = field(default_factory=list)
    tasks: List[Task] = field(default_factory=list)
    sessions: List[StudySession] = field(default_factory=list)
    settings: AppSettings = field(default_factory=AppSettings)
    timer: TimerSnapshot = field(default_factory=TimerSnapshot)
    last_rollover_date: Optional[str] = None
    active_session_id: Optional[str] = None
    created_at: str = ""
    updated_at: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "profileId": self.profile_id,
            "subjects": [s.to_dict() for s in self.subjects],
            "tasks": [t.to_dict() for t in self.tasks],
            "sessions": [s.to_dict() for s in self.sessions],
            "settings": self.settings.to_dict(),
            "timer": self.timer.to_dict(),
            "lastRolloverDate": self.last_rollover_date,
            "activeSessionId": self.active_session_id,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    def find_session(self, session_id: Optional[str]) -> Optional[StudySession]:
        for session in self.sessions:
            if session.id == session_id:
                return session
        return None

    def find_task(self, task_id: Optional[str]) -> Optional[Task]:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None

    def find_subject(self, subject_id: Optional[str]) -> Optional[Subject]:
        for subject in self.subjects:
            if subject.id == subject_id:
                return subject
        return None

    @property
    def active_session(self) -> Optional[StudySession]:
        return self.find_session(self.active_session_id)


# ── Daily tasks ─────────────────────────────────────────────────────────────

@dataclass
class DailyTask:
    """A date-scoped to-do, scheduled for today or tomorrow."""
    id: str = ""
    title: str = ""
    priority: str = TaskPriority.MEDIUM
    scheduled_for: str = ""
    completed: bool = False
    completed_at: Optional[str] = None
    is_rolled_over: bool = False
    rollover_count: int = 0
    created_at: str = ""
    updated_at: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "priority": self.priority,
            "scheduledFor": self.scheduled_for,
            "completed": self.completed,
            "completedAt": self.completed_at,
            "isRolledOver": self.is_rolled_over,
            "rolloverCount": self.rollover_count,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


@dataclass
class DayStats:
    """Counters for one calendar date of daily tasks."""
    total: int = 0
    completed: int = 0
    rollover: int = 0
    by_priority: Dict[str, int] = field(
        default_factory=lambda: {p: 0 for p in TaskPriority.ALL}
    )

    def is_empty(self) -> bool:
        return (
            self.total == 0
            and self.completed == 0
            and self.rollover == 0
            and not any(self.by_priority.values())
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "completed": self.completed,
            "rollover": self.rollover,
            "byPriority": dict(self.by_priority),
        }


@dataclass
class DailyTasksState:
    version: int = config.DAILY_TASKS_SCHEMA_VERSION
    tasks: List[DailyTask] = field(default_factory=list)
    stats_by_date: Dict[str, DayStats] = field(default_factory=dict)
    last_rollover_date: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "tasks": [t.to_dict() for t in self.tasks],
            "statsByDate": {d: s.to_dict() for d, s in sorted(self.stats_by_date.items())},
            "lastRolloverDate": self.last_rollover_date,
        }


# ---------------------------------------------------------------------------
# Explanation (for interviews)
# ---------------------------------------------------------------------------
# What this file does:
#   Defines the typed shapes the whole engine passes around. Raw JSON never
#   travels past the normalizers; everything downstream sees these classes.
#
# Key classes:
#   - StudySession: the ledger entry. status + end_time + last_start_timestamp
#     must agree (end only when completed, last start only when running).
#   - TimerSnapshot: the live stopwatch/pomodoro state in milliseconds.
#   - UserData: the per-profile aggregate. active_session_id is an index the
#     normalizer recomputes, never something callers scan for.
#   - Result: how user-facing operations report failure without raising.
