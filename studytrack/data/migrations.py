"""
Schema migrations and shape coercers for the persisted objects.

Each migration map is ``{from_version: fn(data) -> data}``; PersistedStore
applies them one step at a time. Steps work on plain dicts and never raise on
odd input, they pass it along and let the validator reject it.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict

from studytrack import config
from studytrack.data.coerce import (
    as_finite_number,
    as_id,
    is_record,
)
from studytrack.data.models import (
    AppSettings,
    GoalSettings,
    TimerMode,
    TimerPhase,
    TimerSettings,
    TimerSnapshot,
)

logger = logging.getLogger(__name__)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


# ── Shape coercers ──────────────────────────────────────────────────────────

def _goal_hours(value: Any, fallback: float) -> float:
    number = as_finite_number(value)
    if number is None or number < 0:
        number = fallback
    return round(float(number), 2)


def _minutes_to_hours(value: Any):
    minutes = as_finite_number(value)
    return None if minutes is None else minutes / 60.0


def ensure_goal_settings(candidate: Any) -> GoalSettings:
    """Goals in hours; legacy minute-based goals are converted."""
    fallback = GoalSettings()
    if not is_record(candidate):
        return fallback

    daily_raw = as_finite_number(candidate.get("dailyHours"))
    if daily_raw is None:
        daily_raw = _minutes_to_hours(candidate.get("dailyMinutes"))
    weekly_raw = as_finite_number(candidate.get("weeklyHours"))
    if weekly_raw is None:
        weekly_raw = _minutes_to_hours(candidate.get("weeklyMinutes"))
    monthly_raw = as_finite_number(candidate.get("monthlyHours"))
    if monthly_raw is None:
        monthly_raw = _minutes_to_hours(candidate.get("monthlyMinutes"))

    weekly = _goal_hours(weekly_raw, fallback.weekly_hours)
    monthly = _goal_hours(monthly_raw, fallback.monthly_hours)
    derived_daily = weekly / 7 if weekly > 0 else fallback.daily_hours
    daily = _goal_hours(daily_raw if daily_raw is not None else derived_daily, fallback.daily_hours)
    return GoalSettings(daily_hours=daily, weekly_hours=weekly, monthly_hours=monthly)


def _positive_minutes(value: Any, fallback: int) -> int:
    number = as_finite_number(value)
    return max(1, int(round(number if number is not None else fallback)))


def ensure_timer_settings(candidate: Any) -> TimerSettings:
    defaults = TimerSettings()
    if not is_record(candidate):
        return defaults

    def flag(name: str, fallback: bool) -> bool:
        value = candidate.get(name)
        return value if isinstance(value, bool) else fallback

    return TimerSettings(
        focus_minutes=_positive_minutes(candidate.get("focusMinutes"), defaults.focus_minutes),
        short_break_minutes=_positive_minutes(
            candidate.get("shortBreakMinutes"), defaults.short_break_minutes
        ),
        long_break_minutes=_positive_minutes(
            candidate.get("longBreakMinutes"), defaults.long_break_minutes
        ),
        long_break_interval=_positive_minutes(
            candidate.get("longBreakInterval"), defaults.long_break_interval
        ),
        auto_start_next_phase=flag("autoStartNextPhase", defaults.auto_start_next_phase),
        sound_enabled=flag("soundEnabled", defaults.sound_enabled),
        prevent_accidental_reset=flag("preventAccidentalReset", defaults.prevent_accidental_reset),
    )


def ensure_settings(candidate: Any) -> AppSettings:
    if not is_record(candidate):
        return AppSettings()
    theme = candidate.get("theme")
    return AppSettings(
        goals=ensure_goal_settings(candidate.get("goals")),
        timer=ensure_timer_settings(candidate.get("timer")),
        theme=theme if theme in config.THEMES else config.DEFAULT_THEME,
    )


def _ms(value: Any):
    number = as_finite_number(value)
    return None if number is None else int(number)


def ensure_timer(candidate: Any) -> TimerSnapshot:
    """Coerce a stored timer into a consistent snapshot."""
    if not is_record(candidate):
        return TimerSnapshot()

    mode = TimerMode.POMODORO if candidate.get("mode") == TimerMode.POMODORO else TimerMode.STOPWATCH
    phase = candidate.get("phase")
    if phase not in TimerPhase.BREAKS:
        phase = TimerPhase.FOCUS

    started = _ms(candidate.get("startedAtMs"))
    phase_started = _ms(candidate.get("phaseStartedAtMs"))
    is_running = candidate.get("isRunning") is True and started is not None
    if is_running and phase_started is None:
        phase_started = started
    if not is_running:
        started = None
        phase_started = None

    return TimerSnapshot(
        mode=mode,
        phase=phase,
        is_running=is_running,
        started_at_ms=started,
        accumulated_ms=max(0, _ms(candidate.get("accumulatedMs")) or 0),
        phase_started_at_ms=phase_started,
        phase_accumulated_ms=max(0, _ms(candidate.get("phaseAccumulatedMs")) or 0),
        cycle_count=max(0, _ms(candidate.get("cycleCount")) or 0),
        subject_id=as_id(candidate.get("subjectId")),
        task_id=as_id(candidate.get("taskId")),
    )


# ── UserData ────────────────────────────────────────────────────────────────

def _list_or_empty(value: Any) -> list:
    return value if isinstance(value, list) else []


def _user_data_v0_to_v1(legacy: Any) -> Any:
    now = _now_iso()
    if not is_record(legacy):
        logger.info("Unrecognized pre-envelope user data; starting from an empty profile")
        return {
            "version": 1,
            "profileId": "legacy",
            "subjects": [],
            "tasks": [],
            "sessions": [],
            "settings": AppSettings().to_dict(),
            "timer": TimerSnapshot().to_dict(),
            "createdAt": now,
            "updatedAt": now,
        }
    profile_id = legacy.get("profileId")
    created = legacy.get("createdAt")
    updated = legacy.get("updatedAt")
    return {
        **legacy,
        "version": 1,
        "profileId": profile_id if isinstance(profile_id, str) else "legacy",
        "subjects": _list_or_empty(legacy.get("subjects")),
        "tasks": _list_or_empty(legacy.get("tasks")),
        "sessions": _list_or_empty(legacy.get("sessions")),
        "settings": ensure_settings(legacy.get("settings")).to_dict(),
        "timer": ensure_timer(legacy.get("timer")).to_dict(),
        "createdAt": created if isinstance(created, str) else now,
        "updatedAt": updated if isinstance(updated, str) else now,
    }


def _user_data_v1_to_v2(legacy: Any) -> Any:
    if not is_record(legacy):
        return legacy
    last = legacy.get("lastRolloverDate")
    return {
        **legacy,
        "version": 2,
        "lastRolloverDate": last if isinstance(last, str) else None,
    }


def _user_data_v2_to_v3(legacy: Any) -> Any:
    if not is_record(legacy):
        return legacy
    return {
        **legacy,
        "version": 3,
        "settings": ensure_settings(legacy.get("settings")).to_dict(),
    }


def _user_data_v3_to_v4(legacy: Any) -> Any:
    # Collections are normalized by the load cycle right after migration
    if not is_record(legacy):
        return legacy
    logger.debug("Dropping stored activeSessionId during v3 -> v4 migration")
    return {
        **legacy,
        "version": config.APP_SCHEMA_VERSION,
        "settings": ensure_settings(legacy.get("settings")).to_dict(),
        "timer": ensure_timer(legacy.get("timer")).to_dict(),
        "activeSessionId": None,
    }


USER_DATA_MIGRATIONS = {
    0: _user_data_v0_to_v1,
    1: _user_data_v1_to_v2,
    2: _user_data_v2_to_v3,
    3: _user_data_v3_to_v4,
}


def is_user_data_payload(value: Any) -> bool:
    return (
        is_record(value)
        and isinstance(value.get("profileId"), str)
        and isinstance(value.get("subjects"), list)
        and isinstance(value.get("tasks"), list)
        and isinstance(value.get("sessions"), list)
        and is_record(value.get("settings"))
        and is_record(value.get("timer"))
    )


# ── Profiles ────────────────────────────────────────────────────────────────

def _profiles_v0_to_v1(legacy: Any) -> Any:
    if not is_record(legacy) or not isinstance(legacy.get("profiles"), list):
        return {
            "version": config.PROFILES_SCHEMA_VERSION,
            "activeProfileId": None,
            "profiles": [],
        }

    now = _now_iso()
    profiles = []
    for item in legacy["profiles"]:
        if not is_record(item) or not isinstance(item.get("id"), str) or not isinstance(item.get("name"), str):
            continue
        created = item.get("createdAt") if isinstance(item.get("createdAt"), str) else now
        last_active = item.get("lastActiveAt") if isinstance(item.get("lastActiveAt"), str) else created
        profiles.append({
            "id": item["id"],
            "name": item["name"],
            "createdAt": created,
            "lastActiveAt": last_active,
        })

    active = legacy.get("activeProfileId")
    return {
        "version": config.PROFILES_SCHEMA_VERSION,
        "activeProfileId": active if isinstance(active, str) else None,
        "profiles": profiles,
    }


PROFILE_MIGRATIONS = {0: _profiles_v0_to_v1}


def is_profiles_payload(value: Any) -> bool:
    return (
        is_record(value)
        and (isinstance(value.get("activeProfileId"), str) or value.get("activeProfileId") is None)
        and isinstance(value.get("profiles"), list)
    )


# ── Daily tasks ─────────────────────────────────────────────────────────────

def _daily_v0_to_v1(legacy: Any) -> Any:
    if isinstance(legacy, list):
        # Bare task list from before the state object existed
        legacy = {"tasks": legacy}
    if not is_record(legacy):
        legacy = {}
    stats = legacy.get("statsByDate")
    last = legacy.get("lastRolloverDate")
    return {
        "version": config.DAILY_TASKS_SCHEMA_VERSION,
        "tasks": _list_or_empty(legacy.get("tasks")),
        "statsByDate": stats if is_record(stats) else {},
        "lastRolloverDate": last if isinstance(last, str) else None,
    }


DAILY_TASK_MIGRATIONS = {0: _daily_v0_to_v1}


def is_daily_tasks_payload(value: Any) -> bool:
    return (
        is_record(value)
        and isinstance(value.get("tasks"), list)
        and is_record(value.get("statsByDate"))
        and (isinstance(value.get("lastRolloverDate"), str) or value.get("lastRolloverDate") is None)
    )


def describe_migrations() -> Dict[str, int]:
    """Current version per persisted object, for the startup log line."""
    return {
        "userData": config.APP_SCHEMA_VERSION,
        "profiles": config.PROFILES_SCHEMA_VERSION,
        "dailyTasks": config.DAILY_TASKS_SCHEMA_VERSION,
    }
