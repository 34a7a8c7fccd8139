"""
Session Ledger — normalization and reconciliation of session records.

Raw session records may come from an older schema, a half-finished write or
another window. ``normalize_sessions`` turns whatever is stored into
canonical StudySession objects, repairs allocations so they add up, and
force-completes all but one concurrently active session.

The rest of the module holds the pure ledger operations the session service
composes: building, syncing and finalizing the live session, bounded
duration edits, reflections and extending a session's task set.
"""

from __future__ import annotations

import logging
import math
from dataclasses import replace
from typing import Any, Dict, Iterable, List, Optional, Set

from studytrack.config import MAX_SESSION_SECONDS
from studytrack.data.coerce import (
    as_epoch_seconds,
    as_finite_number,
    as_id,
    is_record,
    new_id,
    parse_iso_datetime,
    unique_ids,
)
from studytrack.data.models import (
    SessionPhase,
    SessionRating,
    SessionStatus,
    StudySession,
    TimerMode,
)
from studytrack.services.clock import iso_from_epoch

logger = logging.getLogger(__name__)

Allocations = Dict[str, int]

_DURATION_FIELDS = ("accumulatedTime", "durationSeconds", "durationMs")

_RATING_ALIASES = {
    "great": SessionRating.PRODUCTIVE,
    "good": SessionRating.PRODUCTIVE,
    "okay": SessionRating.AVERAGE,
    "ok": SessionRating.AVERAGE,
}


class MalformedSession(ValueError):
    """A record that cannot be coerced into a session."""


# ── Allocation math ─────────────────────────────────────────────────────────

def clamp_seconds(value: Any) -> int:
    """Whole seconds in [0, MAX_SESSION_SECONDS]; junk becomes 0."""
    number = as_finite_number(value)
    if number is None:
        return 0
    return max(0, min(MAX_SESSION_SECONDS, int(math.floor(number))))


def allocation_sum(allocations: Allocations) -> int:
    return sum(clamp_seconds(v) for v in allocations.values())


def sanitize_allocations(value: Any, allowed: Optional[Set[str]]) -> Allocations:
    """Keep positive whole-second entries for allowed task ids only."""
    if not is_record(value):
        return {}
    cleaned: Allocations = {}
    for key, raw in value.items():
        task_id = as_id(key)
        if task_id is None or (allowed is not None and task_id not in allowed):
            continue
        seconds = clamp_seconds(raw)
        if seconds > 0:
            cleaned[task_id] = seconds
    return cleaned


def rebalance_allocations(
    allocations: Allocations,
    task_ids: List[str],
    total_seconds: int,
    preferred_task_id: Optional[str],
) -> Allocations:
    """
    Adjust ``allocations`` so they sum exactly to ``total_seconds``.

    The difference is applied in a fixed order: the preferred task, then the
    declared task order, then the allocation map order. A surplus all lands
    on the first entry; a deficit is taken from each entry in turn down to
    zero. No entry ever goes negative, and if nothing is left the whole
    duration goes to the preferred task.
    """
    ordered_ids = unique_ids(task_ids)
    allowed = set(ordered_ids) if ordered_ids else None
    nxt = sanitize_allocations(allocations, allowed)
    total = clamp_seconds(total_seconds)
    if total <= 0:
        return {}

    if preferred_task_id and (allowed is None or preferred_task_id in allowed):
        preferred: Optional[str] = preferred_task_id
    elif ordered_ids:
        preferred = ordered_ids[0]
    else:
        preferred = next(iter(nxt), None)

    current = allocation_sum(nxt)
    if current <= 0:
        return {preferred: total} if preferred else {}

    difference = total - current
    if difference == 0:
        return nxt

    for task_id in unique_ids([preferred, *ordered_ids, *nxt.keys()]):
        if difference == 0:
            break
        existing = nxt.get(task_id, 0)
        if difference > 0:
            nxt[task_id] = existing + difference
            difference = 0
            continue
        updated = existing + difference
        if updated >= 0:
            nxt[task_id] = updated
            difference = 0
        else:
            nxt[task_id] = 0
            difference = updated

    cleaned = {task_id: seconds for task_id, seconds in nxt.items() if seconds > 0}
    if allocation_sum(cleaned) == 0 and preferred:
        return {preferred: total}
    return cleaned


# ── Per-record normalization ────────────────────────────────────────────────

def _resolve_status(raw: Dict[str, Any]) -> str:
    status = raw.get("status")
    if status in SessionStatus.ALL:
        return status
    if raw.get("isActive") is True:
        return SessionStatus.PAUSED
    return SessionStatus.COMPLETED


def _resolve_duration(raw: Dict[str, Any]) -> int:
    accumulated = as_finite_number(raw.get("accumulatedTime"))
    if accumulated is not None:
        return clamp_seconds(accumulated)
    seconds = as_finite_number(raw.get("durationSeconds"))
    if seconds is not None:
        return clamp_seconds(seconds)
    millis = as_finite_number(raw.get("durationMs"))
    if millis is not None:
        return clamp_seconds(millis / 1000)
    if any(name in raw and raw[name] is not None for name in _DURATION_FIELDS):
        raise MalformedSession("duration fields present but none is a finite number")

    start = as_epoch_seconds(raw.get("startTime"))
    end = as_epoch_seconds(raw.get("endTime"))
    if start is not None and end is not None:
        return clamp_seconds(end - start)
    return 0


def _resolve_start(raw: Dict[str, Any], duration: int, now: float) -> float:
    start = as_epoch_seconds(raw.get("startTime"))
    if start is None:
        start = parse_iso_datetime(raw.get("startedAt"))
    if start is None:
        end = as_epoch_seconds(raw.get("endTime"))
        if end is None:
            end = parse_iso_datetime(raw.get("endedAt"))
        if end is not None:
            start = end - duration
    return start if start is not None else now


def _resolve_end(raw: Dict[str, Any], start: float, duration: int) -> float:
    stored = as_epoch_seconds(raw.get("endTime"))
    if stored is None:
        stored = parse_iso_datetime(raw.get("endedAt"))
    computed = start + duration
    return computed if stored is None else max(stored, computed)


def normalize_rating(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    rating = value.strip().lower()
    if rating in SessionRating.ALL:
        return rating
    return _RATING_ALIASES.get(rating)


def normalize_session(
    raw: Dict[str, Any],
    now: float,
    seen_ids: Optional[Set[str]] = None,
) -> StudySession:
    """Coerce one raw record into a canonical session. Raises MalformedSession."""
    if not is_record(raw):
        raise MalformedSession(f"not a mapping: {type(raw).__name__}")

    seen_ids = seen_ids if seen_ids is not None else set()
    session_id = as_id(raw.get("id"))
    if session_id is None or session_id in seen_ids:
        if session_id is not None:
            logger.debug("Duplicate session id %s regenerated", session_id)
        session_id = new_id()

    status = _resolve_status(raw)
    completed = status == SessionStatus.COMPLETED
    duration = _resolve_duration(raw)
    start = _resolve_start(raw, duration, now)
    end = _resolve_end(raw, start, duration) if completed else None

    raw_task_ids = raw.get("taskIds") if isinstance(raw.get("taskIds"), list) else []
    legacy_task_id = as_id(raw.get("taskId"))
    task_ids = unique_ids([*raw_task_ids, legacy_task_id])
    last_task = task_ids[-1] if task_ids else None

    stored_active = as_id(raw.get("activeTaskId"))
    if completed:
        active_task_id = None
    else:
        desired = stored_active or legacy_task_id or last_task
        active_task_id = desired if desired in task_ids else last_task

    allocations = sanitize_allocations(raw.get("taskAllocations"), set(task_ids))
    if not allocations and duration > 0:
        fallback = legacy_task_id or (task_ids[0] if len(task_ids) == 1 else None)
        if fallback:
            allocations = {fallback: duration}

    if active_task_id is not None:
        preferred = active_task_id
    elif stored_active in task_ids:
        preferred = stored_active
    elif legacy_task_id in task_ids:
        preferred = legacy_task_id
    else:
        preferred = None
    allocations = (
        rebalance_allocations(allocations, task_ids, duration, preferred) if task_ids else {}
    )

    last_start = None
    if status == SessionStatus.RUNNING:
        last_start = as_epoch_seconds(raw.get("lastStartTimestamp"))
        if last_start is None:
            last_start = now

    rating = normalize_rating(
        raw.get("reflectionRating") if raw.get("reflectionRating") is not None else raw.get("rating")
    )
    comment = raw.get("reflectionComment")
    if not isinstance(comment, str):
        comment = raw.get("reflection")
    comment = comment.strip() if isinstance(comment, str) else ""
    reflection_ts = None
    if rating is not None:
        reflection_ts = as_epoch_seconds(raw.get("reflectionTimestamp"))
        if reflection_ts is None:
            reflection_ts = end if end is not None else now

    mode = TimerMode.POMODORO if raw.get("mode") == TimerMode.POMODORO else TimerMode.STOPWATCH
    phase = raw.get("phase")
    if phase not in (SessionPhase.FOCUS, SessionPhase.MANUAL):
        phase = SessionPhase.FOCUS if mode == TimerMode.POMODORO else SessionPhase.MANUAL
    created_at = raw.get("createdAt")

    seen_ids.add(session_id)
    return StudySession(
        id=session_id,
        subject_id=as_id(raw.get("subjectId")),
        task_ids=task_ids,
        task_allocations=allocations,
        active_task_id=active_task_id,
        status=status,
        start_time=start,
        end_time=end,
        duration_seconds=duration,
        last_start_timestamp=last_start,
        mode=mode,
        phase=phase,
        reflection_rating=rating,
        reflection_comment=comment,
        reflection_timestamp=reflection_ts,
        created_at=created_at if isinstance(created_at, str) else iso_from_epoch(start),
    )


def normalize_sessions(raw_records: Iterable[Any], now: float) -> List[StudySession]:
    """
    Normalize a whole ledger. Bad records are logged and dropped, one at a
    time; duplicate active sessions are force-completed afterwards.
    """
    sessions: List[StudySession] = []
    seen_ids: Set[str] = set()
    for index, raw in enumerate(raw_records):
        try:
            sessions.append(normalize_session(raw, now, seen_ids))
        except (MalformedSession, TypeError, ValueError, OverflowError) as exc:
            logger.warning("Dropping malformed session record #%d: %s", index, exc)
    return dedupe_active_sessions(sessions)


# ── Active-session invariants ───────────────────────────────────────────────

def force_complete(session: StudySession) -> StudySession:
    """Complete a session as of its own recorded duration."""
    duration = session.duration_seconds
    return replace(
        session,
        status=SessionStatus.COMPLETED,
        end_time=session.start_time + duration,
        last_start_timestamp=None,
        active_task_id=None,
        task_allocations=(
            rebalance_allocations(
                session.task_allocations, session.task_ids, duration, session.active_task_id
            )
            if session.task_ids else {}
        ),
    )


def dedupe_active_sessions(sessions: List[StudySession]) -> List[StudySession]:
    """Keep the latest-started active session; complete every other one."""
    active = [i for i, s in enumerate(sessions) if s.is_active]
    if len(active) <= 1:
        return sessions

    keep = active[0]
    for index in active[1:]:
        if sessions[index].start_time > sessions[keep].start_time:
            keep = index

    result = []
    for index, session in enumerate(sessions):
        if session.is_active and index != keep:
            logger.info(
                "Force-completing duplicate active session %s (%ds)",
                session.id, session.duration_seconds,
            )
            session = force_complete(session)
        result.append(session)
    return result


def find_active_session_id(sessions: Iterable[StudySession]) -> Optional[str]:
    for session in sessions:
        if session.is_active:
            return session.id
    return None


# ── Ledger operations ───────────────────────────────────────────────────────

def build_active_session(
    task_ids: List[str],
    active_task_id: Optional[str],
    subject_id: Optional[str],
    mode: str,
    phase: str,
    start_time: float,
    now: float,
    duration_seconds: int = 0,
    running: bool = True,
) -> StudySession:
    ids = unique_ids(task_ids)
    active = active_task_id if active_task_id in ids else (ids[-1] if ids else None)
    duration = clamp_seconds(duration_seconds)
    return StudySession(
        id=new_id(),
        subject_id=subject_id,
        task_ids=ids,
        task_allocations={active: duration} if active and duration > 0 else {},
        active_task_id=active,
        status=SessionStatus.RUNNING if running else SessionStatus.PAUSED,
        start_time=start_time,
        end_time=None,
        duration_seconds=duration,
        last_start_timestamp=now if running else None,
        mode=mode,
        phase=phase,
        created_at=iso_from_epoch(start_time),
    )


def sync_active_session(
    session: StudySession,
    elapsed_seconds: int,
    now: float,
    running: bool,
    subject_id: Optional[str] = None,
) -> StudySession:
    """
    Mirror the live timer into the active session. Time gained (or lost)
    since the last sync is credited to the active task.
    """
    duration = clamp_seconds(elapsed_seconds)
    allocations = (
        rebalance_allocations(
            session.task_allocations, session.task_ids, duration, session.active_task_id
        )
        if session.task_ids else {}
    )
    if running:
        last_start = session.last_start_timestamp if session.status == SessionStatus.RUNNING else now
    else:
        last_start = None
    return replace(
        session,
        subject_id=subject_id if subject_id is not None else session.subject_id,
        duration_seconds=duration,
        task_allocations=allocations,
        status=SessionStatus.RUNNING if running else SessionStatus.PAUSED,
        last_start_timestamp=last_start,
    )


def finalize_session(session: StudySession, elapsed_seconds: int, now: float) -> StudySession:
    """Complete the live session at ``now`` with the timer's final elapsed time."""
    duration = clamp_seconds(elapsed_seconds) or session.duration_seconds
    synced = sync_active_session(session, duration, now, running=False)
    return replace(
        synced,
        status=SessionStatus.COMPLETED,
        end_time=max(now, session.start_time + duration),
        last_start_timestamp=None,
        active_task_id=None,
    )


def update_duration(session: StudySession, duration_seconds: int) -> StudySession:
    """Change a completed session's length, keeping its end time."""
    duration = clamp_seconds(duration_seconds)
    end = session.effective_end
    preferred = session.task_ids[0] if session.task_ids else None
    return replace(
        session,
        start_time=end - duration,
        end_time=end,
        duration_seconds=duration,
        task_allocations=(
            rebalance_allocations(session.task_allocations, session.task_ids, duration, preferred)
            if session.task_ids else {}
        ),
    )


def apply_reflection(
    session: StudySession,
    rating: Optional[str],
    comment: str,
    now: float,
) -> StudySession:
    return replace(
        session,
        reflection_rating=rating,
        reflection_comment=comment.strip(),
        reflection_timestamp=now if rating is not None else None,
    )


def extend_task_set(session: StudySession, task_id: str, now: float) -> StudySession:
    """
    Add ``task_id`` to the session and make it the task accruing time.
    Time already recorded stays with the tasks that earned it.
    """
    task_ids = unique_ids([*session.task_ids, task_id])
    allocations = dict(session.task_allocations)
    if not session.task_ids and session.duration_seconds > 0:
        # Untasked time so far goes to the first task it is linked to
        allocations = {task_id: session.duration_seconds}
    running = session.status == SessionStatus.RUNNING
    return replace(
        session,
        task_ids=task_ids,
        active_task_id=task_id,
        task_allocations=allocations,
        last_start_timestamp=now if running else None,
    )


def replace_session(sessions: List[StudySession], updated: StudySession) -> List[StudySession]:
    return [updated if s.id == updated.id else s for s in sessions]


# ---------------------------------------------------------------------------
# Explanation (for interviews)
# ---------------------------------------------------------------------------
# What this file does:
#   Owns the one place raw session dicts are interpreted, and the pure
#   functions that keep the ledger's invariants:
#     - allocations sum to the duration and are never negative,
#     - at most one session is running/paused,
#     - end_time exists only for completed sessions and is never before
#       start_time + duration.
#
# Data flow:
#   stored sessions → normalize_session() per record → dedupe_active_sessions()
#   → canonical List[StudySession] → task_aggregator
#
# Talking points:
#   1. rebalance_allocations() is total-preserving: whatever the stored map
#      says, the result adds up to the duration, and the preferred (active)
#      task absorbs the difference first.
#   2. Dedup completes the losers at start + their own duration, so no time
#      is invented or moved between sessions.
#   3. One bad record is dropped with a warning; the rest of the ledger loads.
