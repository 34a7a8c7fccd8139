"""
Legacy bundle — the flat, per-collection export format of the first app
version.

A legacy bundle is a JSON object whose values are themselves JSON strings
(``"study-subjects"``, ``"study-tasks"``, ``"study-sessions"``, ...). This
module writes one from a UserData and reads one back into a raw payload dict
that the normal reconcile pipeline can take from there.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional

from studytrack.data.coerce import (
    as_finite_number,
    as_id,
    is_iso_date,
    is_record,
    new_id,
    parse_iso_datetime,
)
from studytrack.data.models import SessionStatus, TaskBucket, TaskPriority, UserData
from studytrack.services.clock import iso_from_epoch, local_date

logger = logging.getLogger(__name__)

LEGACY_KEYS = ("study-sessions", "study-tasks", "study-subjects")

_NO_SUBJECT = "Other"


def looks_like_legacy(parsed: Dict[str, Any]) -> bool:
    return any(key in parsed for key in LEGACY_KEYS)


def _parse_field(value: Any, fallback: Any) -> Any:
    """Legacy values are JSON-encoded strings; tolerate already-decoded ones."""
    if isinstance(value, str):
        try:
            decoded = json.loads(value)
        except ValueError:
            return fallback
    else:
        decoded = value
    return decoded if isinstance(decoded, type(fallback)) else fallback


# ── Export ──────────────────────────────────────────────────────────────────

def build_legacy_bundle(data: UserData, now: float) -> Dict[str, str]:
    subject_names = {s.id: s.name for s in data.subjects}
    tasks_by_id = {t.id: t for t in data.tasks}

    def subject_name(subject_id: Optional[str]) -> str:
        return subject_names.get(subject_id, _NO_SUBJECT)

    def category(bucket: str) -> str:
        return "Backlog" if bucket == TaskBucket.BACKLOG else "School"

    sessions = []
    for session in data.sessions:
        if session.status != SessionStatus.COMPLETED:
            continue
        task_id = session.task_ids[0] if session.task_ids else None
        task = tasks_by_id.get(task_id)
        entry = {
            "id": session.id,
            "subject": subject_name(session.subject_id),
            "category": category(task.bucket) if task else "School",
            "duration": session.duration_seconds,
            "date": local_date(session.effective_end),
            "startTime": iso_from_epoch(session.start_time),
            "endTime": iso_from_epoch(session.effective_end),
        }
        if task_id:
            entry["taskId"] = task_id
        if session.reflection_rating:
            entry["rating"] = session.reflection_rating
        if session.reflection_comment:
            entry["note"] = session.reflection_comment
        sessions.append(entry)

    tasks = []
    for task in data.tasks:
        entry = {
            "id": task.id,
            "title": task.title,
            "subject": subject_name(task.subject_id),
            "description": task.description,
            "priority": task.priority,
            "scheduledDate": task.due_date or local_date(now),
            "createdAt": task.created_at,
            "completed": task.completed,
            "isBacklog": task.bucket == TaskBucket.BACKLOG,
            "category": category(task.bucket),
            "accumulatedTime": task.total_time_seconds,
        }
        if task.completed_at:
            entry["completedAt"] = task.completed_at
        tasks.append(entry)

    goals = data.settings.goals
    return {
        "study-sessions": json.dumps(sessions),
        "study-tasks": json.dumps(tasks),
        "study-subjects": json.dumps([
            {"id": s.id, "name": s.name, "color": s.color} for s in data.subjects
        ]),
        "study-goals": json.dumps({
            "dailyHours": goals.daily_hours,
            "weeklyHours": goals.weekly_hours,
            "monthlyHours": goals.monthly_hours,
            "yearlyHours": round(goals.monthly_hours * 12, 2),
        }),
        "study-last-auto-move": json.dumps(data.last_rollover_date),
    }


# ── Import ──────────────────────────────────────────────────────────────────

class _SubjectIndex:
    """Legacy records name subjects; ids are assigned on first sight."""

    def __init__(self, now_iso: str) -> None:
        self.now_iso = now_iso
        self.records: List[Dict[str, Any]] = []
        self._by_name: Dict[str, str] = {}
        self._used_ids = set()

    def upsert(self, name: Optional[str], preferred_id: Optional[str] = None,
               color: Optional[str] = None) -> Optional[str]:
        if not name or name == _NO_SUBJECT:
            return None
        key = name.lower()
        if key in self._by_name:
            return self._by_name[key]
        subject_id = preferred_id if preferred_id and preferred_id not in self._used_ids else new_id()
        self._used_ids.add(subject_id)
        self._by_name[key] = subject_id
        record = {"id": subject_id, "name": name, "createdAt": self.now_iso, "updatedAt": self.now_iso}
        if color:
            record["color"] = color
        self.records.append(record)
        return subject_id


def _legacy_session(item: Dict[str, Any], subjects: _SubjectIndex) -> Optional[Dict[str, Any]]:
    start = parse_iso_datetime(item.get("startTime"))
    end = parse_iso_datetime(item.get("endTime"))
    if start is None and is_iso_date(item.get("date")):
        start = parse_iso_datetime(f"{item['date']}T00:00:00")
    duration = as_finite_number(item.get("duration"))
    if (duration is None or duration <= 0) and start is not None and end is not None:
        duration = end - start
    if duration is None or duration <= 0:
        return None
    if start is None:
        start = end - duration if end is not None else None
    if start is None:
        return None

    return {
        "id": as_id(item.get("id")),
        "subjectId": subjects.upsert(as_id(item.get("subject"))),
        "taskId": as_id(item.get("taskId")),
        "status": SessionStatus.COMPLETED,
        "durationSeconds": duration,
        "startTime": start,
        "endTime": end if end is not None and end >= start else start + duration,
        "mode": "stopwatch",
        "phase": "manual",
        "rating": item.get("rating"),
        "reflection": item.get("note"),
    }


def _legacy_task(item: Dict[str, Any], subjects: _SubjectIndex) -> Optional[Dict[str, Any]]:
    title = as_id(item.get("title"))
    if title is None:
        return None
    priority = as_id(item.get("priority"))
    priority = priority.lower() if priority else None
    return {
        "id": as_id(item.get("id")),
        "title": title,
        "description": item.get("description") or "",
        "subjectId": subjects.upsert(as_id(item.get("subject"))),
        "priority": priority if priority in TaskPriority.ALL else TaskPriority.MEDIUM,
        "dueDate": item.get("scheduledDate") if is_iso_date(item.get("scheduledDate")) else None,
        "completed": item.get("completed") is True,
        "completedAt": item.get("completedAt"),
        "createdAt": item.get("createdAt"),
    }


def legacy_bundle_to_payload(parsed: Dict[str, Any], profile_id: str, now: float) -> Optional[Dict[str, Any]]:
    """Raw UserData payload for a legacy bundle, or None if it is not one."""
    if not looks_like_legacy(parsed):
        return None

    now_iso = iso_from_epoch(now)
    subjects = _SubjectIndex(now_iso)
    for item in _parse_field(parsed.get("study-subjects"), []):
        if is_record(item):
            subjects.upsert(as_id(item.get("name")), as_id(item.get("id")), as_id(item.get("color")))

    tasks = []
    for item in _parse_field(parsed.get("study-tasks"), []):
        task = _legacy_task(item, subjects) if is_record(item) else None
        if task is not None:
            tasks.append(task)

    sessions = []
    skipped = 0
    for item in _parse_field(parsed.get("study-sessions"), []):
        session = _legacy_session(item, subjects) if is_record(item) else None
        if session is None:
            skipped += 1
            continue
        sessions.append(session)
    if skipped:
        logger.warning("Skipped %d legacy session(s) without a usable duration", skipped)

    last_rollover = _parse_field(parsed.get("study-last-auto-move"), "")
    return {
        "profileId": profile_id,
        "subjects": subjects.records,
        "tasks": tasks,
        "sessions": sessions,
        "settings": {"goals": _parse_field(parsed.get("study-goals"), {})},
        "timer": {},
        "lastRolloverDate": last_rollover or None,
        "createdAt": now_iso,
        "updatedAt": now_iso,
    }


# ---------------------------------------------------------------------------
# Explanation (for interviews)
# ---------------------------------------------------------------------------
# What this file does:
#   Translates between UserData and the old one-key-per-collection bundle.
#
# Talking points:
#   1. Import only produces a raw payload dict; ids, durations, allocations
#      and totals are all settled afterwards by the same reconcile pipeline
#      a normal load uses.
#   2. Subjects are matched by name (case-insensitive) because legacy tasks
#      and sessions store the subject name, not an id.
