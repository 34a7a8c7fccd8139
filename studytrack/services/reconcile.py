"""
Reconcile — the full normalization pipeline for one profile's UserData.

    raw dict → subjects → tasks → sessions (dedup) → task totals
             → settings/timer shape → reference cleanup → active index

This is the only entry point from persisted JSON to a UserData. It runs on
every load, every cross-window change and after every mutation, so derived
fields are always a pure function of the stored ledger.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any, Dict, List, Optional

from studytrack import config
from studytrack.data.coerce import as_id, is_record, new_id
from studytrack.data.migrations import ensure_settings, ensure_timer
from studytrack.data.models import Subject, UserData
from studytrack.services.clock import iso_from_epoch
from studytrack.services.session_ledger import find_active_session_id, normalize_sessions
from studytrack.services.task_aggregator import normalize_tasks, recompute_task_totals

logger = logging.getLogger(__name__)


def _list(value: Any) -> list:
    return value if isinstance(value, list) else []


def normalize_subjects(raw_records: Any, now: float) -> List[Subject]:
    subjects: List[Subject] = []
    seen = set()
    now_iso = iso_from_epoch(now)
    for index, raw in enumerate(_list(raw_records)):
        if not is_record(raw):
            logger.warning("Dropping malformed subject record #%d", index)
            continue
        name = as_id(raw.get("name"))
        if name is None:
            logger.warning("Dropping subject record #%d without a name", index)
            continue
        subject_id = as_id(raw.get("id"))
        if subject_id is None or subject_id in seen:
            subject_id = new_id()
        seen.add(subject_id)
        color = as_id(raw.get("color"))
        created = raw.get("createdAt")
        updated = raw.get("updatedAt")
        subjects.append(Subject(
            id=subject_id,
            name=name,
            color=color or config.DEFAULT_SUBJECT_COLOR,
            created_at=created if isinstance(created, str) else now_iso,
            updated_at=updated if isinstance(updated, str) else now_iso,
        ))
    return subjects


def normalize_user_data(
    raw: Dict[str, Any],
    now: float,
    profile_id: Optional[str] = None,
) -> UserData:
    """Build a canonical UserData from a (migrated) payload dict."""
    if not is_record(raw):
        raise TypeError(f"user data must be a mapping, got {type(raw).__name__}")

    now_iso = iso_from_epoch(now)
    subjects = normalize_subjects(raw.get("subjects"), now)
    subject_ids = {s.id for s in subjects}

    tasks = normalize_tasks(_list(raw.get("tasks")), now)
    sessions = normalize_sessions(_list(raw.get("sessions")), now)
    tasks = recompute_task_totals(tasks, sessions)

    # Subjects are not cascaded on delete; dangling references become None
    tasks = [
        t if t.subject_id is None or t.subject_id in subject_ids else replace(t, subject_id=None)
        for t in tasks
    ]
    sessions = [
        s if s.subject_id is None or s.subject_id in subject_ids else replace(s, subject_id=None)
        for s in sessions
    ]

    task_ids = {t.id for t in tasks}
    timer = ensure_timer(raw.get("timer"))
    if timer.subject_id is not None and timer.subject_id not in subject_ids:
        timer = replace(timer, subject_id=None)
    if timer.task_id is not None and timer.task_id not in task_ids:
        timer = replace(timer, task_id=None)

    last_rollover = raw.get("lastRolloverDate")
    created = raw.get("createdAt")
    updated = raw.get("updatedAt")
    stored_profile = raw.get("profileId")

    return UserData(
        version=config.APP_SCHEMA_VERSION,
        profile_id=profile_id or (stored_profile if isinstance(stored_profile, str) else ""),
        subjects=subjects,
        tasks=tasks,
        sessions=sessions,
        settings=ensure_settings(raw.get("settings")),
        timer=timer,
        last_rollover_date=last_rollover if isinstance(last_rollover, str) else None,
        active_session_id=find_active_session_id(sessions),
        created_at=created if isinstance(created, str) else now_iso,
        updated_at=updated if isinstance(updated, str) else now_iso,
    )


def renormalize(data: UserData, now: float) -> UserData:
    """Run an already-typed UserData back through the pipeline."""
    return normalize_user_data(data.to_dict(), now, data.profile_id)


def empty_user_data(profile_id: str, now: float) -> UserData:
    now_iso = iso_from_epoch(now)
    return UserData(profile_id=profile_id, created_at=now_iso, updated_at=now_iso)


# ---------------------------------------------------------------------------
# Explanation (for interviews)
# ---------------------------------------------------------------------------
# What this file does:
#   Chains the per-collection normalizers into one pass over a profile.
#
# Talking points:
#   1. Order matters: task totals can only be folded after session dedup,
#      otherwise a duplicate active session would be skipped from totals
#      even though normalization completes it.
#   2. active_session_id is recomputed here and nowhere else, so callers
#      never scan the ledger for "the running one".
#   3. renormalize() goes through to_dict(), so a typed UserData and a
#      stored dict take the same path.
