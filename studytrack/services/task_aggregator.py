"""
Task Aggregator — task normalization and time totals from the session ledger.

A task's ``total_time_seconds``, ``session_count`` and ``last_worked_at`` are
a cache of the ledger, never the source of truth: they are refolded from the
normalized sessions on every load and every mutation.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any, Dict, Iterable, List, Optional, Set

from studytrack.data.coerce import (
    as_epoch_seconds,
    as_finite_number,
    as_id,
    is_iso_date,
    is_record,
    new_id,
    parse_iso_datetime,
)
from studytrack.data.models import (
    SessionStatus,
    StudySession,
    Task,
    TaskBucket,
    TaskPriority,
)
from studytrack.services.clock import end_of_day, iso_from_epoch, local_date

logger = logging.getLogger(__name__)


# ── Normalization ───────────────────────────────────────────────────────────

def _resolve_due_date(raw: Dict[str, Any]) -> Optional[str]:
    for name in ("dueDate", "scheduledFor"):
        value = raw.get(name)
        if is_iso_date(value):
            return value
        # Full timestamps are cut down to their local calendar date
        parsed = parse_iso_datetime(value)
        if parsed is not None:
            return local_date(parsed)
    return None


def derive_backlog(
    completed: bool,
    deadline: Optional[float],
    backlog_since: Optional[float],
    now: float,
) -> tuple:
    """(is_backlog, backlog_since, bucket) for a task at ``now``."""
    is_backlog = not completed and deadline is not None and now > deadline
    if not is_backlog:
        return False, None, TaskBucket.DAILY
    return True, backlog_since if backlog_since is not None else now, TaskBucket.BACKLOG


def normalize_task(
    raw: Dict[str, Any],
    now: float,
    seen_ids: Optional[Set[str]] = None,
    index: int = 0,
) -> Task:
    if not is_record(raw):
        raise ValueError(f"not a mapping: {type(raw).__name__}")

    seen_ids = seen_ids if seen_ids is not None else set()
    task_id = as_id(raw.get("id"))
    if task_id is None or task_id in seen_ids:
        task_id = new_id()
    seen_ids.add(task_id)

    title = as_id(raw.get("title")) or as_id(raw.get("name")) or "Untitled task"
    description = raw.get("description")
    priority = raw.get("priority")
    if priority not in TaskPriority.ALL:
        priority = TaskPriority.MEDIUM
    completed = raw.get("completed") is True or raw.get("status") == "completed"

    due_date = _resolve_due_date(raw)
    deadline = as_epoch_seconds(raw.get("deadline"))
    if deadline is None:
        deadline = parse_iso_datetime(raw.get("deadline"))
    if deadline is None and due_date is not None:
        deadline = end_of_day(due_date)

    is_backlog, backlog_since, bucket = derive_backlog(
        completed, deadline, as_epoch_seconds(raw.get("backlogSince")), now,
    )

    order = as_finite_number(raw.get("order"))
    completed_at = raw.get("completedAt")
    created_at = raw.get("createdAt")
    updated_at = raw.get("updatedAt")
    now_iso = iso_from_epoch(now)

    return Task(
        id=task_id,
        title=title,
        description=description.strip() if isinstance(description, str) else "",
        subject_id=as_id(raw.get("subjectId")),
        priority=priority,
        completed=completed,
        completed_at=(completed_at if isinstance(completed_at, str) else now_iso) if completed else None,
        due_date=due_date,
        deadline=deadline,
        is_backlog=is_backlog,
        backlog_since=backlog_since,
        bucket=bucket,
        order=int(order) if order is not None else index + 1,
        total_time_seconds=0,
        session_count=0,
        last_worked_at=None,
        created_at=created_at if isinstance(created_at, str) else now_iso,
        updated_at=updated_at if isinstance(updated_at, str) else now_iso,
    )


def normalize_tasks(raw_records: Iterable[Any], now: float) -> List[Task]:
    tasks: List[Task] = []
    seen_ids: Set[str] = set()
    for index, raw in enumerate(raw_records):
        try:
            tasks.append(normalize_task(raw, now, seen_ids, index))
        except (TypeError, ValueError, OverflowError) as exc:
            logger.warning("Dropping malformed task record #%d: %s", index, exc)
    return tasks


# ── Totals ──────────────────────────────────────────────────────────────────

def recompute_task_totals(tasks: List[Task], sessions: Iterable[StudySession]) -> List[Task]:
    """
    Refold per-task totals from completed sessions.

    Running and paused sessions are skipped; their time is not spent yet.
    """
    totals: Dict[str, int] = {}
    counts: Dict[str, int] = {}
    last_worked: Dict[str, float] = {}

    for session in sessions:
        if session.status != SessionStatus.COMPLETED:
            continue
        end = session.effective_end
        for task_id, seconds in session.task_allocations.items():
            totals[task_id] = totals.get(task_id, 0) + seconds
            if seconds > 0:
                counts[task_id] = counts.get(task_id, 0) + 1
            if task_id not in last_worked or end > last_worked[task_id]:
                last_worked[task_id] = end

    return [
        replace(
            task,
            total_time_seconds=totals.get(task.id, 0),
            session_count=counts.get(task.id, 0),
            last_worked_at=last_worked.get(task.id),
        )
        for task in tasks
    ]


# ---------------------------------------------------------------------------
# Explanation (for interviews)
# ---------------------------------------------------------------------------
# What this file does:
#   Turns stored task dicts into Task objects and refolds their time totals
#   from the session ledger.
#
# Data flow:
#   raw tasks → normalize_task() (deadline → backlog → bucket)
#   normalized sessions → recompute_task_totals() → tasks with fresh totals
#
# Talking points:
#   1. The fold is pure: running it twice over the same ledger yields equal
#      tasks, which is what makes reload-after-every-change safe.
#   2. backlog_since is set once when a task first goes overdue and cleared
#      when it leaves the backlog; the derived priority is computed from it
#      at read time in analytics/engine.py.
