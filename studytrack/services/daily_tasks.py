"""
Daily Tasks — date-scoped to-dos with incremental per-day statistics.

Daily tasks can only be scheduled for today or tomorrow. Anything left
unfinished on a past date is rolled forward to today, never dropped.
``stats_by_date`` is updated incrementally with every mutation and always
equals ``recompute_day_stats(tasks)``; on load a mismatch is repaired from
the recomputation.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any, Dict, List, Optional

from studytrack.data.coerce import as_bool, as_finite_number, as_id, is_iso_date, is_record
from studytrack.data.models import DailyTask, DailyTasksState, DayStats, Result, TaskPriority
from studytrack.services.clock import add_days

logger = logging.getLogger(__name__)

SCHEDULE_ERROR = "Daily tasks can only be scheduled for Today or Tomorrow."
NOT_FOUND_ERROR = "Task not found."


# ── Stats ───────────────────────────────────────────────────────────────────

def _copy_stats(stats: DayStats) -> DayStats:
    return DayStats(
        total=stats.total,
        completed=stats.completed,
        rollover=stats.rollover,
        by_priority=dict(stats.by_priority),
    )


def apply_stats_delta(
    stats_by_date: Dict[str, DayStats],
    date_iso: str,
    total: int = 0,
    completed: int = 0,
    rollover: int = 0,
    priority: Optional[str] = None,
    priority_delta: int = 0,
) -> Dict[str, DayStats]:
    """Return a new stats map with one date adjusted. Counters floor at 0."""
    nxt = dict(stats_by_date)
    current = _copy_stats(nxt.get(date_iso, DayStats()))
    current.total = max(0, current.total + total)
    current.completed = max(0, current.completed + completed)
    current.rollover = max(0, current.rollover + rollover)
    if priority in TaskPriority.ALL:
        current.by_priority[priority] = max(0, current.by_priority.get(priority, 0) + priority_delta)

    if current.is_empty():
        nxt.pop(date_iso, None)
    else:
        nxt[date_iso] = current
    return nxt


def _apply_task(stats_by_date: Dict[str, DayStats], task: DailyTask, sign: int) -> Dict[str, DayStats]:
    """Add (sign=1) or remove (sign=-1) one task's contribution."""
    return apply_stats_delta(
        stats_by_date,
        task.scheduled_for,
        total=sign,
        completed=sign if task.completed else 0,
        rollover=sign if task.is_rolled_over else 0,
        priority=task.priority,
        priority_delta=sign,
    )


def recompute_day_stats(tasks: List[DailyTask]) -> Dict[str, DayStats]:
    stats: Dict[str, DayStats] = {}
    for task in tasks:
        stats = _apply_task(stats, task, 1)
    return stats


def sort_daily_tasks(tasks: List[DailyTask]) -> List[DailyTask]:
    return sorted(tasks, key=lambda t: (t.scheduled_for, t.created_at))


# ── Parsing ─────────────────────────────────────────────────────────────────

def _parse_day_stats(raw: Any) -> Optional[DayStats]:
    if not is_record(raw):
        return None
    by_priority_raw = raw.get("byPriority") if is_record(raw.get("byPriority")) else {}

    def count(value: Any) -> int:
        number = as_finite_number(value)
        return max(0, int(number)) if number is not None else 0

    return DayStats(
        total=count(raw.get("total")),
        completed=count(raw.get("completed")),
        rollover=count(raw.get("rollover")),
        by_priority={p: count(by_priority_raw.get(p)) for p in TaskPriority.ALL},
    )


def parse_daily_task(raw: Any) -> Optional[DailyTask]:
    if not is_record(raw):
        return None
    task_id = as_id(raw.get("id"))
    title = as_id(raw.get("title"))
    scheduled_for = raw.get("scheduledFor")
    if task_id is None or title is None or not is_iso_date(scheduled_for):
        return None

    priority = raw.get("priority")
    completed = as_bool(raw.get("completed"))
    completed_at = raw.get("completedAt")
    created_at = raw.get("createdAt")
    updated_at = raw.get("updatedAt")
    rollover_count = as_finite_number(raw.get("rolloverCount"))
    return DailyTask(
        id=task_id,
        title=title,
        priority=priority if priority in TaskPriority.ALL else TaskPriority.MEDIUM,
        scheduled_for=scheduled_for,
        completed=completed,
        completed_at=completed_at if completed and isinstance(completed_at, str) else None,
        is_rolled_over=as_bool(raw.get("isRolledOver")),
        rollover_count=max(0, int(rollover_count)) if rollover_count is not None else 0,
        created_at=created_at if isinstance(created_at, str) else "",
        updated_at=updated_at if isinstance(updated_at, str) else "",
    )


def parse_daily_tasks_state(data: Dict[str, Any]) -> DailyTasksState:
    """Decode a validated payload. Invalid task entries are skipped."""
    tasks: List[DailyTask] = []
    seen = set()
    for index, raw in enumerate(data.get("tasks") or []):
        task = parse_daily_task(raw)
        if task is None or task.id in seen:
            logger.warning("Skipping invalid daily task entry #%d", index)
            continue
        seen.add(task.id)
        tasks.append(task)

    stored: Dict[str, DayStats] = {}
    stats_raw = data.get("statsByDate") if is_record(data.get("statsByDate")) else {}
    for date_iso, raw_stats in stats_raw.items():
        parsed = _parse_day_stats(raw_stats)
        if is_iso_date(date_iso) and parsed is not None and not parsed.is_empty():
            stored[date_iso] = parsed

    expected = recompute_day_stats(tasks)
    if stored != expected:
        logger.debug("Daily task stats out of step with tasks; rebuilt from %d task(s)", len(tasks))

    last = data.get("lastRolloverDate")
    return DailyTasksState(
        tasks=sort_daily_tasks(tasks),
        stats_by_date=expected,
        last_rollover_date=last if is_iso_date(last) else None,
    )


def encode_daily_tasks_state(state: DailyTasksState) -> Dict[str, Any]:
    return state.to_dict()


# ── Mutations ───────────────────────────────────────────────────────────────

def is_today_or_tomorrow(date_iso: Any, today: str) -> bool:
    return is_iso_date(date_iso) and date_iso in (today, add_days(today, 1))


def _index_of(state: DailyTasksState, task_id: str) -> int:
    for index, task in enumerate(state.tasks):
        if task.id == task_id:
            return index
    return -1


def build_daily_task(
    task_id: str,
    title: str,
    priority: str,
    scheduled_for: str,
    today: str,
    now_iso: str,
) -> Result:
    """Validate user input into a new DailyTask."""
    title = (title or "").strip()
    if not title:
        return Result.failure("Task title is required.")
    if priority not in TaskPriority.ALL:
        return Result.failure(f"Unknown priority: {priority!r}")
    if not is_today_or_tomorrow(scheduled_for, today):
        return Result.failure(SCHEDULE_ERROR)
    return Result.success(DailyTask(
        id=task_id,
        title=title,
        priority=priority,
        scheduled_for=scheduled_for,
        created_at=now_iso,
        updated_at=now_iso,
    ))


def insert_daily_task(state: DailyTasksState, task: DailyTask) -> DailyTasksState:
    return replace(
        state,
        tasks=sort_daily_tasks([*state.tasks, task]),
        stats_by_date=_apply_task(state.stats_by_date, task, 1),
    )


def _swap(state: DailyTasksState, index: int, updated: DailyTask) -> DailyTasksState:
    previous = state.tasks[index]
    stats = _apply_task(state.stats_by_date, previous, -1)
    stats = _apply_task(stats, updated, 1)
    tasks = list(state.tasks)
    tasks[index] = updated
    return replace(state, tasks=sort_daily_tasks(tasks), stats_by_date=stats)


def update_daily_task(
    state: DailyTasksState,
    task_id: str,
    today: str,
    now_iso: str,
    title: Optional[str] = None,
    priority: Optional[str] = None,
    scheduled_for: Optional[str] = None,
) -> Result:
    if scheduled_for is not None and not is_today_or_tomorrow(scheduled_for, today):
        return Result.failure(SCHEDULE_ERROR)
    if priority is not None and priority not in TaskPriority.ALL:
        return Result.failure(f"Unknown priority: {priority!r}")
    index = _index_of(state, task_id)
    if index < 0:
        return Result.failure(NOT_FOUND_ERROR)

    task = state.tasks[index]
    next_date = scheduled_for or task.scheduled_for
    moved = next_date != task.scheduled_for
    updated = replace(
        task,
        title=title.strip() if title and title.strip() else task.title,
        priority=priority or task.priority,
        scheduled_for=next_date,
        is_rolled_over=False if moved else task.is_rolled_over,
        updated_at=now_iso,
    )
    return Result.success(_swap(state, index, updated))


def toggle_daily_task(
    state: DailyTasksState,
    task_id: str,
    completed: bool,
    now_iso: str,
) -> Result:
    index = _index_of(state, task_id)
    if index < 0:
        return Result.failure(NOT_FOUND_ERROR)
    task = state.tasks[index]
    if task.completed == completed:
        return Result.success(state)
    updated = replace(
        task,
        completed=completed,
        completed_at=now_iso if completed else None,
        updated_at=now_iso,
    )
    return Result.success(_swap(state, index, updated))


def delete_daily_task(state: DailyTasksState, task_id: str) -> Result:
    index = _index_of(state, task_id)
    if index < 0:
        return Result.failure(NOT_FOUND_ERROR)
    target = state.tasks[index]
    return Result.success(replace(
        state,
        tasks=[t for t in state.tasks if t.id != task_id],
        stats_by_date=_apply_task(state.stats_by_date, target, -1),
    ))


def rollover_daily_tasks(state: DailyTasksState, today: str, now_iso: str) -> DailyTasksState:
    """
    Move every unfinished task from a past date to ``today``.

    Running it again on the same day is a no-op.
    """
    if state.last_rollover_date == today:
        return state

    stats = state.stats_by_date
    tasks: List[DailyTask] = []
    moved = 0
    for task in state.tasks:
        if task.completed or task.scheduled_for >= today:
            tasks.append(task)
            continue
        rolled = replace(
            task,
            scheduled_for=today,
            is_rolled_over=True,
            rollover_count=task.rollover_count + 1,
            updated_at=now_iso,
        )
        stats = _apply_task(stats, task, -1)
        stats = _apply_task(stats, rolled, 1)
        tasks.append(rolled)
        moved += 1

    if moved:
        logger.info("Rolled %d unfinished daily task(s) over to %s", moved, today)
    return replace(
        state,
        tasks=sort_daily_tasks(tasks),
        stats_by_date=stats,
        last_rollover_date=today,
    )


# ---------------------------------------------------------------------------
# Explanation (for interviews)
# ---------------------------------------------------------------------------
# What this file does:
#   Pure state transitions for the daily to-do list, each returning a new
#   DailyTasksState with its per-date counters already adjusted.
#
# Key pieces:
#   - _apply_task(stats, task, ±1) is the single place a task's contribution
#     to the counters is defined. Every mutation removes the old version and
#     adds the new one, so incremental stats cannot drift from a recompute.
#   - rollover_daily_tasks() is keyed on last_rollover_date, which makes
#     the once-per-day pass safe to call on every load.
#   - User-facing mutations return Result, so the UI can show
#     "Task not found." without catching anything.
