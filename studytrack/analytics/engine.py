"""
Analytics Engine — everything derived from the normalized ledger and the
daily task stats.

Nothing here is stored. Study totals, streaks, completion rates, backlog
priorities and trend forecasts are recomputed from the current state each
time they are asked for.

Trend forecasting follows the small-data strategy:
  - >= 8 daily samples → least-squares line, next value clamped
  - >= 3 daily samples → exponential moving average
  - else → None (not enough history)
"""

from __future__ import annotations

import logging
import math
from datetime import date
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from studytrack import config
from studytrack.data.models import (
    DailyTask,
    DailyTasksState,
    DayStats,
    SessionRating,
    SessionStatus,
    StudySession,
    Task,
    TaskPriority,
    UserData,
)
from studytrack.services.clock import (
    add_days,
    add_months,
    date_range,
    local_date,
    start_of_day,
    start_of_month,
    start_of_week,
)

logger = logging.getLogger(__name__)

MIN_SAMPLES_FOR_REGRESSION = 8
MIN_SAMPLES_FOR_AVERAGE = 3

STREAK_CALENDAR_DAYS = 28

RATING_SCORES = {
    SessionRating.PRODUCTIVE: 3,
    SessionRating.AVERAGE: 2,
    SessionRating.DISTRACTED: 1,
}


# ── Backlog ─────────────────────────────────────────────────────────────────

def days_in_backlog(backlog_since: Optional[float], now: float) -> int:
    """Whole days a task has been overdue. 0 when not in the backlog."""
    if backlog_since is None:
        return 0
    return max(0, math.floor((now - backlog_since) / config.SECONDS_PER_DAY))


def backlog_priority(days: int) -> str:
    if days >= config.BACKLOG_HIGH_DAYS:
        return TaskPriority.HIGH
    if days >= config.BACKLOG_MEDIUM_DAYS:
        return TaskPriority.MEDIUM
    return TaskPriority.LOW


def effective_priority(task: Task, now: float) -> str:
    """Backlog tasks rank by age; everything else keeps its own priority."""
    if not task.is_backlog:
        return task.priority
    return backlog_priority(days_in_backlog(task.backlog_since, now))


# ── Rates & streaks ─────────────────────────────────────────────────────────

def completion_rate(completed: float, total: float) -> float:
    """Percentage to one decimal; 0 when there is nothing to complete."""
    if total <= 0:
        return 0
    return round(completed / total * 100, 1)


def streaks(stats_by_date: Dict[str, DayStats], today: str) -> Tuple[int, int]:
    """
    (current, longest) runs of consecutive calendar days with at least one
    completed task. The current run counts back from today.
    """
    longest = 0
    run = 0
    previous = None
    for day in sorted(stats_by_date):
        if stats_by_date[day].completed <= 0:
            run = 0
            previous = None
            continue
        run = run + 1 if previous is not None and add_days(previous, 1) == day else 1
        previous = day
        longest = max(longest, run)

    current = 0
    cursor = today
    while cursor in stats_by_date and stats_by_date[cursor].completed > 0:
        current += 1
        cursor = add_days(cursor, -1)
    return current, longest


def productivity_score(
    sessions: Iterable[StudySession],
    start: float,
    end: float,
) -> Tuple[float, int]:
    """
    Mean reflection score (productive=3, average=2, distracted=1) of rated
    sessions ending in [start, end). Returns (score, rated_count).
    """
    scores = [
        RATING_SCORES[s.reflection_rating]
        for s in sessions
        if s.reflection_rating in RATING_SCORES and start <= s.effective_end < end
    ]
    if not scores:
        return 0.0, 0
    return round(float(np.mean(scores)), 2), len(scores)


# ── Study time series ───────────────────────────────────────────────────────

def _completed(sessions: Iterable[StudySession]) -> List[StudySession]:
    return [s for s in sessions if s.status == SessionStatus.COMPLETED]


def seconds_by_date(sessions: Iterable[StudySession]) -> Dict[str, int]:
    """Completed study seconds per local end date."""
    totals: Dict[str, int] = {}
    for session in _completed(sessions):
        day = local_date(session.effective_end)
        totals[day] = totals.get(day, 0) + session.duration_seconds
    return totals


def _seconds_between(sessions: Sequence[StudySession], start: float, end: float) -> int:
    return sum(s.duration_seconds for s in sessions if start <= s.effective_end < end)


def consistency_series(sessions: Iterable[StudySession], today: str, days: int = 14) -> List[dict]:
    """Minutes per day for the last ``days`` days with a 7-day moving average."""
    totals = seconds_by_date(sessions)
    dates = date_range(add_days(today, -(days - 1)), today)
    minutes = np.array([round(totals.get(d, 0) / 60) for d in dates], dtype=float)

    points = []
    for index, day in enumerate(dates):
        window = minutes[max(0, index - 6): index + 1]
        points.append({
            "date": day,
            "minutes": int(minutes[index]),
            "movingAverageMinutes": round(float(window.mean()), 1),
        })
    return points


def monthly_series(sessions: Iterable[StudySession], today: str, months: int = 6) -> List[dict]:
    totals: Dict[str, int] = {}
    for day, seconds in seconds_by_date(sessions).items():
        totals[day[:7]] = totals.get(day[:7], 0) + seconds

    points = []
    for offset in range(months - 1, -1, -1):
        month = add_months(today, -offset)[:7]
        points.append({"month": month, "minutes": round(totals.get(month, 0) / 60)})
    return points


def subject_distribution(data: UserData) -> List[dict]:
    """Minutes per subject, largest first. Sessions without one are 'Unassigned'."""
    seconds: Dict[Optional[str], int] = {}
    for session in _completed(data.sessions):
        seconds[session.subject_id] = seconds.get(session.subject_id, 0) + session.duration_seconds

    points = []
    for subject_id, total in seconds.items():
        subject = data.find_subject(subject_id)
        points.append({
            "subjectId": subject_id,
            "subject": subject.name if subject else "Unassigned",
            "minutes": round(total / 60),
            "color": subject.color if subject else config.DEFAULT_SUBJECT_COLOR,
        })
    return sorted(points, key=lambda p: p["minutes"], reverse=True)


def study_streak_days(sessions: Iterable[StudySession], today: str) -> int:
    totals = seconds_by_date(sessions)
    streak = 0
    cursor = today
    while totals.get(cursor, 0) > 0:
        streak += 1
        cursor = add_days(cursor, -1)
    return streak


def productivity_percent(today_seconds: int) -> float:
    """Today's study time as a share of a full productive day, 0-100."""
    ratio = today_seconds / 60 / config.MAX_PRODUCTIVE_MINUTES_PER_DAY * 100
    return min(100.0, max(0.0, ratio))


def goal_progress(data: UserData, today: str) -> Dict[str, dict]:
    sessions = _completed(data.sessions)
    goals = data.settings.goals
    week_start = start_of_day(start_of_week(today))
    month_start = start_of_day(start_of_month(today))
    tomorrow = start_of_day(add_days(today, 1))

    progress = {}
    for name, start, target_hours in (
        ("daily", start_of_day(today), goals.daily_hours),
        ("weekly", week_start, goals.weekly_hours),
        ("monthly", month_start, goals.monthly_hours),
    ):
        hours = _seconds_between(sessions, start, tomorrow) / 3600
        progress[name] = {
            "hours": round(hours, 2),
            "targetHours": target_hours,
            "percent": min(100.0, completion_rate(hours, target_hours)),
        }
    return progress


# ── Trend (numpy) ───────────────────────────────────────────────────────────

def trend_slope(values: Sequence[float]) -> Optional[float]:
    """Least-squares slope per step, or None for fewer than two points."""
    if len(values) < 2:
        return None
    x = np.arange(len(values), dtype=float)
    y = np.array(values, dtype=float)
    A = np.vstack([x, np.ones(len(x))]).T
    m, _ = np.linalg.lstsq(A, y, rcond=None)[0]
    return float(m)


def exponential_moving_average(values: Sequence[float], alpha: float = 0.3) -> float:
    ema = values[0]
    for v in values[1:]:
        ema = alpha * v + (1 - alpha) * ema
    return float(ema)


def forecast_next_day(values: Sequence[float]) -> Optional[float]:
    """
    Predict the next value of a daily series.

    The regression line is clamped to [0.5 * mean, 2 * mean] since a short
    series can extrapolate below zero.
    """
    if len(values) >= MIN_SAMPLES_FOR_REGRESSION:
        x = np.arange(len(values), dtype=float)
        y = np.array(values, dtype=float)
        A = np.vstack([x, np.ones(len(x))]).T
        m, b = np.linalg.lstsq(A, y, rcond=None)[0]
        mean_val = float(np.mean(y))
        prediction = m * len(values) + b
        return float(max(mean_val * 0.5, min(prediction, mean_val * 2.0)))
    if len(values) >= MIN_SAMPLES_FOR_AVERAGE:
        return exponential_moving_average(values)
    return None


# ── Summaries ───────────────────────────────────────────────────────────────

def study_summary(data: UserData, today: str, now: float) -> dict:
    """Dashboard numbers for the study side of the app."""
    sessions = _completed(data.sessions)
    day_start = start_of_day(today)
    tomorrow = start_of_day(add_days(today, 1))
    week_start = start_of_day(start_of_week(today))
    prev_week_start = start_of_day(add_days(start_of_week(today), -7))
    next_week_start = start_of_day(add_days(start_of_week(today), 7))
    month_start = start_of_day(start_of_month(today))
    prev_month_start = start_of_day(add_months(today, -1))
    next_month_start = start_of_day(add_months(today, 1))

    today_seconds = _seconds_between(sessions, day_start, tomorrow)
    totals = seconds_by_date(sessions)
    best_date = max(totals, key=lambda d: totals[d]) if totals else None

    series = consistency_series(sessions, today, days=30)
    minutes = [p["minutes"] for p in series]
    week_score, week_rated = productivity_score(sessions, week_start, next_week_start)

    summary = {
        "todaySeconds": today_seconds,
        "productivityPercent": productivity_percent(today_seconds),
        "streakDays": study_streak_days(sessions, today),
        "bestDay": best_date,
        "bestDayMinutes": round(totals[best_date] / 60) if best_date else 0,
        "weeklySeconds": _seconds_between(sessions, week_start, next_week_start),
        "previousWeekSeconds": _seconds_between(sessions, prev_week_start, week_start),
        "monthlySeconds": _seconds_between(sessions, month_start, next_month_start),
        "previousMonthSeconds": _seconds_between(sessions, prev_month_start, month_start),
        "weeklyProductivityScore": week_score,
        "weeklyRatedSessions": week_rated,
        "consistency": series,
        "monthly": monthly_series(sessions, today),
        "subjects": subject_distribution(data),
        "goals": goal_progress(data, today),
        "trendMinutesPerDay": trend_slope(minutes),
        "forecastMinutes": forecast_next_day([m for m in minutes if m > 0]),
        "backlog": [
            {"taskId": t.id, "days": days_in_backlog(t.backlog_since, now),
             "priority": effective_priority(t, now)}
            for t in data.tasks if t.is_backlog
        ],
    }
    logger.debug("Study summary for %s: %ds today", today, today_seconds)
    return summary


def _insights(
    stats_by_date: Dict[str, DayStats],
    tasks: List[DailyTask],
    weekly_rate: float,
    monthly_rate: float,
) -> List[str]:
    if len(stats_by_date) < 3:
        return [
            "Add a few daily tasks to unlock personalized productivity insights.",
            "Completing at least one task per day starts your streak quickly.",
        ]

    weekday = [0, 0]
    weekend = [0, 0]
    for day, stats in stats_by_date.items():
        bucket = weekend if date.fromisoformat(day).weekday() >= 5 else weekday
        bucket[0] += stats.completed
        bucket[1] += stats.total
    weekday_rate = completion_rate(*weekday)
    weekend_rate = completion_rate(*weekend)

    insights = []
    if weekday_rate >= weekend_rate + 8:
        insights.append("You complete more tasks on weekdays. Front-load high priority work there.")
    elif weekend_rate >= weekday_rate + 8:
        insights.append("Your weekend completion is stronger. Use weekdays for lighter planning.")

    if weekly_rate >= monthly_rate + 5:
        insights.append("Your completion rate improved this week. Keep your current pace going.")
    elif monthly_rate >= weekly_rate + 8:
        insights.append("This week is below your monthly trend. Tighten tomorrow's task list.")

    if any(t.priority == TaskPriority.HIGH and not t.completed for t in tasks):
        insights.append("High priority tasks are still open. Start with one before lower-priority work.")

    if not insights:
        insights.append("Consistency is building. Keep finishing at least one task daily to grow momentum.")
    return insights


def daily_task_analytics(state: DailyTasksState, today: str) -> dict:
    stats = state.stats_by_date
    empty = DayStats()

    def totals(dates: Iterable[str]) -> Tuple[int, int]:
        completed = total = 0
        for day in dates:
            entry = stats.get(day, empty)
            completed += entry.completed
            total += entry.total
        return completed, total

    today_stats = stats.get(today, empty)
    weekly = totals(date_range(start_of_week(today), today))
    monthly = totals(date_range(start_of_month(today), today))
    yearly = totals(d for d in stats if d[:4] == today[:4] and d <= today)
    weekly_rate = completion_rate(*weekly)
    monthly_rate = completion_rate(*monthly)
    current, longest = streaks(stats, today)

    tasks = state.tasks
    return {
        "todayCompleted": today_stats.completed,
        "todayRemaining": max(0, today_stats.total - today_stats.completed),
        "dailyCompletionRate": completion_rate(today_stats.completed, today_stats.total),
        "weeklyCompletionRate": weekly_rate,
        "monthlyCompletionRate": monthly_rate,
        "yearlyCompletionRate": completion_rate(*yearly),
        "statusBreakdown": {
            "completed": sum(1 for t in tasks if t.completed),
            "incomplete": sum(1 for t in tasks if not t.completed and not t.is_rolled_over),
            "rolledOver": sum(1 for t in tasks if t.is_rolled_over and not t.completed),
        },
        "priorityBreakdown": {p: sum(1 for t in tasks if t.priority == p) for p in TaskPriority.ALL},
        "currentStreak": current,
        "longestStreak": longest,
        "streakCalendar": [
            {"date": d, "completed": stats.get(d, empty).completed > 0}
            for d in date_range(add_days(today, -(STREAK_CALENDAR_DAYS - 1)), today)
        ],
        "insights": _insights(stats, tasks, weekly_rate, monthly_rate),
    }


# ---------------------------------------------------------------------------
# Explanation (for interviews)
# ---------------------------------------------------------------------------
# What this file does:
#   Read-only views over the ledger: dashboard totals, goal progress,
#   backlog ages, daily-task completion rates and streaks, plus a small
#   numpy trend/forecast over daily study minutes.
#
# Key decisions:
#   - Only completed sessions count. A running session's time shows up in
#     analytics the moment it is stopped.
#   - Backlog priority is computed from backlog_since at read time, never
#     written back over the task's own priority.
#   - Streaks need consecutive calendar days; two dates with a gap between
#     them in the stats map do not join into one run.
#
# Talking points:
#   1. completion_rate(0, 0) is 0, never a ZeroDivisionError or NaN.
#   2. productivity_score() reports the rated count next to the score, so
#      "score 0 with nothing rated" is distinguishable from a bad week.
