"""Tests for the analytics engine."""

import pytest

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from studytrack.analytics.engine import (
    backlog_priority,
    completion_rate,
    consistency_series,
    daily_task_analytics,
    days_in_backlog,
    effective_priority,
    exponential_moving_average,
    forecast_next_day,
    productivity_score,
    streaks,
    study_summary,
    trend_slope,
)
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
from studytrack.services.clock import add_days, start_of_day
from studytrack.services.daily_tasks import recompute_day_stats

TODAY = "2024-03-07"
NOW = start_of_day(TODAY) + 18 * 3600
DAY = 86400


def _session(end, duration=1800, rating=None, status=SessionStatus.COMPLETED):
    return StudySession(
        id=f"s{end}",
        status=status,
        start_time=end - duration,
        end_time=end if status == SessionStatus.COMPLETED else None,
        duration_seconds=duration,
        reflection_rating=rating,
    )


class TestBacklog:
    def test_priority_by_age(self):
        assert backlog_priority(2) == TaskPriority.LOW
        assert backlog_priority(3) == TaskPriority.MEDIUM
        assert backlog_priority(6) == TaskPriority.MEDIUM
        assert backlog_priority(7) == TaskPriority.HIGH

    def test_days_in_backlog_floors(self):
        assert days_in_backlog(NOW - 2.5 * DAY, NOW) == 2
        assert days_in_backlog(None, NOW) == 0

    def test_effective_priority(self):
        old = Task(priority=TaskPriority.LOW, is_backlog=True, backlog_since=NOW - 8 * DAY)
        assert effective_priority(old, NOW) == TaskPriority.HIGH
        fresh = Task(priority=TaskPriority.HIGH, is_backlog=False)
        assert effective_priority(fresh, NOW) == TaskPriority.HIGH


class TestRates:
    def test_completion_rate_empty(self):
        assert completion_rate(0, 0) == 0

    def test_completion_rate(self):
        assert completion_rate(1, 3) == 33.3
        assert completion_rate(2, 2) == 100.0

    def test_streaks_need_consecutive_days(self):
        done = DayStats(total=1, completed=1)
        stats = {
            "2024-03-01": done,
            "2024-03-02": done,
            "2024-03-03": done,
            # 03-04 has nothing
            "2024-03-06": done,
            "2024-03-07": done,
        }
        assert streaks(stats, TODAY) == (2, 3)

    def test_streak_broken_by_incomplete_day(self):
        stats = {
            "2024-03-06": DayStats(total=1, completed=1),
            "2024-03-07": DayStats(total=2, completed=0),
        }
        assert streaks(stats, TODAY) == (0, 1)


class TestProductivityScore:
    def test_mean_of_rated_sessions(self):
        sessions = [
            _session(NOW - 3600, rating=SessionRating.PRODUCTIVE),
            _session(NOW - 7200, rating=SessionRating.DISTRACTED),
            _session(NOW - 9000),
        ]
        assert productivity_score(sessions, NOW - DAY, NOW) == (2.0, 2)

    def test_window_excludes_other_sessions(self):
        sessions = [_session(NOW - 10 * DAY, rating=SessionRating.PRODUCTIVE)]
        assert productivity_score(sessions, NOW - DAY, NOW) == (0.0, 0)


class TestTrend:
    def test_slope(self):
        assert trend_slope([1, 2, 3, 4]) == pytest.approx(1.0)
        assert trend_slope([5]) is None

    def test_forecast_needs_history(self):
        assert forecast_next_day([30, 40]) is None

    def test_forecast_uses_average_for_short_series(self):
        values = [30, 40, 50]
        assert forecast_next_day(values) == pytest.approx(exponential_moving_average(values))

    def test_forecast_uses_regression_for_long_series(self):
        assert forecast_next_day([10] * 8) == pytest.approx(10.0)
        # Line predicts 9, mean is 4.5, so the 2x clamp allows it
        assert forecast_next_day([1, 2, 3, 4, 5, 6, 7, 8]) == pytest.approx(9.0)

    def test_forecast_clamped_below(self):
        # Steep decline would extrapolate below zero
        values = [100, 90, 60, 40, 20, 10, 5, 1]
        mean = sum(values) / len(values)
        assert forecast_next_day(values) == pytest.approx(mean * 0.5)


class TestSummaries:
    def test_study_summary_counts_completed_only(self):
        data = UserData(sessions=[
            _session(NOW - 3600, duration=1800),
            _session(NOW - DAY, duration=600),
            _session(NOW - 60, duration=900, status=SessionStatus.RUNNING),
        ])
        summary = study_summary(data, TODAY, NOW)
        assert summary["todaySeconds"] == 1800
        assert summary["streakDays"] == 2
        assert summary["bestDay"] == TODAY
        assert summary["subjects"][0]["subject"] == "Unassigned"
        assert summary["subjects"][0]["minutes"] == 40

    def test_consistency_series(self):
        series = consistency_series([_session(NOW - 3600, duration=3600)], TODAY, days=7)
        assert len(series) == 7
        assert series[-1]["date"] == TODAY
        assert series[-1]["minutes"] == 60
        assert series[-1]["movingAverageMinutes"] == pytest.approx(60 / 7, abs=0.1)

    def test_daily_task_analytics(self):
        tasks = [
            DailyTask(id="a", title="a", priority=TaskPriority.HIGH, scheduled_for=TODAY, completed=True),
            DailyTask(id="b", title="b", priority=TaskPriority.HIGH, scheduled_for=TODAY),
            DailyTask(id="c", title="c", scheduled_for=add_days(TODAY, -1), completed=True),
            DailyTask(id="d", title="d", scheduled_for=TODAY, is_rolled_over=True, rollover_count=1),
        ]
        state = DailyTasksState(tasks=tasks, stats_by_date=recompute_day_stats(tasks))
        result = daily_task_analytics(state, TODAY)

        assert result["todayCompleted"] == 1
        assert result["todayRemaining"] == 2
        assert result["dailyCompletionRate"] == 33.3
        assert result["statusBreakdown"] == {"completed": 2, "incomplete": 1, "rolledOver": 1}
        assert result["priorityBreakdown"][TaskPriority.HIGH] == 2
        assert result["currentStreak"] == 2
        assert len(result["streakCalendar"]) == 28
        assert result["streakCalendar"][-1] == {"date": TODAY, "completed": True}
        assert result["insights"]

    def test_empty_daily_analytics(self):
        result = daily_task_analytics(DailyTasksState(), TODAY)
        assert result["dailyCompletionRate"] == 0
        assert result["currentStreak"] == 0
        assert len(result["insights"]) == 2
