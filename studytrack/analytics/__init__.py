from .engine import (
    backlog_priority,
    completion_rate,
    daily_task_analytics,
    days_in_backlog,
    forecast_next_day,
    productivity_score,
    streaks,
    study_summary,
    trend_slope,
)

__all__ = [
    "backlog_priority",
    "completion_rate",
    "daily_task_analytics",
    "days_in_backlog",
    "forecast_next_day",
    "productivity_score",
    "streaks",
    "study_summary",
    "trend_slope",
]
