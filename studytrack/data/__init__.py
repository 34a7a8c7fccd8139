from .database import Database
from .models import (
    DailyTask,
    DailyTasksState,
    DayStats,
    Profile,
    ProfilesState,
    Result,
    StudySession,
    Subject,
    Task,
    TimerSnapshot,
    UserData,
)
from .repository import KeyValueStore

__all__ = [
    "Database",
    "DailyTask",
    "DailyTasksState",
    "DayStats",
    "KeyValueStore",
    "Profile",
    "ProfilesState",
    "Result",
    "StudySession",
    "Subject",
    "Task",
    "TimerSnapshot",
    "UserData",
]
