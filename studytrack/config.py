"""
Application-wide constants: schema versions, storage keys, limits and the
default settings every freshly created profile starts with.
"""

from __future__ import annotations

# ── Schema versions ─────────────────────────────────────────────────────────

APP_SCHEMA_VERSION = 4
PROFILES_SCHEMA_VERSION = 1
DAILY_TASKS_SCHEMA_VERSION = 1

# ── Storage keys ────────────────────────────────────────────────────────────

STORAGE_PREFIX = "study-dashboard"
PROFILES_KEY = f"{STORAGE_PREFIX}:profiles"


def user_data_key(profile_id: str) -> str:
    return f"{STORAGE_PREFIX}:data:{profile_id}"


def daily_tasks_key(profile_id: str) -> str:
    return f"{STORAGE_PREFIX}:daily:{profile_id}"


def corrupt_key(key: str, epoch_ms: int) -> str:
    """Side key a corrupt raw payload is archived under."""
    return f"{key}:corrupt:{epoch_ms}"


# ── Limits ──────────────────────────────────────────────────────────────────

MAX_SESSION_MINUTES = 10_000
MAX_SESSION_SECONDS = MAX_SESSION_MINUTES * 60   # ~166.7 hours

SESSION_EDIT_MIN_MINUTES = 1
SESSION_EDIT_MAX_MINUTES = 1440

SECONDS_PER_DAY = 86_400
MAX_PRODUCTIVE_MINUTES_PER_DAY = 900             # 15h counts as a 100% day

# Backlog age (days) at which the derived priority escalates
BACKLOG_MEDIUM_DAYS = 3
BACKLOG_HIGH_DAYS = 7

# ── Defaults ────────────────────────────────────────────────────────────────

DEFAULT_GOALS = {
    "dailyHours": 3.0,
    "weeklyHours": 15.0,
    "monthlyHours": 60.0,
}

DEFAULT_TIMER_SETTINGS = {
    "focusMinutes": 25,
    "shortBreakMinutes": 5,
    "longBreakMinutes": 15,
    "longBreakInterval": 4,
    "autoStartNextPhase": False,
    "soundEnabled": False,
    "preventAccidentalReset": True,
}

DEFAULT_THEME = "system"
THEMES = ("light", "dark", "system")

DEFAULT_SUBJECT_COLOR = "#64748b"


# ---------------------------------------------------------------------------
# Explanation (for interviews)
# ---------------------------------------------------------------------------
# What this file does:
#   Collects the numbers and names the rest of the package agrees on, so a
#   schema bump or a new storage key is a one-line change.
#
# Key pieces:
#   - Schema versions: each persisted object carries its own version and its
#     own migration chain (see data/migrations.py).
#   - Storage keys: one profiles registry, plus a data blob and a daily-task
#     blob per profile.
#   - MAX_SESSION_SECONDS: the ceiling every session duration is clamped to.
