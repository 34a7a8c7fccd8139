"""
Timer Engine — stopwatch and pomodoro math over a TimerSnapshot.

Every function is pure: it takes a snapshot and "now" in epoch milliseconds
and returns a new snapshot. Elapsed time is always derived from stored start
timestamps plus an accumulator, never counted by ticks, so a late or skipped
tick cannot lose time.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Optional, Tuple

from studytrack.data.models import (
    SessionPhase,
    TimerMode,
    TimerPhase,
    TimerSettings,
    TimerSnapshot,
)

logger = logging.getLogger(__name__)


@dataclass
class PhaseTransition:
    """Result of a pomodoro phase completing."""
    snapshot: TimerSnapshot
    completed_focus: bool
    focus_elapsed_ms: int


# ── Elapsed time ────────────────────────────────────────────────────────────

def elapsed_ms(snapshot: TimerSnapshot, now_ms: int) -> int:
    """Total elapsed time. Constant while paused, never negative."""
    if not snapshot.is_running or snapshot.started_at_ms is None:
        return max(0, snapshot.accumulated_ms)
    return max(0, snapshot.accumulated_ms) + max(0, now_ms - snapshot.started_at_ms)


def phase_elapsed_ms(snapshot: TimerSnapshot, now_ms: int) -> int:
    """Elapsed time in the current pomodoro phase."""
    if not snapshot.is_running or snapshot.phase_started_at_ms is None:
        return max(0, snapshot.phase_accumulated_ms)
    return max(0, snapshot.phase_accumulated_ms) + max(0, now_ms - snapshot.phase_started_at_ms)


def phase_duration_ms(settings: TimerSettings, phase: str) -> int:
    if phase == TimerPhase.FOCUS:
        return settings.focus_minutes * 60_000
    if phase == TimerPhase.SHORT_BREAK:
        return settings.short_break_minutes * 60_000
    return settings.long_break_minutes * 60_000


def phase_remaining_ms(snapshot: TimerSnapshot, settings: TimerSettings, now_ms: int) -> int:
    return max(0, phase_duration_ms(settings, snapshot.phase) - phase_elapsed_ms(snapshot, now_ms))


def is_idle(snapshot: TimerSnapshot) -> bool:
    """Not running and nothing accumulated."""
    return not snapshot.is_running and snapshot.accumulated_ms <= 0


def is_on_break(snapshot: TimerSnapshot) -> bool:
    return snapshot.mode == TimerMode.POMODORO and snapshot.phase in TimerPhase.BREAKS


def session_phase(mode: str) -> str:
    """Phase stamped on the session a timer in ``mode`` produces."""
    return SessionPhase.FOCUS if mode == TimerMode.POMODORO else SessionPhase.MANUAL


# ── Transitions ─────────────────────────────────────────────────────────────

def start(snapshot: TimerSnapshot, now_ms: int) -> TimerSnapshot:
    """Start (or restart after a pause). No-op while already running."""
    if snapshot.is_running:
        return snapshot
    return replace(
        snapshot,
        is_running=True,
        started_at_ms=now_ms,
        phase_started_at_ms=now_ms,
        accumulated_ms=elapsed_ms(snapshot, now_ms),
        phase_accumulated_ms=phase_elapsed_ms(snapshot, now_ms),
    )


def resume(snapshot: TimerSnapshot, now_ms: int) -> TimerSnapshot:
    """Resume a paused timer. A timer with nothing accumulated stays put."""
    if snapshot.is_running or elapsed_ms(snapshot, now_ms) <= 0:
        return snapshot
    return start(snapshot, now_ms)


def pause(snapshot: TimerSnapshot, now_ms: int) -> TimerSnapshot:
    """Fold running time into the accumulators. Pausing twice is a no-op."""
    if not snapshot.is_running:
        return snapshot
    return replace(
        snapshot,
        is_running=False,
        started_at_ms=None,
        phase_started_at_ms=None,
        accumulated_ms=elapsed_ms(snapshot, now_ms),
        phase_accumulated_ms=phase_elapsed_ms(snapshot, now_ms),
    )


def reset(snapshot: TimerSnapshot) -> TimerSnapshot:
    """Back to defaults, keeping the mode and the subject/task selection."""
    return TimerSnapshot(
        mode=snapshot.mode,
        subject_id=snapshot.subject_id,
        task_id=snapshot.task_id,
    )


def should_materialize(snapshot: TimerSnapshot, now_ms: int) -> bool:
    """Would stopping now produce a session? Breaks never count as study time."""
    return (
        elapsed_ms(snapshot, now_ms) > 0
        and snapshot.subject_id is not None
        and (snapshot.mode == TimerMode.STOPWATCH or snapshot.phase == TimerPhase.FOCUS)
    )


def switch_mode(snapshot: TimerSnapshot, mode: str, now_ms: int) -> TimerSnapshot:
    """
    Switch stopwatch ↔ pomodoro. The pomodoro cycle starts over at focus,
    but the outer elapsed total carries across.
    """
    if mode == snapshot.mode:
        return snapshot
    running = snapshot.is_running
    return replace(
        snapshot,
        mode=mode,
        phase=TimerPhase.FOCUS,
        cycle_count=0,
        accumulated_ms=elapsed_ms(snapshot, now_ms),
        started_at_ms=now_ms if running else None,
        phase_accumulated_ms=0,
        phase_started_at_ms=now_ms if running else None,
    )


def restart_accumulators(snapshot: TimerSnapshot, now_ms: int) -> TimerSnapshot:
    """Zero both accumulators, keeping the run state (used on task switches)."""
    running = snapshot.is_running
    return replace(
        snapshot,
        accumulated_ms=0,
        phase_accumulated_ms=0,
        started_at_ms=now_ms if running else None,
        phase_started_at_ms=now_ms if running else None,
    )


# ── Pomodoro cycling ────────────────────────────────────────────────────────

def next_phase(phase: str, cycle_count: int, long_break_interval: int) -> Tuple[str, int]:
    """
    Phase after ``phase`` completes.

    focus → longBreak when cycle_count+1 is a multiple of the interval,
    otherwise shortBreak; any break → focus.
    """
    if phase == TimerPhase.FOCUS:
        cycles = cycle_count + 1
        if cycles % max(1, long_break_interval) == 0:
            return TimerPhase.LONG_BREAK, cycles
        return TimerPhase.SHORT_BREAK, cycles
    return TimerPhase.FOCUS, cycle_count


def complete_phase_if_due(
    snapshot: TimerSnapshot,
    settings: TimerSettings,
    now_ms: int,
) -> Optional[PhaseTransition]:
    """
    Advance a running pomodoro whose phase time is used up.

    Returns None when nothing is due. The caller materializes a session only
    when ``completed_focus`` is set, using ``focus_elapsed_ms``.
    """
    if snapshot.mode != TimerMode.POMODORO or not snapshot.is_running:
        return None
    if phase_elapsed_ms(snapshot, now_ms) < phase_duration_ms(settings, snapshot.phase):
        return None

    completed_focus = snapshot.phase == TimerPhase.FOCUS
    focus_elapsed = elapsed_ms(snapshot, now_ms) if completed_focus else 0
    phase, cycles = next_phase(snapshot.phase, snapshot.cycle_count, settings.long_break_interval)
    auto = settings.auto_start_next_phase

    logger.info("Pomodoro %s complete → %s (cycle %d)", snapshot.phase, phase, cycles)
    return PhaseTransition(
        snapshot=replace(
            snapshot,
            phase=phase,
            cycle_count=cycles,
            is_running=auto,
            started_at_ms=now_ms if auto else None,
            accumulated_ms=0,
            phase_started_at_ms=now_ms if auto else None,
            phase_accumulated_ms=0,
        ),
        completed_focus=completed_focus,
        focus_elapsed_ms=focus_elapsed,
    )


# ---------------------------------------------------------------------------
# Explanation (for interviews)
# ---------------------------------------------------------------------------
# What this file does:
#   Computes stopwatch/pomodoro time from (snapshot, now) alone.
#
# Key pieces:
#   - Two clocks in one snapshot: the outer pair (started_at_ms,
#     accumulated_ms) measures the whole run, the phase pair measures only
#     the current pomodoro phase. Mode switches reset the phase pair only.
#   - start/pause/resume are idempotent, so a double click or a redundant
#     host call changes nothing.
#   - complete_phase_if_due() is what the host tick calls once a second; it
#     is safe to call at any cadence because it only compares timestamps.
