"""
Tick Service — the host-side heartbeat.

The engine never schedules itself. This service owns two QTimers on the Qt
event loop: one calls ``SessionService.tick()`` (pomodoro phase completion,
daily rollover) and one polls the key-value store for writes made by another
window.
"""

from __future__ import annotations

import logging
from typing import Callable, Optional

from PySide6.QtCore import QTimer

from studytrack.data.repository import KeyValueStore
from studytrack.services.session_service import SessionService
from studytrack.services.timer_engine import PhaseTransition

logger = logging.getLogger(__name__)

DEFAULT_TICK_INTERVAL_MS = 1000
DEFAULT_POLL_INTERVAL_MS = 2000


class TickService:
    """
    Drives the engine from the Qt event loop.

    Callbacks run on the event loop thread, so a UI can update directly from
    ``on_phase_complete`` and ``on_tick``.
    """

    def __init__(
        self,
        service: SessionService,
        kv: KeyValueStore,
        tick_interval_ms: int = DEFAULT_TICK_INTERVAL_MS,
        poll_interval_ms: int = DEFAULT_POLL_INTERVAL_MS,
        on_tick: Optional[Callable[[int], None]] = None,
        on_phase_complete: Optional[Callable[[PhaseTransition], None]] = None,
    ) -> None:
        self.service = service
        self.kv = kv
        self.tick_interval_ms = tick_interval_ms
        self.poll_interval_ms = poll_interval_ms

        # Callbacks the UI will set
        self.on_tick = on_tick
        self.on_phase_complete = on_phase_complete

        self._tick_timer = QTimer()
        self._tick_timer.timeout.connect(self._tick)

        self._poll_timer = QTimer()
        self._poll_timer.timeout.connect(self._poll)

    # ── Public API ──────────────────────────────────────────────────────────

    def start(self) -> None:
        self._tick_timer.start(self.tick_interval_ms)
        self._poll_timer.start(self.poll_interval_ms)
        logger.info(
            "Tick service started: tick every %dms, change poll every %dms",
            self.tick_interval_ms, self.poll_interval_ms,
        )

    def stop(self) -> None:
        self._tick_timer.stop()
        self._poll_timer.stop()
        logger.info("Tick service stopped.")

    @property
    def is_active(self) -> bool:
        return self._tick_timer.isActive()

    # ── Timer callbacks ─────────────────────────────────────────────────────

    def _tick(self) -> None:
        transition = self.service.tick()
        if transition is not None and self.on_phase_complete:
            self.on_phase_complete(transition)
        if self.on_tick and self.service.data is not None:
            self.on_tick(self.service.elapsed_ms())

    def _poll(self) -> None:
        events = self.kv.poll_changes()
        if events:
            logger.debug("Picked up %d external change(s)", len(events))


# ---------------------------------------------------------------------------
# Explanation (for interviews)
# ---------------------------------------------------------------------------
# What this file does:
#   Schedules the engine's periodic work. The engine itself is a set of pure
#   functions of (state, now); this is the only place that decides "now".
#
# Key pieces:
#   - _tick(): once a second by default. Because elapsed time is computed
#     from stored timestamps, a late or dropped tick only delays a phase
#     change; it never loses time.
#   - _poll(): reads the kv_changes feed; SessionService is subscribed to the
#     store, so adopted changes flow through handle_storage_change().
#
# Talking points:
#   1. QTimer callbacks run on the Qt event loop thread, so there is no
#      locking between ticks and UI actions.
#   2. Intervals are constructor arguments; tests and slower hosts can pick
#      their own cadence without touching the engine.
