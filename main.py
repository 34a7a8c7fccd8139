"""
StudyTrack — session & timer reconciliation engine.
Entry point for the headless host.
"""

import faulthandler
import logging
import sys
from pathlib import Path

faulthandler.enable()

# Ensure studytrack is importable
sys.path.insert(0, str(Path(__file__).resolve().parent))

from PySide6.QtCore import QCoreApplication

from studytrack import __version__
from studytrack.data.database import Database
from studytrack.data.migrations import describe_migrations
from studytrack.data.repository import KeyValueStore
from studytrack.host.tick_service import TickService
from studytrack.services.clock import fmt_hms
from studytrack.services.session_service import SessionService


def setup_logging() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[
            logging.StreamHandler(),
            logging.FileHandler("studytrack.log", encoding="utf-8"),
        ],
    )


def main() -> None:
    setup_logging()
    logger = logging.getLogger(__name__)
    logger.info("Starting StudyTrack %s...", __version__)
    logger.info("Schema versions: %s", describe_migrations())

    app = QCoreApplication(sys.argv)
    app.setApplicationName("StudyTrack")
    app.setOrganizationName("StudyTrack")

    db = Database()
    kv = KeyValueStore(db.connect())
    service = SessionService(kv)
    profile = service.open_profile()

    active = service.data.active_session
    if active is not None:
        logger.info(
            "Resuming %s session %s at %s",
            active.status, active.id, fmt_hms(service.elapsed_ms() // 1000),
        )

    ticker = TickService(
        service,
        kv,
        on_phase_complete=lambda t: logger.info(
            "Phase complete, now %s (cycle %d)", t.snapshot.phase, t.snapshot.cycle_count,
        ),
    )
    ticker.start()
    app.aboutToQuit.connect(ticker.stop)
    app.aboutToQuit.connect(service.close)
    app.aboutToQuit.connect(db.close)

    logger.info("Profile %s ready.", profile.name)
    sys.exit(app.exec())


if __name__ == "__main__":
    main()


# ---------------------------------------------------------------------------
# Explanation (for interviews)
# ---------------------------------------------------------------------------
# What this file does:
#   The entry point. Sets up logging, opens the database and the active
#   profile (running migrations and normalization on the way), then hands
#   control to the Qt event loop with the tick service attached.
#
# Key points:
#   - QCoreApplication: the engine has no widgets, but QTimer still needs an
#     event loop. A UI build swaps in QApplication and keeps the rest.
#   - open_profile() is where crash recovery happens: a timer left running
#     by a killed process is picked up from its stored timestamps.
#
# Talking points:
#   1. Logging to both console and file: console for development, file
#      for debugging user-reported issues.
#   2. The event loop is the heartbeat: ticks and change polls are just
#      QTimer callbacks on it.
