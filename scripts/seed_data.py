"""
Seed Data Generator — creates a realistic month of study history for
development and demos.

Run: python scripts/seed_data.py [days]

Everything goes through SessionService with a ManualClock, so the seeded
ledger is produced by the same code paths a real month of use would take.
"""

import random
import sys
import time
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from studytrack.data.database import Database
from studytrack.data.models import SessionRating, TaskPriority, TimerMode
from studytrack.data.repository import KeyValueStore
from studytrack.services.clock import ManualClock, start_of_day
from studytrack.services.session_service import SessionService


def seed(days: int = 30) -> None:
    db = Database()
    db.connect()
    kv = KeyValueStore(db.conn)

    today_start = start_of_day(ManualClock(time.time()).today())
    clock = ManualClock(today_start - days * 86400 + 8 * 3600)
    service = SessionService(kv, clock)
    service.open_profile("Demo")
    service.reset_profile_data()

    # ── Subjects & tasks ────────────────────────────────────────────────
    subjects_tasks = {
        ("Linear Algebra", "#6366f1"): ["Problem set 4", "Eigenvalues review", "Midterm prep"],
        ("Operating Systems", "#f97316"): ["Scheduler lab", "Read ch. 7", "Paging quiz"],
        ("Spanish", "#22c55e"): ["Vocabulary deck", "Listening practice"],
        ("Physics", "#0ea5e9"): ["Lab report", "Kinematics drills"],
    }
    pairs = []
    for (name, color), titles in subjects_tasks.items():
        subject = service.add_subject(name, color).value
        for title in titles:
            priority = random.choice(TaskPriority.ALL)
            task = service.add_task(title, subject.id, priority, due_date=clock.today()).value
            pairs.append((subject.id, task.id))

    ratings = list(SessionRating.ALL) + [None]
    session_count = 0

    # ── One day at a time ───────────────────────────────────────────────
    for day in range(days):
        clock.set(today_start - (days - day) * 86400 + random.randint(7, 10) * 3600)
        service.rollover_daily_tasks()

        for title in random.sample(["Review notes", "Email TA", "Flashcards", "Gym", "Read paper"], 3):
            result = service.add_daily_task(title, random.choice(TaskPriority.ALL))
            if result and random.random() < 0.7:
                service.toggle_daily_task(result.value.id, True)

        if random.random() < 0.2:
            continue  # a day off

        for _ in range(random.randint(1, 3)):
            subject_id, task_id = random.choice(pairs)
            service.select_subject(subject_id)
            service.select_task(task_id)
            service.set_timer_mode(random.choice([TimerMode.STOPWATCH, TimerMode.POMODORO]))
            service.start_timer()

            clock.advance(random.randint(10, 40) * 60)
            if random.random() < 0.3:
                # Switch to a second task mid-session
                _, extra_task = random.choice(pairs)
                service.continue_with_new_task(extra_task)
                clock.advance(random.randint(5, 25) * 60)
            service.tick()

            finished = service.stop_timer().value
            if finished is not None:
                session_count += 1
                rating = random.choice(ratings)
                if rating is not None:
                    service.save_reflection(finished.id, rating, "")
                else:
                    service.dismiss_pending_reflection()
            clock.advance(random.randint(20, 90) * 60)

    db.close()
    print(f"Seeded {session_count} sessions across {len(pairs)} tasks over {days} days.")


if __name__ == "__main__":
    count = int(sys.argv[1]) if len(sys.argv) > 1 else 30
    seed(count)


# ---------------------------------------------------------------------------
# Explanation (for interviews)
# ---------------------------------------------------------------------------
# What this script does:
#   Replays a month of study days against SessionService: subjects, tasks,
#   timer runs in both modes, multi-task sessions, reflections and daily
#   to-dos with some left open to roll over.
#
# Key points:
#   - ManualClock: the script moves time forward itself, so a month of
#     history is generated in well under a second.
#   - No raw JSON is written; every record passes through the same
#     normalization a real session would.
#
# Talking points:
#   1. Because the timer is timestamp-based, advancing the clock between
#      start_timer() and stop_timer() is exactly what real waiting does.
#   2. Pomodoro runs longer than the focus length are split by tick() into
#      a recorded focus session and a break, as they would be live.
