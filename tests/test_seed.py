from datetime import date

from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from upkeep.jobs.functions import CLEANUP_ID, RESCHEDULE_ID
from upkeep.jobs.runtime import JobRunner
from upkeep.models import Exercise, ScheduledWorkout, WorkoutStatus
from upkeep.seed import CUSTOM, LIBRARY, seed

MONDAY = date(2026, 10, 19)


def test_seed_then_cleanup(engine: Engine, session: Session, runner: JobRunner):
    seed(engine, today=MONDAY)
    assert len(session.exec(select(Exercise)).all()) == len(LIBRARY) + len(CUSTOM)

    info = runner.enqueue(CLEANUP_ID)

    assert info.result == {"success": True, "merged": 4, "skipped": 1, "totalOrphans": 5}
    session.expire_all()
    remaining = session.exec(select(Exercise.name).where(Exercise.is_custom)).all()
    assert remaining == ["Zercher Carry"]


def test_seed_then_reschedule(engine: Engine, session: Session, runner: JobRunner):
    seed(engine, today=MONDAY)
    assert len(
        session.exec(select(ScheduledWorkout).where(ScheduledWorkout.status == WorkoutStatus.missed)).all()
    ) == 3

    info = runner.enqueue(RESCHEDULE_ID, {"user_id": 1})

    # Wed, Fri and next Mon are already taken by week two
    assert [r["newDate"] for r in info.result["rescheduled"]] == [
        "2026-10-28",
        "2026-10-30",
        "2026-11-02",
    ]
    assert [r["workoutName"] for r in info.result["rescheduled"]] == ["Upper A", "Lower A", "Upper B"]


def test_seed_is_repeatable(engine: Engine, session: Session):
    seed(engine, today=MONDAY)
    seed(engine, today=MONDAY)
    assert len(session.exec(select(Exercise)).all()) == len(LIBRARY) + len(CUSTOM)
    assert len(session.exec(select(ScheduledWorkout)).all()) == 6
