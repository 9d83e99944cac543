"""
Seed the database with a curated exercise library, some sparse custom
duplicates, personal records and a training schedule with missed workouts.
Run with: python -m upkeep.seed

WARNING: Drops all existing data before inserting.
"""

import random
from datetime import date, timedelta

from sqlalchemy.engine import Engine
from sqlmodel import Session, SQLModel, select

from upkeep.models import (
    Exercise,
    JobRun,
    JobStep,
    PersonalRecord,
    ProgramWorkout,
    ScheduledWorkout,
    UserProgramSchedule,
    WorkoutPlanExercise,
    WorkoutSessionExercise,
    WorkoutStatus,
)

# Reproducible data
RANDOM_SEED = 42

# ---------------------------------------------------------------------------
# Exercise catalogue
# ---------------------------------------------------------------------------

# (name, synonyms)
LIBRARY: list[tuple[str, list[str]]] = [
    ("Bench Press", ["Flat Bench", "BP"]),
    ("Incline Dumbbell Press", []),
    ("Deadlift", ["Conventional Deadlift"]),
    ("Romanian Deadlift", ["RDL"]),
    ("Pull-up", ["Chin-up"]),
    ("Barbell Row", ["Bent Over Row"]),
    ("Overhead Press", ["OHP", "Military Press"]),
    ("Lateral Raise", []),
    ("Back Squat", ["Squat"]),
    ("Leg Press", []),
    ("Hip Thrust", ["Glute Bridge"]),
    ("Face Pull", []),
]

# Sparse user-created entries. Most of these have a confident library twin.
CUSTOM: list[str] = [
    "bench press (band)",
    "RDL",
    "Hip Thrusts",
    "Seated Lateral Raise",
    "Zercher Carry",
]

# Base one-rep maxes in kg
BASE_MAX: dict[str, float] = {
    "Bench Press": 100.0,
    "bench press (band)": 105.0,
    "Deadlift": 160.0,
    "Romanian Deadlift": 120.0,
    "RDL": 110.0,
    "Back Squat": 140.0,
    "Hip Thrusts": 150.0,
}

MEMBERS = [1, 2, 3]

# Program template: (week, day, name)
PROGRAM = [
    (1, 1, "Upper A"),
    (1, 2, "Lower A"),
    (1, 3, "Upper B"),
    (2, 1, "Upper A"),
    (2, 2, "Lower B"),
    (2, 3, "Upper B"),
]

USER_ID = 1
PREFERRED_DAYS = [1, 3, 5]  # Mon / Wed / Fri


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _record_value(base: float, rng: random.Random) -> float:
    """A max with realistic noise. Rounds to nearest 2.5 kg."""
    return round(base * rng.uniform(0.9, 1.05) / 2.5) * 2.5


def _preferred_dates(start: date, count: int) -> list[date]:
    dates = []
    current = start
    while len(dates) < count:
        if current.isoweekday() % 7 in PREFERRED_DAYS:
            dates.append(current)
        current += timedelta(days=1)
    return dates


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------


def seed(engine: Engine, today: date | None = None) -> None:
    rng = random.Random(RANDOM_SEED)
    today = today or date.today()

    SQLModel.metadata.create_all(engine)

    with Session(engine) as session:
        # ------------------------------------------------------------------
        # Wipe existing data (order matters for FK constraints)
        # ------------------------------------------------------------------
        for model in [
            JobStep,
            JobRun,
            ScheduledWorkout,
            UserProgramSchedule,
            ProgramWorkout,
            WorkoutSessionExercise,
            WorkoutPlanExercise,
            PersonalRecord,
            Exercise,
        ]:
            for row in session.exec(select(model)).all():
                session.delete(row)
        session.commit()
        print("Cleared existing data.")

        # ------------------------------------------------------------------
        # Exercises
        # ------------------------------------------------------------------
        exercise_map: dict[str, Exercise] = {}
        for name, synonyms in LIBRARY:
            slug = name.lower().replace(" ", "-")
            exercise = Exercise(
                name=name,
                is_custom=False,
                image_url=f"https://cdn.example.com/exercises/{slug}.png",
                description=f"{name} performed with controlled tempo.",
                synonyms=synonyms,
            )
            session.add(exercise)
            exercise_map[name] = exercise
        for name in CUSTOM:
            exercise = Exercise(name=name, is_custom=True)
            session.add(exercise)
            exercise_map[name] = exercise
        session.commit()
        for exercise in exercise_map.values():
            session.refresh(exercise)
        print(f"Created {len(LIBRARY)} library and {len(CUSTOM)} custom exercises.")

        # ------------------------------------------------------------------
        # Personal records, plan and session references
        # ------------------------------------------------------------------
        records = 0
        for member_id in MEMBERS:
            for name, base in BASE_MAX.items():
                session.add(
                    PersonalRecord(
                        exercise_id=exercise_map[name].id,
                        member_id=member_id,
                        rep_max=1,
                        value=_record_value(base, rng),
                        date=today - timedelta(days=rng.randint(7, 120)),
                    )
                )
                records += 1

        for order, name in enumerate(CUSTOM):
            session.add(
                WorkoutPlanExercise(plan_id=1, exercise_id=exercise_map[name].id, display_order=order)
            )
            session.add(
                WorkoutSessionExercise(
                    session_id=1, exercise_id=exercise_map[name].id, display_order=order
                )
            )
        session.commit()
        print(f"Created {records} personal records.")

        # ------------------------------------------------------------------
        # Schedule: first week missed, second week upcoming
        # ------------------------------------------------------------------
        schedule = UserProgramSchedule(
            user_id=USER_ID,
            preferred_days=PREFERRED_DAYS,
            auto_reschedule=True,
            reschedule_window_days=2,
        )
        session.add(schedule)

        program_workouts = []
        for week, day, name in PROGRAM:
            pw = ProgramWorkout(name=name, week_number=week, day_number=day)
            session.add(pw)
            program_workouts.append(pw)
        session.commit()
        session.refresh(schedule)
        for pw in program_workouts:
            session.refresh(pw)

        past = _preferred_dates(today - timedelta(days=8), 3)
        upcoming = _preferred_dates(today + timedelta(days=1), 3)
        for pw, scheduled_date in zip(program_workouts, past + upcoming):
            session.add(
                ScheduledWorkout(
                    user_id=USER_ID,
                    schedule_id=schedule.id,
                    program_workout_id=pw.id,
                    status=WorkoutStatus.missed if scheduled_date < today else WorkoutStatus.scheduled,
                    scheduled_date=scheduled_date,
                )
            )
        session.commit()

        print(f"Created a schedule with {len(PROGRAM)} workouts.")
        print("Seed complete!")


if __name__ == "__main__":
    from upkeep.database import engine

    seed(engine)
