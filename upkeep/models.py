from datetime import date, datetime
from enum import Enum
from typing import Any

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel


class Exercise(SQLModel, table=True):
    id: int | None = Field(default=None, primary_key=True)
    name: str = Field(index=True)
    is_custom: bool = False
    image_url: str | None = None
    description: str | None = None
    synonyms: list[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))


class PersonalRecord(SQLModel, table=True):
    id: int | None = Field(default=None, primary_key=True)
    exercise_id: int = Field(foreign_key="exercise.id", index=True)
    member_id: int = Field(index=True)
    rep_max: int = 1
    value: float
    date: date
    notes: str | None = None


class WorkoutPlanExercise(SQLModel, table=True):
    id: int | None = Field(default=None, primary_key=True)
    plan_id: int = Field(index=True)
    exercise_id: int = Field(foreign_key="exercise.id", index=True)
    display_order: int = 0


class WorkoutSessionExercise(SQLModel, table=True):
    id: int | None = Field(default=None, primary_key=True)
    session_id: int = Field(index=True)
    exercise_id: int = Field(foreign_key="exercise.id", index=True)
    display_order: int = 0


class ProgramWorkout(SQLModel, table=True):
    id: int | None = Field(default=None, primary_key=True)
    name: str
    week_number: int = 1
    day_number: int = 1


class UserProgramSchedule(SQLModel, table=True):
    id: int | None = Field(default=None, primary_key=True)
    user_id: int = Field(index=True)
    preferred_days: list[int] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    auto_reschedule: bool = True
    reschedule_window_days: int = 2  # multiplied by 7 for the look-ahead


class WorkoutStatus(str, Enum):
    scheduled = "scheduled"
    missed = "missed"
    completed = "completed"


class ScheduledWorkout(SQLModel, table=True):
    id: int | None = Field(default=None, primary_key=True)
    user_id: int = Field(index=True)
    schedule_id: int = Field(foreign_key="userprogramschedule.id", index=True)
    program_workout_id: int = Field(foreign_key="programworkout.id")
    status: WorkoutStatus = Field(default=WorkoutStatus.scheduled, index=True)
    scheduled_date: date = Field(index=True)
    rescheduled_from: date | None = None
    rescheduled_count: int = 0
    rescheduled_reason: str | None = None
    original_date: date | None = None  # first-ever date, never overwritten
    updated_at: datetime | None = None


# ---------------------------------------------------------------------------
# Job runtime bookkeeping
# ---------------------------------------------------------------------------


class RunStatus(str, Enum):
    queued = "queued"
    running = "running"
    completed = "completed"
    failed = "failed"


class JobRun(SQLModel, table=True):
    key: str = Field(primary_key=True)
    function_id: str = Field(index=True)
    payload: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    status: RunStatus = RunStatus.queued
    attempts: int = 0
    result: dict | None = Field(default=None, sa_column=Column(JSON))
    error: str | None = None
    created_at: datetime = Field(default_factory=datetime.now)
    finished_at: datetime | None = None


class JobStep(SQLModel, table=True):
    run_key: str = Field(primary_key=True)
    name: str = Field(primary_key=True)
    output: Any = Field(default=None, sa_column=Column(JSON))
    completed_at: datetime = Field(default_factory=datetime.now)
