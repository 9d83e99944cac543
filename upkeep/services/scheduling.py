import logging
from collections.abc import Iterable
from dataclasses import asdict, dataclass
from datetime import date, datetime, timedelta
from enum import Enum

from sqlmodel import Session, select

from upkeep.models import (
    ProgramWorkout,
    ScheduledWorkout,
    UserProgramSchedule,
    WorkoutStatus,
)

log = logging.getLogger(__name__)

END_OF_SCHEDULE_WINDOW_DAYS = 30
SPREAD_WINDOW_DAYS = 21


class Strategy(str, Enum):
    next_available = "next_available"
    end_of_schedule = "end_of_schedule"
    spread_evenly = "spread_evenly"


REASONS = {
    Strategy.next_available: "Auto-rescheduled from missed workout",
    Strategy.end_of_schedule: "Auto-rescheduled to end of schedule",
    Strategy.spread_evenly: "Auto-rescheduled (spread evenly)",
}


@dataclass
class MissedWorkout:
    id: int
    user_id: int


@dataclass
class RescheduledWorkout:
    workout_id: int
    workout_name: str
    old_date: str  # ISO format
    new_date: str  # ISO format

    def as_dict(self) -> dict:
        return asdict(self)


def weekday_number(d: date) -> int:
    """Weekday with 0 = Sunday through 6 = Saturday."""
    return d.isoweekday() % 7


# ---------------------------------------------------------------------------
# Date finding
# ---------------------------------------------------------------------------


def find_next_available_date(
    start: date,
    preferred_days: Iterable[int],
    occupied: set[date],
    max_days_ahead: int,
) -> date | None:
    """
    Return the first date after ``start`` (and at most ``max_days_ahead`` days
    after it) that falls on a preferred weekday and is not already occupied.
    """
    preferred = set(preferred_days)
    for offset in range(1, max_days_ahead + 1):
        candidate = start + timedelta(days=offset)
        if weekday_number(candidate) in preferred and candidate not in occupied:
            return candidate
    return None


def available_slots(
    start: date,
    preferred_days: Iterable[int],
    occupied: set[date],
    days: int,
) -> list[date]:
    """Every free preferred date from ``start`` through ``start + days``, inclusive."""
    preferred = set(preferred_days)
    slots = []
    for offset in range(days + 1):
        candidate = start + timedelta(days=offset)
        if weekday_number(candidate) in preferred and candidate not in occupied:
            slots.append(candidate)
    return slots


# ---------------------------------------------------------------------------
# Missed-workout sweep
# ---------------------------------------------------------------------------


def mark_missed_workouts(session: Session, today: date) -> list[MissedWorkout]:
    """Flip every still-scheduled workout dated yesterday to missed, in one transaction."""
    yesterday = today - timedelta(days=1)
    try:
        workouts = session.exec(
            select(ScheduledWorkout)
            .where(ScheduledWorkout.status == WorkoutStatus.scheduled)
            .where(ScheduledWorkout.scheduled_date == yesterday)
            .order_by(ScheduledWorkout.id)
            .with_for_update()
        ).all()
        now = datetime.now()
        for workout in workouts:
            workout.status = WorkoutStatus.missed
            workout.updated_at = now
            session.add(workout)
        missed = [MissedWorkout(id=w.id, user_id=w.user_id) for w in workouts]
        session.commit()
    except Exception:
        session.rollback()
        raise
    return missed


def distinct_user_ids(missed: Iterable[MissedWorkout]) -> list[int]:
    """User ids in first-seen order, each once."""
    return list(dict.fromkeys(m.user_id for m in missed))


# ---------------------------------------------------------------------------
# Rescheduling
# ---------------------------------------------------------------------------


def get_missed_workouts(
    user_id: int,
    session: Session,
    schedule_id: int | None = None,
    workout_ids: list[int] | None = None,
) -> dict[int, list[int]]:
    """
    Return the user's missed workout ids grouped by schedule, earliest program
    week/day first within each schedule.
    """
    statement = (
        select(ScheduledWorkout)
        .join(ProgramWorkout, ProgramWorkout.id == ScheduledWorkout.program_workout_id)
        .where(ScheduledWorkout.user_id == user_id)
        .where(ScheduledWorkout.status == WorkoutStatus.missed)
        .order_by(ProgramWorkout.week_number, ProgramWorkout.day_number, ScheduledWorkout.id)
    )
    if schedule_id is not None:
        statement = statement.where(ScheduledWorkout.schedule_id == schedule_id)
    if workout_ids:
        statement = statement.where(ScheduledWorkout.id.in_(workout_ids))

    grouped: dict[int, list[int]] = {}
    for workout in session.exec(statement).all():
        grouped.setdefault(workout.schedule_id, []).append(workout.id)
    return grouped


def _occupied_dates(schedule_id: int, today: date, session: Session) -> list[date]:
    rows = session.exec(
        select(ScheduledWorkout.scheduled_date)
        .where(ScheduledWorkout.schedule_id == schedule_id)
        .where(ScheduledWorkout.status == WorkoutStatus.scheduled)
        .where(ScheduledWorkout.scheduled_date >= today)
        .order_by(ScheduledWorkout.scheduled_date)
    ).all()
    return list(rows)


def _plan_next_available(
    count: int, start: date, preferred: list[int], occupied: set[date], window: int
) -> list[date | None]:
    planned: list[date | None] = []
    cursor = start
    for _ in range(count):
        new_date = find_next_available_date(cursor, preferred, occupied, window)
        planned.append(new_date)
        if new_date is not None:
            occupied.add(new_date)
            cursor = new_date
    return planned


def _plan_spread(
    count: int, start: date, preferred: list[int], occupied: set[date]
) -> list[date | None]:
    slots = available_slots(start, preferred, occupied, SPREAD_WINDOW_DAYS)
    if not slots or count == 0:
        return [None] * count
    step = max(1, len(slots) // count)
    planned: list[date | None] = []
    for i in range(count):
        index = i * step
        planned.append(slots[index] if index < len(slots) else None)
    return planned


def _apply(workout: ScheduledWorkout, new_date: date, reason: str) -> None:
    old_date = workout.scheduled_date
    workout.rescheduled_from = old_date
    workout.original_date = workout.original_date or old_date
    workout.rescheduled_count = (workout.rescheduled_count or 0) + 1
    workout.rescheduled_reason = reason
    workout.scheduled_date = new_date
    workout.status = WorkoutStatus.scheduled
    workout.updated_at = datetime.now()


def reschedule_schedule(
    schedule_id: int,
    workout_ids: list[int],
    session: Session,
    today: date,
    strategy: Strategy = Strategy.next_available,
    start_from: date | None = None,
) -> list[RescheduledWorkout]:
    """
    Move a schedule's missed workouts onto free preferred days.

    ``workout_ids`` must already be in processing order. Workouts that cannot be
    placed inside the look-ahead window stay missed and are left out of the
    returned list. Schedules with auto-reschedule turned off are left alone.
    """
    schedule = session.get(UserProgramSchedule, schedule_id)
    if schedule is None or not schedule.auto_reschedule:
        return []

    workouts = [session.get(ScheduledWorkout, wid) for wid in workout_ids]
    # A retried or concurrent run may already have moved some of them
    workouts = [w for w in workouts if w is not None and w.status == WorkoutStatus.missed]
    if not workouts:
        return []

    existing = _occupied_dates(schedule_id, today, session)
    occupied = set(existing)
    preferred = list(schedule.preferred_days or [])
    start = start_from or today

    if strategy == Strategy.end_of_schedule:
        start = existing[-1] if existing else today
        planned = _plan_next_available(
            len(workouts), start, preferred, occupied, END_OF_SCHEDULE_WINDOW_DAYS
        )
    elif strategy == Strategy.spread_evenly:
        planned = _plan_spread(len(workouts), start, preferred, occupied)
    else:
        planned = _plan_next_available(
            len(workouts), start, preferred, occupied, schedule.reschedule_window_days * 7
        )

    reason = REASONS[strategy]
    results: list[RescheduledWorkout] = []
    try:
        for workout, new_date in zip(workouts, planned):
            if new_date is None:
                continue
            old_date = workout.scheduled_date
            _apply(workout, new_date, reason)
            session.add(workout)
            program_workout = session.get(ProgramWorkout, workout.program_workout_id)
            results.append(
                RescheduledWorkout(
                    workout_id=workout.id,
                    workout_name=program_workout.name if program_workout else "",
                    old_date=old_date.isoformat(),
                    new_date=new_date.isoformat(),
                )
            )
        session.commit()
    except Exception:
        session.rollback()
        raise

    skipped = len(workouts) - len(results)
    if skipped:
        log.info("Schedule %s: %s missed workout(s) had no free date in window", schedule_id, skipped)
    return results


def reschedule_missed_workouts(
    user_id: int,
    session: Session,
    today: date,
    schedule_id: int | None = None,
    workout_ids: list[int] | None = None,
    strategy: Strategy = Strategy.next_available,
    start_from: date | None = None,
) -> list[RescheduledWorkout]:
    """Reschedule all of a user's missed workouts, schedule by schedule."""
    grouped = get_missed_workouts(user_id, session, schedule_id, workout_ids)
    rescheduled: list[RescheduledWorkout] = []
    for sch_id, ids in grouped.items():
        rescheduled.extend(
            reschedule_schedule(sch_id, ids, session, today, strategy, start_from)
        )
    return rescheduled
