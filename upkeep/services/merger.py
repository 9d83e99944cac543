import logging
from dataclasses import dataclass

from sqlalchemy import update
from sqlmodel import Session, select

from upkeep.models import (
    Exercise,
    PersonalRecord,
    WorkoutPlanExercise,
    WorkoutSessionExercise,
)

log = logging.getLogger(__name__)


class MergeConflict(ValueError):
    """The exercises no longer qualify for a merge (deleted or edited meanwhile)."""


@dataclass
class MergeResult:
    loser_id: int
    winner_id: int
    records_moved: int = 0
    records_collapsed: int = 0
    records_upgraded: int = 0
    plan_rows: int = 0
    session_rows: int = 0


def _is_orphan(exercise: Exercise) -> bool:
    return exercise.is_custom and exercise.image_url is None and exercise.description is None


def _is_rich(exercise: Exercise) -> bool:
    return not exercise.is_custom and exercise.image_url is not None


def _lock_pair(loser_id: int, winner_id: int, session: Session) -> None:
    """Re-read both exercises under a row lock and check they still qualify."""
    rows = session.exec(
        select(Exercise)
        .where(Exercise.id.in_([loser_id, winner_id]))
        .with_for_update()
        .execution_options(populate_existing=True)
    ).all()
    by_id = {e.id: e for e in rows}

    loser = by_id.get(loser_id)
    if loser is None or not _is_orphan(loser):
        raise MergeConflict(f"Exercise {loser_id} is no longer an orphan")
    winner = by_id.get(winner_id)
    if winner is None or not _is_rich(winner):
        raise MergeConflict(f"Exercise {winner_id} is no longer a library exercise")


def _merge_personal_records(loser_id: int, winner_id: int, session: Session, result: MergeResult):
    orphan_records = session.exec(
        select(PersonalRecord).where(PersonalRecord.exercise_id == loser_id)
    ).all()

    for record in orphan_records:
        existing = session.exec(
            select(PersonalRecord).where(
                PersonalRecord.exercise_id == winner_id,
                PersonalRecord.member_id == record.member_id,
                PersonalRecord.rep_max == record.rep_max,
            )
        ).first()

        if existing is None:
            record.exercise_id = winner_id
            session.add(record)
            result.records_moved += 1
            continue

        if record.value > existing.value:
            existing.value = record.value
            existing.date = record.date
            existing.notes = record.notes
            session.add(existing)
            result.records_upgraded += 1
        session.delete(record)
        result.records_collapsed += 1


def merge_exercise_references(loser_id: int, winner_id: int, session: Session) -> MergeResult:
    """
    Re-point everything that references ``loser_id`` to ``winner_id`` and delete
    the loser, as a single transaction on ``session``.

    Personal records colliding on (member, rep_max) keep the higher value. On any
    failure the session is rolled back and the exception propagates, so either
    every change lands or none does.
    """
    if loser_id == winner_id:
        raise MergeConflict("Cannot merge an exercise into itself")

    result = MergeResult(loser_id=loser_id, winner_id=winner_id)
    try:
        _lock_pair(loser_id, winner_id, session)
        _merge_personal_records(loser_id, winner_id, session, result)

        plan = session.exec(
            update(WorkoutPlanExercise)
            .where(WorkoutPlanExercise.exercise_id == loser_id)
            .values(exercise_id=winner_id)
        )
        result.plan_rows = plan.rowcount

        sessions = session.exec(
            update(WorkoutSessionExercise)
            .where(WorkoutSessionExercise.exercise_id == loser_id)
            .values(exercise_id=winner_id)
        )
        result.session_rows = sessions.rowcount

        session.delete(session.get(Exercise, loser_id))
        session.commit()
    except Exception:
        session.rollback()
        raise

    log.debug(
        "Merged exercise %s into %s (moved=%s collapsed=%s upgraded=%s plans=%s sessions=%s)",
        loser_id,
        winner_id,
        result.records_moved,
        result.records_collapsed,
        result.records_upgraded,
        result.plan_rows,
        result.session_rows,
    )
    return result
