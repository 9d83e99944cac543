import pytest
from sqlalchemy.engine import Engine
from sqlmodel import Session, select

import upkeep.services.cleanup as cleanup
from upkeep.jobs.functions import CLEANUP_ID
from upkeep.jobs.runtime import JobRunner
from upkeep.models import Exercise, JobRun, JobStep, RunStatus
from upkeep.services.cleanup import OrphanRef, batched, find_orphans, process_batch

# ---------------------------------------------------------------------------
# Helper factories
# ---------------------------------------------------------------------------


def _add(session: Session, name: str, **fields) -> int:
    exercise = Exercise(name=name, **fields)
    session.add(exercise)
    session.commit()
    session.refresh(exercise)
    return exercise.id


def _add_orphan(session: Session, name: str) -> int:
    return _add(session, name, is_custom=True)


def _add_library(session: Session, name: str, synonyms: list[str] | None = None) -> int:
    return _add(
        session,
        name,
        is_custom=False,
        image_url=f"https://img.example/{name}.png",
        synonyms=synonyms or [],
    )


def _exists(session: Session, exercise_id: int) -> bool:
    session.expire_all()
    return session.exec(select(Exercise).where(Exercise.id == exercise_id)).first() is not None


# ---------------------------------------------------------------------------
# Scanner
# ---------------------------------------------------------------------------


def test_find_orphans_only_returns_sparse_custom_entries(session: Session):
    orphan = _add_orphan(session, "My Press")
    _add(session, "Custom With Image", is_custom=True, image_url="x.png")
    _add(session, "Custom With Notes", is_custom=True, description="Notes")
    _add_library(session, "Bench Press")
    _add(session, "Bare Library", is_custom=False)

    assert find_orphans(session) == [OrphanRef(id=orphan, name="My Press")]


def test_batched_offsets():
    items = list(range(12))
    assert [(o, len(chunk)) for o, chunk in batched(items, 5)] == [(0, 5), (5, 5), (10, 2)]


def test_batched_rejects_zero_size():
    with pytest.raises(ValueError):
        list(batched([1], 0))


# ---------------------------------------------------------------------------
# Batch processing
# ---------------------------------------------------------------------------


def test_process_batch_counts_merged_and_skipped(engine: Engine, session: Session):
    _add_library(session, "DB Bench Press")
    first = _add_orphan(session, "DB Bench Press (band)")
    second = _add_orphan(session, "Zercher Carry")

    counts = process_batch(
        [OrphanRef(first, "DB Bench Press (band)"), OrphanRef(second, "Zercher Carry")], engine
    )

    assert (counts.merged, counts.skipped) == (1, 1)
    assert not _exists(session, first)
    assert _exists(session, second)


def test_one_failure_does_not_stop_the_batch(
    engine: Engine, session: Session, monkeypatch: pytest.MonkeyPatch
):
    _add_library(session, "Bench Press")
    _add_library(session, "Hip Thrust")
    _add_library(session, "Lateral Raise")
    bench = _add_orphan(session, "Bench Press (band)")
    thrust = _add_orphan(session, "Hip Thrusts")
    raise_ = _add_orphan(session, "Seated Lateral Raise")

    real_merge = cleanup.merge_exercise_references

    def _flaky_merge(loser_id, winner_id, s):
        if loser_id == thrust:
            raise RuntimeError("deadlock detected")
        return real_merge(loser_id, winner_id, s)

    monkeypatch.setattr(cleanup, "merge_exercise_references", _flaky_merge)

    counts = process_batch(find_orphans(session), engine)

    assert (counts.merged, counts.skipped) == (2, 1)
    assert not _exists(session, bench)
    assert _exists(session, thrust)
    assert not _exists(session, raise_)


# ---------------------------------------------------------------------------
# Cleanup job
# ---------------------------------------------------------------------------


def test_cleanup_job_with_no_orphans(runner: JobRunner, sleeps: list[float]):
    info = runner.enqueue(CLEANUP_ID)
    assert info.status == RunStatus.completed
    assert info.result == {"success": True, "merged": 0, "skipped": 0, "totalOrphans": 0}
    assert sleeps == []


def test_cleanup_job_paces_between_batches_only(
    runner: JobRunner, session: Session, sleeps: list[float]
):
    _add_library(session, "Romanian Deadlift", synonyms=["RDL"])
    names = [f"Mystery Move {i}" for i in range(6)] + ["RDL"]
    for name in names:
        _add_orphan(session, name)

    info = runner.enqueue(CLEANUP_ID)

    assert info.result == {"success": True, "merged": 1, "skipped": 6, "totalOrphans": 7}
    # Two batches of five, so exactly one pause
    assert sleeps == [5.0]
    steps = session.exec(select(JobStep.name).where(JobStep.run_key == info.key)).all()
    assert set(steps) == {"find-orphans", "cleanup-batch-0", "cleanup-batch-5", "rate-limit-0"}


def test_cleanup_job_is_idempotent_per_key(runner: JobRunner, session: Session):
    _add_library(session, "Bench Press")
    _add_orphan(session, "Bench Press (band)")

    first = runner.enqueue(CLEANUP_ID, key="cleanup-week-42")
    second = runner.enqueue(CLEANUP_ID, key="cleanup-week-42")

    assert first.created and not second.created
    assert second.result == first.result
    assert len(session.exec(select(JobRun)).all()) == 1


def test_rerun_after_merge_no_longer_sees_orphan(runner: JobRunner, session: Session):
    _add_library(session, "Bench Press")
    _add_orphan(session, "Bench Press (band)")
    _add_orphan(session, "Zercher Carry")

    first = runner.enqueue(CLEANUP_ID)
    second = runner.enqueue(CLEANUP_ID)

    assert first.result["totalOrphans"] == 2
    assert second.result == {"success": True, "merged": 0, "skipped": 1, "totalOrphans": 1}
