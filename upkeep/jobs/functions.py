"""Background job definitions: orphan exercise cleanup, missed-workout sweep, auto-reschedule."""

import logging
from datetime import date
from functools import partial

from sqlalchemy.engine import Engine
from sqlmodel import SQLModel

from upkeep.jobs.runtime import JobFunction, JobRunner, RetryPolicy, StepContext
from upkeep.jobs.triggers import Daily, Weekly
from upkeep.services.cleanup import OrphanRef, batched, find_orphans, process_batch
from upkeep.services.scheduling import (
    MissedWorkout,
    Strategy,
    distinct_user_ids,
    get_missed_workouts,
    mark_missed_workouts,
    reschedule_schedule,
)
from upkeep.settings import Settings, get_settings

log = logging.getLogger(__name__)

CLEANUP_ID = "cron-orphan-exercise-cleanup"
MISSED_CHECK_ID = "cron-missed-workout-check"
RESCHEDULE_ID = "schedule-auto-reschedule"
RESCHEDULE_EVENT = "schedule/auto-reschedule"


class ReschedulePayload(SQLModel):
    user_id: int
    schedule_id: int | None = None
    workout_ids: list[int] | None = None
    strategy: Strategy = Strategy.next_available
    start_from_date: date | None = None


# ---------------------------------------------------------------------------
# Orphan exercise cleanup (weekly)
# ---------------------------------------------------------------------------


def orphan_exercise_cleanup(ctx: StepContext, batch_size: int = 5, delay: float = 5.0) -> dict:
    engine = ctx.runner.engine

    def _find():
        with ctx.session() as session:
            return [{"id": o.id, "name": o.name} for o in find_orphans(session)]

    orphans = [OrphanRef(**row) for row in ctx.step("find-orphans", _find)]

    if not orphans:
        log.info("No orphan exercises found")
        return {"success": True, "merged": 0, "skipped": 0, "totalOrphans": 0}

    log.info("Found %s orphan exercises", len(orphans))

    merged = 0
    skipped = 0
    for offset, batch in batched(orphans, batch_size):
        counts = ctx.step(f"cleanup-batch-{offset}", lambda b=batch: process_batch(b, engine).as_dict())
        merged += counts["merged"]
        skipped += counts["skipped"]

        if offset + batch_size < len(orphans):
            ctx.sleep(f"rate-limit-{offset}", delay)

    log.info("Orphan cleanup completed: merged=%s skipped=%s total=%s", merged, skipped, len(orphans))
    return {"success": True, "merged": merged, "skipped": skipped, "totalOrphans": len(orphans)}


# ---------------------------------------------------------------------------
# Missed-workout sweep (daily)
# ---------------------------------------------------------------------------


def missed_workout_check(ctx: StepContext) -> dict:
    today = ctx.today()

    def _mark():
        with ctx.session() as session:
            return [{"id": m.id, "user_id": m.user_id} for m in mark_missed_workouts(session, today)]

    missed = [MissedWorkout(**row) for row in ctx.step("find-missed-workouts", _mark)]
    log.info("Marked %s workouts as missed", len(missed))

    user_ids = distinct_user_ids(missed)
    for user_id in user_ids:
        ctx.send_event(
            f"trigger-reschedule-{user_id}",
            RESCHEDULE_EVENT,
            {"user_id": user_id, "strategy": Strategy.next_available.value},
        )

    return {"success": True, "missedCount": len(missed), "usersNotified": len(user_ids)}


# ---------------------------------------------------------------------------
# Auto-reschedule (event)
# ---------------------------------------------------------------------------


def auto_reschedule(ctx: StepContext) -> dict:
    request = ReschedulePayload.model_validate(ctx.payload)
    today = ctx.today()

    def _get_missed():
        with ctx.session() as session:
            grouped = get_missed_workouts(
                request.user_id, session, request.schedule_id, request.workout_ids
            )
        return [{"schedule_id": sch_id, "workout_ids": ids} for sch_id, ids in grouped.items()]

    groups = ctx.step("get-missed-workouts", _get_missed)

    if not groups:
        return {
            "success": True,
            "message": "No missed workouts to reschedule",
            "rescheduled": [],
            "totalRescheduled": 0,
            "strategy": request.strategy.value,
        }

    rescheduled: list[dict] = []
    for group in groups:

        def _reschedule(group=group):
            with ctx.session() as session:
                placed = reschedule_schedule(
                    group["schedule_id"],
                    group["workout_ids"],
                    session,
                    today,
                    request.strategy,
                    request.start_from_date,
                )
            return [
                {
                    "workoutId": r.workout_id,
                    "workoutName": r.workout_name,
                    "oldDate": r.old_date,
                    "newDate": r.new_date,
                }
                for r in placed
            ]

        rescheduled.extend(ctx.step(f"reschedule-{group['schedule_id']}", _reschedule))

    log.info(
        "Auto-reschedule completed for user %s: %s rescheduled (%s)",
        request.user_id,
        len(rescheduled),
        request.strategy.value,
    )
    return {
        "success": True,
        "rescheduled": rescheduled,
        "totalRescheduled": len(rescheduled),
        "strategy": request.strategy.value,
    }


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


def build_functions(settings: Settings) -> list[JobFunction]:
    return [
        JobFunction(
            id=CLEANUP_ID,
            name="Orphan Custom Exercise Cleanup",
            handler=partial(
                orphan_exercise_cleanup,
                batch_size=settings.ORPHAN_BATCH_SIZE,
                delay=settings.ORPHAN_BATCH_DELAY_SECONDS,
            ),
            trigger=Weekly(settings.CLEANUP_WEEKDAY, settings.CLEANUP_HOUR, settings.CLEANUP_MINUTE),
            concurrency=1,
        ),
        JobFunction(
            id=MISSED_CHECK_ID,
            name="Check for Missed Workouts",
            handler=missed_workout_check,
            trigger=Daily(settings.MISSED_CHECK_HOUR, settings.MISSED_CHECK_MINUTE),
        ),
        JobFunction(
            id=RESCHEDULE_ID,
            name="Auto-Reschedule Missed Workouts",
            handler=auto_reschedule,
            event=RESCHEDULE_EVENT,
        ),
    ]


def create_runner(engine: Engine, settings: Settings | None = None, **kwargs) -> JobRunner:
    """Build a ``JobRunner`` with every job function registered."""
    settings = settings or get_settings()
    kwargs.setdefault("workers", settings.WORKER_THREADS)
    kwargs.setdefault(
        "retry", RetryPolicy(settings.JOB_RETRIES, settings.JOB_RETRY_BACKOFF_SECONDS)
    )
    runner = JobRunner(engine, **kwargs)
    for function in build_functions(settings):
        runner.register(function)
    return runner
