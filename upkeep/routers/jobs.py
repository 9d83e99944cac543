from datetime import datetime
from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlmodel import Session, SQLModel, select

from upkeep.database import get_session
from upkeep.jobs.functions import RESCHEDULE_EVENT, ReschedulePayload
from upkeep.jobs.runtime import JobRunner
from upkeep.models import JobRun

router = APIRouter()

SessionDep = Annotated[Session, Depends(get_session)]


def get_runner(request: Request) -> JobRunner:
    return request.app.state.runner


RunnerDep = Annotated[JobRunner, Depends(get_runner)]


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------


class EnqueuedRead(SQLModel):
    key: str
    function_id: str
    status: str
    created: bool


class EventRead(SQLModel):
    event: str
    keys: list[str]


class JobRunRead(SQLModel):
    key: str
    function_id: str
    status: str
    attempts: int
    payload: dict
    result: dict[str, Any] | None
    error: str | None
    created_at: datetime
    finished_at: datetime | None


def _run_read(run: JobRun) -> JobRunRead:
    return JobRunRead(
        key=run.key,
        function_id=run.function_id,
        status=run.status.value,
        attempts=run.attempts,
        payload=run.payload or {},
        result=run.result,
        error=run.error,
        created_at=run.created_at,
        finished_at=run.finished_at,
    )


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


@router.post("/jobs/{function_id}/run", response_model=EnqueuedRead, status_code=202)
def run_job(function_id: str, runner: RunnerDep):
    """Manually trigger a clock-driven job outside of its schedule."""
    function = runner.functions.get(function_id)
    if function is None or function.event is not None:
        raise HTTPException(status_code=404, detail="Job function not found")

    info = runner.enqueue(function_id)
    return EnqueuedRead(
        key=info.key,
        function_id=info.function_id,
        status=info.status.value,
        created=info.created,
    )


@router.post("/schedule/auto-reschedule", response_model=EventRead, status_code=202)
def request_auto_reschedule(body: ReschedulePayload, runner: RunnerDep):
    keys = runner.send(RESCHEDULE_EVENT, body.model_dump(mode="json", exclude_none=True))
    return EventRead(event=RESCHEDULE_EVENT, keys=keys)


@router.get("/jobs/runs", response_model=list[JobRunRead])
def list_runs(session: SessionDep, function_id: str | None = None, limit: int = 50):
    statement = select(JobRun).order_by(JobRun.created_at.desc(), JobRun.key).limit(limit)
    if function_id is not None:
        statement = statement.where(JobRun.function_id == function_id)
    return [_run_read(run) for run in session.exec(statement).all()]


@router.get("/jobs/runs/{key:path}", response_model=JobRunRead)
def get_run(key: str, session: SessionDep):
    run = session.get(JobRun, key)
    if run is None:
        raise HTTPException(status_code=404, detail="Job run not found")
    return _run_read(run)
