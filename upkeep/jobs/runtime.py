"""
Task queue for background jobs.

A task is a call to a registered ``JobFunction`` identified by an idempotency
key. Enqueueing a key that already has a ``JobRun`` row does nothing, so a
clock trigger or an event fired twice still runs once.

Inside a job, work is split into named steps through ``StepContext``. Each
completed step stores its JSON output in ``JobStep``; when a failed job is
retried the stored outputs are replayed instead of running the step again.
"""

import logging
import threading
import time
import uuid
from collections import Counter, deque
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any

from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session

from upkeep.models import JobRun, JobStep, RunStatus

log = logging.getLogger(__name__)


class JobFailed(RuntimeError):
    def __init__(self, key: str, cause: BaseException):
        super().__init__(f"Job {key} failed after retries: {cause}")
        self.key = key
        self.cause = cause


@dataclass(frozen=True)
class RetryPolicy:
    retries: int = 2
    backoff_seconds: float = 1.0

    @property
    def attempts(self) -> int:
        return self.retries + 1


@dataclass
class JobFunction:
    id: str
    name: str
    handler: Callable[["StepContext"], dict]
    event: str | None = None
    trigger: Any = None  # a Daily or Weekly from upkeep.jobs.triggers
    concurrency: int | None = None
    retry: RetryPolicy | None = None


@dataclass
class RunInfo:
    key: str
    function_id: str
    status: RunStatus
    created: bool = False
    result: dict | None = field(default=None, repr=False)


class StepContext:
    """Handle passed to a job handler for one attempt of one run."""

    def __init__(self, runner: "JobRunner", key: str, payload: dict, attempt: int):
        self.runner = runner
        self.key = key
        self.payload = payload
        self.attempt = attempt

    def session(self) -> Session:
        return Session(self.runner.engine)

    def today(self) -> date:
        return self.runner.clock().date()

    def step(self, name: str, fn: Callable[[], Any]) -> Any:
        """Run ``fn`` once per run key; later attempts get the stored output."""
        with self.session() as session:
            memo = session.get(JobStep, {"run_key": self.key, "name": name})
            if memo is not None:
                log.debug("Job %s: replaying step %s", self.key, name)
                return memo.output

        output = fn()

        with self.session() as session:
            session.add(JobStep(run_key=self.key, name=name, output=output))
            session.commit()
        return output

    def sleep(self, name: str, seconds: float) -> None:
        def _sleep():
            self.runner.sleep(seconds)
            return seconds

        self.step(name, _sleep)

    def send_event(self, name: str, event: str, data: dict) -> list[str]:
        """Emit ``event`` once per run; the emitted task keys derive from this step."""
        return self.step(name, lambda: self.runner.send(event, data, key=f"{self.key}:{name}"))


class JobRunner:
    """
    Registry of job functions plus a worker pool to run them.

    With ``eager=True`` tasks run synchronously inside ``enqueue``; otherwise
    they wait in a pending queue until ``start()`` hands them to worker threads,
    never running more than a function's ``concurrency`` at once.
    """

    def __init__(
        self,
        engine: Engine,
        *,
        workers: int = 4,
        retry: RetryPolicy = RetryPolicy(),
        eager: bool = False,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.engine = engine
        self.workers = workers
        self.retry = retry
        self.eager = eager
        self.sleep = sleep
        self.clock = clock
        self.functions: dict[str, JobFunction] = {}

        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)
        self._pending: deque[tuple[str, str]] = deque()
        self._running: Counter[str] = Counter()
        self._inflight = 0
        self._executor: ThreadPoolExecutor | None = None

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def register(self, function: JobFunction) -> JobFunction:
        if function.id in self.functions:
            raise ValueError(f"Job function {function.id} is already registered")
        self.functions[function.id] = function
        return function

    def subscribers(self, event: str) -> list[JobFunction]:
        return [f for f in self.functions.values() if f.event == event]

    # ------------------------------------------------------------------
    # Submitting work
    # ------------------------------------------------------------------

    def enqueue(
        self, function_id: str, payload: dict | None = None, key: str | None = None
    ) -> RunInfo:
        if function_id not in self.functions:
            raise KeyError(function_id)
        key = key or f"{function_id}:{uuid.uuid4().hex}"

        with Session(self.engine) as session:
            existing = session.get(JobRun, key)
            if existing is None:
                session.add(JobRun(key=key, function_id=function_id, payload=payload or {}))
                try:
                    session.commit()
                except IntegrityError:
                    # Another thread inserted the same key between our read and write
                    session.rollback()
                    existing = session.get(JobRun, key)
            if existing is not None:
                log.info("Job %s already exists (%s); not enqueued again", key, existing.status)
                return RunInfo(key, existing.function_id, existing.status, result=existing.result)

        if self.eager:
            try:
                result = self.execute(key)
            except JobFailed:
                return RunInfo(key, function_id, RunStatus.failed, created=True)
            return RunInfo(key, function_id, RunStatus.completed, created=True, result=result)

        with self._lock:
            self._pending.append((key, function_id))
        self._dispatch()
        return RunInfo(key, function_id, RunStatus.queued, created=True)

    def send(self, event: str, data: dict, key: str | None = None) -> list[str]:
        """Enqueue one task per function subscribed to ``event``."""
        base = key or f"{event}:{uuid.uuid4().hex}"
        keys = []
        for function in self.subscribers(event):
            info = self.enqueue(function.id, data, key=f"{function.id}:{base}")
            keys.append(info.key)
        if not keys:
            log.warning("No job function subscribed to event %s", event)
        return keys

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _update_run(self, key: str, **values) -> None:
        with Session(self.engine) as session:
            run = session.get(JobRun, key)
            for name, value in values.items():
                setattr(run, name, value)
            session.add(run)
            session.commit()

    def execute(self, key: str) -> dict:
        """Run a task to completion in the calling thread, retrying per its policy."""
        with Session(self.engine) as session:
            run = session.get(JobRun, key)
            if run is None:
                raise KeyError(key)
            function = self.functions[run.function_id]
            payload = dict(run.payload or {})

        policy = function.retry or self.retry
        error: BaseException | None = None
        for attempt in range(1, policy.attempts + 1):
            self._update_run(key, status=RunStatus.running, attempts=attempt)
            ctx = StepContext(self, key, payload, attempt)
            try:
                result = function.handler(ctx)
            except Exception as exc:
                error = exc
                log.exception("Job %s attempt %s/%s failed", key, attempt, policy.attempts)
                if attempt < policy.attempts:
                    self.sleep(policy.backoff_seconds)
                continue

            self._update_run(
                key,
                status=RunStatus.completed,
                result=result,
                error=None,
                finished_at=self.clock(),
            )
            log.info("Job %s completed: %s", key, result)
            return result

        self._update_run(key, status=RunStatus.failed, error=str(error), finished_at=self.clock())
        log.error("Job %s exhausted %s attempts", key, policy.attempts)
        raise JobFailed(key, error)

    # ------------------------------------------------------------------
    # Worker pool
    # ------------------------------------------------------------------

    def start(self) -> None:
        with self._lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self.workers, thread_name_prefix="upkeep-worker"
                )
        self._dispatch()

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=wait)

    def _dispatch(self) -> None:
        with self._lock:
            if self._executor is None:
                return
            waiting: deque[tuple[str, str]] = deque()
            while self._pending:
                key, function_id = self._pending.popleft()
                limit = self.functions[function_id].concurrency
                if limit is not None and self._running[function_id] >= limit:
                    waiting.append((key, function_id))
                    continue
                self._running[function_id] += 1
                self._inflight += 1
                self._executor.submit(self._work, key, function_id)
            self._pending = waiting

    def _work(self, key: str, function_id: str) -> None:
        try:
            self.execute(key)
        except JobFailed:
            pass  # recorded on the JobRun row and logged by execute()
        except Exception:
            log.exception("Job %s could not be executed", key)
        finally:
            with self._lock:
                self._running[function_id] -= 1
                self._inflight -= 1
                self._idle.notify_all()
            self._dispatch()

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until nothing is pending or running. Returns False on timeout."""
        with self._idle:
            return self._idle.wait_for(
                lambda: not self._pending and self._inflight == 0, timeout=timeout
            )
