import logging
import threading
from dataclasses import dataclass

import schedule

from upkeep.jobs.runtime import JobRunner

log = logging.getLogger(__name__)

# Index 0 is Sunday, matching the preferred-day convention
WEEKDAYS = ("sunday", "monday", "tuesday", "wednesday", "thursday", "friday", "saturday")


@dataclass(frozen=True)
class Daily:
    hour: int
    minute: int = 0

    def attach(self, scheduler: schedule.Scheduler) -> schedule.Job:
        return scheduler.every().day.at(f"{self.hour:02d}:{self.minute:02d}")


@dataclass(frozen=True)
class Weekly:
    weekday: int  # 0 = Sunday
    hour: int
    minute: int = 0

    def attach(self, scheduler: schedule.Scheduler) -> schedule.Job:
        if not 0 <= self.weekday < len(WEEKDAYS):
            raise ValueError(f"Weekday must be 0-6, got {self.weekday}")
        job = getattr(scheduler.every(), WEEKDAYS[self.weekday])
        return job.at(f"{self.hour:02d}:{self.minute:02d}")


class TriggerLoop:
    """
    Background thread that enqueues clock-triggered job functions when due.

    Each fire is enqueued under ``{function_id}:{fire time}`` so a fire seen
    twice runs once. Fires missed while the process was down collapse into one,
    because the scheduler computes the next run from the current time.
    """

    def __init__(self, runner: JobRunner):
        self.runner = runner
        self.scheduler = schedule.Scheduler()
        self.jobs: dict[str, schedule.Job] = {}
        self._fired: list[str] = []
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

        for function in runner.functions.values():
            if function.trigger is None:
                continue
            job = function.trigger.attach(self.scheduler).do(self._fire, function.id)
            job.tag(function.id)
            self.jobs[function.id] = job

    @property
    def next_fire(self) -> dict:
        return {function_id: job.next_run for function_id, job in self.jobs.items()}

    def _fire(self, function_id: str) -> None:
        # next_run still holds the fire time being served until the job returns
        fire_at = self.jobs[function_id].next_run
        try:
            info = self.runner.enqueue(function_id, key=f"{function_id}:{fire_at.isoformat()}")
        except Exception:
            log.exception("Could not enqueue %s for %s", function_id, fire_at)
            return
        self._fired.append(info.key)

    def tick(self) -> list[str]:
        """Enqueue every function whose fire time has passed. Returns the run keys."""
        self._fired = []
        self.scheduler.run_pending()
        return self._fired

    def _run(self) -> None:
        log.info("Trigger loop started: %s", {k: v.isoformat() for k, v in self.next_fire.items()})
        while True:
            idle = self.scheduler.idle_seconds
            if self._stop.wait(None if idle is None else max(0.0, idle)):
                break
            self.tick()
        log.info("Trigger loop stopped")

    def start(self) -> None:
        if self._thread is None:
            self._thread = threading.Thread(target=self._run, name="upkeep-triggers", daemon=True)
            self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        self.scheduler.clear()
