import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

import upkeep.models as _models  # noqa: F401  registers tables with SQLModel metadata
from upkeep.database import create_db_and_tables, engine
from upkeep.jobs.functions import create_runner
from upkeep.jobs.triggers import TriggerLoop
from upkeep.routers import jobs
from upkeep.settings import get_settings

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    create_db_and_tables()

    runner = create_runner(engine, settings)
    runner.start()
    app.state.runner = runner

    triggers = None
    if settings.ENABLE_TRIGGERS:
        triggers = TriggerLoop(runner)
        triggers.start()

    yield

    if triggers is not None:
        triggers.stop()
    runner.shutdown(wait=True)


app = FastAPI(title="Upkeep", lifespan=lifespan)

app.include_router(jobs.router, prefix="/api", tags=["jobs"])


@app.get("/api/health")
def health():
    return {"status": "ok"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
