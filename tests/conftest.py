from datetime import datetime

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

from upkeep.jobs.functions import create_runner
from upkeep.settings import Settings

# A Monday morning, after the daily sweep time
NOW = datetime(2026, 10, 19, 6, 30)


@pytest.fixture(name="engine")
def engine_fixture():
    import upkeep.models as _models  # noqa: F401  register all tables

    # StaticPool ensures the in-memory DB is shared across all connections,
    # including the separate sessions opened by jobs and services.
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture(name="session")
def session_fixture(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture(name="sleeps")
def sleeps_fixture() -> list[float]:
    return []


@pytest.fixture(name="settings")
def settings_fixture() -> Settings:
    return Settings(
        ORPHAN_BATCH_SIZE=5,
        ORPHAN_BATCH_DELAY_SECONDS=5.0,
        JOB_RETRIES=2,
        JOB_RETRY_BACKOFF_SECONDS=0.0,
        ENABLE_TRIGGERS=False,
    )


@pytest.fixture(name="runner")
def runner_fixture(engine, settings, sleeps):
    """An eager runner: tasks execute synchronously when enqueued."""
    return create_runner(engine, settings, eager=True, sleep=sleeps.append, clock=lambda: NOW)
