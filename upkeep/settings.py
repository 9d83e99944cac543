from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    DATABASE_URL: str = "sqlite:///upkeep.db"
    LOG_LEVEL: str = "INFO"

    # Worker pool
    WORKER_THREADS: int = 4
    JOB_RETRIES: int = 2
    JOB_RETRY_BACKOFF_SECONDS: float = 1.0

    # Orphan exercise cleanup
    ORPHAN_BATCH_SIZE: int = 5
    ORPHAN_BATCH_DELAY_SECONDS: float = 5.0

    # Clock triggers (weekday: 0 = Sunday)
    ENABLE_TRIGGERS: bool = True
    CLEANUP_WEEKDAY: int = 0
    CLEANUP_HOUR: int = 5
    CLEANUP_MINUTE: int = 0
    MISSED_CHECK_HOUR: int = 6
    MISSED_CHECK_MINUTE: int = 0

    model_config = SettingsConfigDict(env_file=".env", env_prefix="UPKEEP_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
