from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    model_config = SettingsConfigDict(env_file=".env")

    app_name: str = "CardGrader"
    debug: bool = False

    anthropic_api_key: str = ""
    grading_model: str = "claude-sonnet-4-20250514"
    summary_model: str = "claude-sonnet-4-20250514"

    # Background dispatcher
    concurrency_limit: int = 2

    # Retry/backoff for every grading call
    retry_max_attempts: int = 5
    retry_initial_delay: float = 4.0
    retry_multiplier: float = 1.6
    retry_max_delay: float = 45.0
    retry_jitter: float = 2.0
    attempt_timeout_seconds: float = 50.0

    # Persistence
    save_debounce_seconds: float = 2.0
    flush_interval_seconds: float = 30.0
    local_cache_path: str = ".cardgrader/collection_backup.json"

    # Where the collection is synchronized to
    collection_backend: Literal["database", "drive", "none"] = "none"
    database_url: str = "postgresql+asyncpg://localhost:5432/cardgrader"
    collection_owner: str = "default"
    drive_access_token: str = ""


settings = Settings()


# =============================================================================
# GRADING SCALE
# =============================================================================

MIN_GRADE = 1.0
MAX_GRADE = 10.0

# Grades are expressed in half points (9.5, 8.5, ...)
GRADE_STEP = 0.5
