"""Configuration management for license-sync.

Uses pydantic-settings to load configuration from environment variables.
"""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, computed_field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _find_env_file() -> Path | None:
    """Search for .env file in common locations."""
    # Check current working directory first
    cwd = Path.cwd()
    if (cwd / ".env").exists():
        return cwd / ".env"

    # Check parent directories (up to 5 levels) for project root .env
    check_dir = cwd
    for _ in range(5):
        if (check_dir / ".env").exists():
            return check_dir / ".env"
        parent = check_dir.parent
        if parent == check_dir:
            break
        check_dir = parent

    # Check relative to this config file (backend/src/licsync/config.py -> project root)
    config_path = Path(__file__).resolve()
    project_root = config_path.parent.parent.parent.parent
    if (project_root / ".env").exists():
        return project_root / ".env"

    return None


# Find .env file location
_env_file = _find_env_file()


class SyncSettings(BaseModel):
    """Tunables for a reconciliation run.

    Ranges mirror the startup validation of the sync configuration:
    batch size 1-1000 and concurrency 1-20.
    """

    batch_size: int = Field(default=100, ge=1, le=1000)
    concurrency_limit: int = Field(default=5, ge=1, le=20)
    inner_concurrency_limit: int = Field(default=10, ge=1, le=100)
    timeout_seconds: float = Field(default=300.0, gt=0)

    # Retry policy
    max_retries: int = Field(default=3, ge=0, le=10)
    retry_base_delay: float = Field(default=1.0, ge=0)
    retry_max_delay: float = Field(default=30.0, ge=0)
    retry_jitter: float = Field(default=1.0, ge=0)

    # Circuit breaker
    circuit_failure_threshold: int = Field(default=5, ge=1)
    circuit_reset_timeout: float = Field(default=60.0, gt=0)

    # Adaptive concurrency heuristics
    small_run_max_batches: int = Field(default=3, ge=1)
    small_run_concurrency: int = Field(default=2, ge=1)
    large_run_min_batches: int = Field(default=50, ge=1)
    large_run_concurrency: int = Field(default=8, ge=1)

    # Duplicate detection policy (confidence scores are 0-100)
    duplicate_auto_threshold: float = Field(default=90.0, ge=0, le=100)
    duplicate_review_threshold: float = Field(default=70.0, ge=0, le=100)
    fuzzy_dba_threshold: float = Field(default=85.0, ge=0, le=100)

    # Payload validation
    validation_strict_mode: bool = False
    max_field_length: int = Field(default=1000, ge=1)
    allowed_license_types: list[str] = Field(default_factory=lambda: ["demo", "product"])

    # Feature flags
    enable_comprehensive_sync: bool = True
    enable_bidirectional_sync: bool = False
    enable_dry_run_mode: bool = True
    enable_duplicate_detection: bool = True

    @model_validator(mode="after")
    def _check_thresholds(self) -> "SyncSettings":
        if self.duplicate_review_threshold > self.duplicate_auto_threshold:
            raise ValueError(
                "duplicate_review_threshold must not exceed duplicate_auto_threshold"
            )
        if self.small_run_max_batches >= self.large_run_min_batches:
            raise ValueError(
                "small_run_max_batches must be lower than large_run_min_batches"
            )
        return self


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=str(_env_file) if _env_file else ".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    # =========================
    # Environment
    # =========================
    environment: Literal["development", "staging", "production"] = "development"

    # =========================
    # API Settings
    # =========================
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_debug: bool = False
    cors_origins: str = "http://localhost:5173,http://localhost:3000"

    # =========================
    # PostgreSQL
    # =========================
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_db: str = "licsync"
    postgres_user: str = "licsync"
    postgres_password: str = Field(default="", repr=False)

    # Overrides the composed PostgreSQL URL (e.g. sqlite+aiosqlite:// for local runs)
    database_url_override: str | None = None

    @computed_field
    @property
    def database_url(self) -> str:
        """SQLAlchemy database URL."""
        if self.database_url_override:
            return self.database_url_override
        return (
            f"postgresql+asyncpg://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    # =========================
    # Redis
    # =========================
    redis_url: str = "redis://localhost:6379/0"

    # =========================
    # Celery
    # =========================
    celery_broker_url: str = "redis://localhost:6379/0"
    celery_result_backend: str = "redis://localhost:6379/0"
    sync_schedule_minutes: int = Field(default=30, ge=1)
    enable_scheduled_sync: bool = False

    # =========================
    # External License API
    # =========================
    external_license_api_url: str = "http://localhost:2341"
    external_license_api_key: str = Field(default="", repr=False)
    external_license_api_timeout: float = 30.0
    external_license_user_agent: str = "license-sync/1.0"

    # =========================
    # Sync
    # =========================
    sync: SyncSettings = Field(default_factory=SyncSettings)

    # =========================
    # Logging
    # =========================
    log_level: str = "INFO"
    log_format: Literal["json", "text"] = "json"

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS origins as a list."""
        return [origin.strip() for origin in self.cors_origins.split(",")]

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.environment == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.environment == "production"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
