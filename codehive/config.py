"""Configuration settings for the cycle orchestrator."""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_prefix="CODEHIVE_", env_file=".env", extra="ignore")

    # Database
    db_host: str = "localhost"
    db_port: int = 15432
    db_name: str = "codehive"
    db_user: str = "codehive"
    db_password: str = "codehive"
    database_url_override: str | None = None

    # Project
    project_path: Path = Field(default_factory=Path.cwd)
    project_id: str = "default"

    # Redis
    redis_url: str = "redis://localhost:16379/0"
    redis_events_enabled: bool = False

    # Retention
    snapshot_retention_days: int = 7
    query_expiry_days: int = 7

    # Cycle execution
    lock_timeout: float = 30.0  # seconds
    fail_cycle_on_error: bool = True

    # Relevant file discovery
    test_dirs: list[str] = ["tests", "test", "__tests__", "spec"]
    source_dirs: list[str] = ["src", "app", "lib"]
    test_file_pattern: str = r"(\.(test|spec)\.(ts|js|tsx|jsx)$)|(^test_.*\.py$)|(_test\.py$)"
    source_file_pattern: str = r"\.(ts|js|tsx|jsx|py)$"

    log_level: str = "INFO"

    @property
    def database_url(self) -> str:
        """Async SQLAlchemy database URL."""
        if self.database_url_override:
            return self.database_url_override
        return f"postgresql+asyncpg://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    @property
    def codehive_dir(self) -> Path:
        return self.project_path / ".codehive"

    @property
    def lock_dir(self) -> Path:
        return self.codehive_dir / "locks"


def get_settings() -> Settings:
    """Build settings from the current environment."""
    return Settings()
