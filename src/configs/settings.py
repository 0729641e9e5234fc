"""Centralized settings management for the gig ingestion pipeline."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Process-wide settings for ingestion runs.

    Read from the environment and the project-root ``.env``. Per-source
    behaviour lives in ``ingestion.yaml``, not here.
    """

    # -------------------------------------------------------------------------
    # ENVIRONMENT
    # -------------------------------------------------------------------------
    ENV: str = "development"
    DEBUG: bool = False

    # -------------------------------------------------------------------------
    # DATABASE
    # -------------------------------------------------------------------------
    # Unset means the in-memory store (dry runs, tests)
    DATABASE_URL: SecretStr | None = None
    DB_CONNECT_TIMEOUT_S: int = Field(10, ge=1)

    # -------------------------------------------------------------------------
    # LOGGING
    # -------------------------------------------------------------------------
    LOG_LEVEL: str = "INFO"
    JSON_LOGS: bool = False
    LOG_FILE: Path | None = None

    # -------------------------------------------------------------------------
    # EXECUTION
    # -------------------------------------------------------------------------
    PARALLELISM: int = Field(4, ge=1)

    # -------------------------------------------------------------------------
    # PATHS
    # -------------------------------------------------------------------------
    # BASE_DIR points to the project root
    BASE_DIR: Path = Path(__file__).resolve().parents[2]

    INGESTION_CONFIG_PATH: Path = BASE_DIR / "src" / "configs" / "ingestion.yaml"

    # -------------------------------------------------------------------------
    # CONFIGURATION
    # -------------------------------------------------------------------------
    model_config = SettingsConfigDict(
        env_file=str(Path(__file__).resolve().parents[2] / ".env"),
        env_file_encoding="utf-8",
        # Allow extra fields in .env but ignore them in the model
        extra="ignore",
    )

    @property
    def database_dsn(self) -> str | None:
        """Plain DSN string for psycopg2, or ``None`` when no database is configured."""
        if self.DATABASE_URL is None:
            return None
        return self.DATABASE_URL.get_secret_value()


@lru_cache
def get_settings() -> Settings:
    """
    Get cached application settings.

    Returns
    -------
    Settings
        The singleton settings instance.
    """
    return Settings()
