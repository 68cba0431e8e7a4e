"""
Application configuration using Pydantic Settings.
"""
from functools import lru_cache
from pydantic_settings import BaseSettings
from pydantic import field_validator


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    APP_NAME: str = "Ingestion Engine"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    CORS_ORIGINS: list[str] = ["*"]

    # Job and mapping store
    DATABASE_URL: str = "sqlite:///./ingestion_engine.db"
    AUTO_CREATE_SCHEMA: bool = True

    # File storage
    UPLOAD_DIR: str = "./data/uploads"
    EXPORT_DIR: str = "./data/exports"

    # Job execution
    JOB_WORKERS: int = 4
    RETRY_BACKOFF_SECONDS: float = 0.5
    RETRY_BACKOFF_MAX_SECONDS: float = 30.0

    # Discovery and preview bounds
    DISCOVERY_SAMPLE_ROWS: int = 100
    PREVIEW_SCAN_LIMIT: int = 10000
    EXPORT_CHUNK_ROWS: int = 500

    @field_validator(
        "JOB_WORKERS",
        "DISCOVERY_SAMPLE_ROWS",
        "PREVIEW_SCAN_LIMIT",
        "EXPORT_CHUNK_ROWS",
    )
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be a positive integer")
        return v

    @field_validator("RETRY_BACKOFF_SECONDS", "RETRY_BACKOFF_MAX_SECONDS")
    @classmethod
    def validate_backoff(cls, v: float) -> float:
        if v < 0:
            raise ValueError("backoff must not be negative")
        return v

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {v}")
        return level

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
