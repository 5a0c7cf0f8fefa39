# docflow/config.py
from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from the environment and .env"""

    model_config = SettingsConfigDict(
        env_prefix="DOCFLOW_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # === Application ===
    APP_NAME: str = "Document Approval Workflow API"
    API_PREFIX: str = "/api/v1"
    ENVIRONMENT: str = "development"

    # === Database ===
    DATABASE_URL: str = "sqlite:///./docflow.db"
    DATABASE_ECHO: bool = False

    # === Logging ===
    LOG_LEVEL: str = "INFO"
    LOG_DIR: Optional[str] = None

    # === Business Rules ===
    NOTIFICATION_PAGE_SIZE: int = 50
    DOCUMENT_NUMBER_PREFIX: str = "DOC"

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level '{v}'")
        return level

    @field_validator("DATABASE_URL")
    @classmethod
    def validate_database_url(cls, v: str, info) -> str:
        """Production must not run on a throwaway SQLite file."""
        env = (info.data.get("ENVIRONMENT") or "development").lower()
        if env == "production" and v.startswith("sqlite"):
            raise ValueError("Production environment cannot use a SQLite database")
        return v


settings = Settings()
