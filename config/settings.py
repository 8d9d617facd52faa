"""
Identity Service Configuration Settings
"""
from pathlib import Path
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # Contact store
    db_path: Path = Field(
        default=Path("./data/contacts.db"),
        alias="IDENTITY_DB_PATH",
        description="SQLite database holding the contacts table"
    )

    # Server
    port: int = Field(default=3000, alias="PORT")
    host: str = Field(default="0.0.0.0", alias="IDENTITY_HOST")

    # Store round trips are bounded by the SQLite busy timeout
    store_timeout_seconds: float = Field(
        default=5.0,
        alias="IDENTITY_STORE_TIMEOUT",
        description="Max seconds a single store read/write may wait on a locked database"
    )
    store_read_retries: int = Field(
        default=2,
        alias="IDENTITY_STORE_RETRIES",
        description="Retries for store reads that hit a busy database"
    )

    # Serialization of consolidation per identity key
    lock_timeout_seconds: float = Field(
        default=10.0,
        alias="IDENTITY_LOCK_TIMEOUT",
        description="Max seconds to wait for the email/phone identity lock"
    )

    log_level: str = Field(default="INFO", alias="IDENTITY_LOG_LEVEL")


settings = Settings()
