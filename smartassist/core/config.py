"""Core application configuration and settings.

Handles environment variables, storage/notification backends and the
timing knobs of the session & synchronization engine.
"""
from pathlib import Path
from typing import Optional
from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings


# Load environment variables
ROOT = Path(__file__).resolve().parents[2]
load_dotenv(dotenv_path=ROOT / ".env", override=True)
load_dotenv(override=True)

DEV_JWT_SECRET = "development-secret-key-change-in-production"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Storage
    store_backend: str = Field(default="memory", alias="STORE_BACKEND")
    database_path: str = Field(default="smartassist.db", alias="DATABASE_PATH")

    # Change notifications
    notify_backend: str = Field(default="local", alias="NOTIFY_BACKEND")

    # Redis Configuration
    redis_host: str = Field(default="localhost", alias="REDIS_HOST")
    redis_port: int = Field(default=6379, alias="REDIS_PORT")
    redis_password: Optional[str] = Field(default=None, alias="REDIS_PASSWORD")
    redis_db: int = Field(default=0, alias="REDIS_DB")
    redis_channel_prefix: str = Field(default="smartassist:changes:", alias="REDIS_CHANNEL_PREFIX")

    # JWT Authentication
    jwt_secret_key: str = Field(default=DEV_JWT_SECRET, alias="JWT_SECRET_KEY")
    jwt_algorithm: str = Field(default="HS256", alias="JWT_ALGORITHM")
    access_token_expire_minutes: int = Field(default=1440, alias="ACCESS_TOKEN_EXPIRE_MINUTES")  # 24 hours

    # Engine timing (seconds)
    autosave_interval_seconds: float = Field(default=5.0, alias="AUTOSAVE_INTERVAL_SECONDS")
    heartbeat_interval_seconds: float = Field(default=30.0, alias="HEARTBEAT_INTERVAL_SECONDS")
    dashboard_debounce_seconds: float = Field(default=0.25, alias="DASHBOARD_DEBOUNCE_SECONDS")
    dashboard_poll_seconds: float = Field(default=0.0, alias="DASHBOARD_POLL_SECONDS")  # 0 disables polling

    # Engine policy
    exclusive_sessions: bool = Field(default=True, alias="EXCLUSIVE_SESSIONS")
    code_history_limit: int = Field(default=50, alias="CODE_HISTORY_LIMIT")
    change_feed_buffer: int = Field(default=100, alias="CHANGE_FEED_BUFFER")

    # Application Settings
    environment: str = Field(default="development", alias="ENVIRONMENT")
    debug: bool = Field(default=False, alias="DEBUG")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # API Settings
    api_prefix: str = Field(default="", alias="API_PREFIX")
    cors_origins: list[str] = Field(
        default_factory=lambda: [
            "http://localhost:5173",
            "http://127.0.0.1:5173"
        ],
        alias="CORS_ORIGINS"
    )

    class Config:
        case_sensitive = False
        env_file = ".env"
        populate_by_name = True

    def validate_required_settings(self):
        """Validate that required settings are present and consistent."""
        if self.store_backend not in ("memory", "sqlite"):
            raise ValueError(
                f"STORE_BACKEND must be 'memory' or 'sqlite', got '{self.store_backend}'."
            )
        if self.notify_backend not in ("local", "redis"):
            raise ValueError(
                f"NOTIFY_BACKEND must be 'local' or 'redis', got '{self.notify_backend}'."
            )
        if self.autosave_interval_seconds <= 0 or self.heartbeat_interval_seconds <= 0:
            raise ValueError("Auto-save and heartbeat intervals must be positive.")
        if self.environment == "production" and self.jwt_secret_key == DEV_JWT_SECRET:
            raise ValueError(
                "JWT_SECRET_KEY must be set to a secure value in production."
            )


# Global settings instance
settings = Settings()


# Validate settings on module import (only in non-test environments)
if settings.environment != "test":
    try:
        settings.validate_required_settings()
    except ValueError as e:
        print(f"Configuration Error: {e}")
        # Don't raise in development to allow partial setup
        if settings.environment == "production":
            raise
