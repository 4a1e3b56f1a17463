"""
Application configuration using Pydantic Settings.
Loads from environment variables and .env file.
"""

from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = "TaskFlow Realtime"
    app_version: str = "1.0.0"
    debug: bool = False
    port: int = 5000

    # Database
    db_host: str = "localhost"
    db_port: int = 5432
    db_name: str = "taskflow"
    db_user: str = "taskflow"
    db_password: str = ""
    database_url: Optional[str] = None

    # Connection pool settings
    db_pool_size: int = 10
    db_pool_max_overflow: int = 10
    db_pool_timeout: int = 30

    # Bearer tokens (issued by the external auth service)
    jwt_secret: str = "your-secret-key"
    jwt_algorithm: str = "HS256"
    jwt_leeway: int = 60

    # WebSocket server
    ws_send_timeout: float = 10.0  # Seconds before a stalled write counts as a dead peer
    ws_idle_timeout: float = 90.0  # Three missed heartbeats

    # WebSocket client
    ws_url: str = "ws://localhost:5000"
    heartbeat_interval: float = 30.0
    reconnect_delay: float = 5.0
    reconnect_factor: float = 2.0
    reconnect_max_delay: float = 60.0
    typing_timeout: float = 5.0
    notification_history: int = 50

    @property
    def async_database_url(self) -> str:
        """Build async database URL for SQLAlchemy."""
        if self.database_url:
            # Convert standard postgres:// to postgresql+asyncpg://
            url = self.database_url
            if url.startswith("postgres://"):
                url = url.replace("postgres://", "postgresql+asyncpg://", 1)
            elif url.startswith("postgresql://"):
                url = url.replace("postgresql://", "postgresql+asyncpg://", 1)
            return url

        return (
            f"postgresql+asyncpg://{self.db_user}:{self.db_password}"
            f"@{self.db_host}:{self.db_port}/{self.db_name}"
        )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
