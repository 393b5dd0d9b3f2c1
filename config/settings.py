"""
CRM Sync Client Configuration Settings
"""
from pathlib import Path
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Remote CRM API (the backend this client synchronizes with)
    api_url: str = Field(
        default="http://localhost:8080/api",
        alias="CRMSYNC_API_URL",
        description="Base URL of the CRM REST API"
    )
    request_timeout: float = Field(default=10.0, alias="CRMSYNC_REQUEST_TIMEOUT")

    # Session tokens (normally set by the login flow, env is for scripts)
    access_token: str = Field(default="", alias="CRMSYNC_ACCESS_TOKEN")
    refresh_token: str = Field(default="", alias="CRMSYNC_REFRESH_TOKEN")

    # Local cache + pending queue database
    db_path: Path = Field(
        default=Path("./data/crm_sync.db"),
        alias="CRMSYNC_DB_PATH"
    )

    # How long a deleted entity can be restored (seconds)
    undo_window_seconds: float = Field(default=10.0, alias="CRMSYNC_UNDO_WINDOW_SECONDS")

    # Connectivity probe interval; replay runs when the API comes back
    connectivity_poll_seconds: float = Field(
        default=30.0,
        alias="CRMSYNC_CONNECTIVITY_POLL_SECONDS"
    )
    connectivity_monitor_enabled: bool = Field(
        default=True,
        alias="CRMSYNC_CONNECTIVITY_MONITOR"
    )

    # Local API server
    port: int = Field(default=8765, alias="CRMSYNC_PORT")
    host: str = Field(default="127.0.0.1", alias="CRMSYNC_HOST")


settings = Settings()
