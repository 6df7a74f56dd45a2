"""Application configuration via environment variables."""

from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings loaded from environment variables or .env file."""
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    # Application
    app_name: str = "Wedding Roster"
    debug: bool = False
    log_dir: Path = Path.home() / ".logs" / "roster"

    # Storage backend
    database_url: str = "sqlite:///./wedding_roster.db"
    backend_timeout_seconds: float = 10.0  # Requests slower than this are rolled back

    # Periodic full resync; 0 disables it
    resync_interval_minutes: int = 0

    # Change feed
    feed_dedupe_window: int = 10_000  # Event keys remembered for duplicate suppression


settings = Settings()
