"""Application settings loaded from environment variables."""

from pathlib import Path

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Spiff configuration from the environment / .env file."""

    base_url: str = "https://api.spacetraders.io/v2"
    data_dir: Path = Path("data")
    db_path: Path | None = None
    # (max_count, window_seconds) sliding-window rules enforced by the dispatcher
    rate_limits: list[tuple[int, float]] = [(2, 1.0), (10, 10.0)]
    request_timeout: float = 30.0
    reset_poll_interval: float = 60.0
    reset_early_window: float = 3600.0
    host: str = "127.0.0.1"
    port: int = 8080
    log_level: str = "INFO"

    model_config = {"env_prefix": "SPIFF_", "env_file": ".env"}

    @property
    def database_path(self) -> Path:
        """Resolved location of the sqlite database."""
        if self.db_path is not None:
            return self.db_path.resolve()
        return (self.data_dir / "spiff" / "data.sqlite").resolve()


def load_settings() -> Settings:
    """Load and return application settings."""
    return Settings()
