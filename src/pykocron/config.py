from pathlib import Path

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    model_config = {
        "extra": "ignore",
        "env_prefix": "PYKOCRON_",
        "env_file": (
            str(Path.home() / ".local" / "share" / "pykocron" / ".env"),
            ".env",
        ),
        "env_file_encoding": "utf-8",
    }

    data: Path = Path.home() / ".local" / "share" / "pykocron"
    model: str = "claude-opus-4-6"
    cli_path: Path | None = None

    # Policy applied to triggers created without an explicit one
    default_max_retries: int = 3
    default_retry_delay_seconds: int = 60
    default_timeout_seconds: int = 300

    min_sleep_ms: int = 1000
    reconcile_interval: int = 60  # Supervisor poll for new/re-enabled triggers
    runner_restart_delay: int = 30

    @property
    def db_path(self) -> Path:
        return self.data / "pykocron.db"


settings = Settings()
