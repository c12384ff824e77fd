"""Configuration loading from environment variables."""

import os
from dataclasses import dataclass, field
from pathlib import Path


@dataclass
class Config:
    db_path: Path = field(
        default_factory=lambda: Path.home() / ".feature_conductor" / "conductor.db"
    )
    log_level: str = "INFO"
    worker_poll_interval: float = 5.0
    worker_timeout: float = 30 * 60
    queue_retention_days: int = 7
    worker_handle: str | None = None

    @classmethod
    def from_env(cls) -> "Config":
        config = cls()

        if db := os.environ.get("FC_DB_PATH"):
            config.db_path = Path(db)

        if level := os.environ.get("FC_LOG_LEVEL"):
            config.log_level = level.upper()

        if poll := os.environ.get("FC_WORKER_POLL_INTERVAL"):
            config.worker_poll_interval = float(poll)

        if timeout := os.environ.get("FC_WORKER_TIMEOUT"):
            config.worker_timeout = float(timeout)

        if days := os.environ.get("FC_QUEUE_RETENTION_DAYS"):
            config.queue_retention_days = int(days)

        config.worker_handle = os.environ.get("FC_WORKER_HANDLE")

        return config


def get_config() -> Config:
    return Config.from_env()
