"""Runtime queue settings stored in the settings table."""

import sqlite3
from dataclasses import dataclass

from feature_conductor.db.engine import DEFAULT_SETTINGS, transaction

MIN_CRON_INTERVAL_SECONDS = 10


@dataclass
class QueueSettings:
    cron_interval_seconds: int = 60
    base_repos_folder: str = ""
    cli_tool: str = "claude"
    worker_enabled: bool = False


def get_setting(db: sqlite3.Connection, key: str) -> str | None:
    row = db.execute("SELECT value FROM settings WHERE key = ?", (key,)).fetchone()
    if row:
        return row["value"]
    return DEFAULT_SETTINGS.get(key)


def set_setting(db: sqlite3.Connection, key: str, value: str):
    with transaction(db):
        db.execute(
            """INSERT INTO settings (key, value) VALUES (?, ?)
               ON CONFLICT (key) DO UPDATE SET value = excluded.value,
                   updated_at = datetime('now')""",
            (key, str(value)),
        )


def get_all_settings(db: sqlite3.Connection) -> dict[str, str]:
    settings = dict(DEFAULT_SETTINGS)
    for row in db.execute("SELECT key, value FROM settings ORDER BY key"):
        settings[row["key"]] = row["value"]
    return settings


def get_queue_settings(db: sqlite3.Connection) -> QueueSettings:
    raw = get_all_settings(db)
    try:
        interval = int(raw["cron_interval_seconds"])
    except ValueError:
        interval = int(DEFAULT_SETTINGS["cron_interval_seconds"])
    return QueueSettings(
        cron_interval_seconds=interval,
        base_repos_folder=raw["base_repos_folder"],
        cli_tool=raw["cli_tool"],
        worker_enabled=raw["worker_enabled"].lower() in ("true", "1", "yes"),
    )


def update_queue_settings(
    db: sqlite3.Connection,
    cron_interval_seconds: int | None = None,
    base_repos_folder: str | None = None,
    cli_tool: str | None = None,
    worker_enabled: bool | None = None,
) -> QueueSettings:
    """Update the given queue settings; None leaves a value unchanged."""
    if cron_interval_seconds is not None:
        if cron_interval_seconds < MIN_CRON_INTERVAL_SECONDS:
            raise ValueError(
                f"cron_interval_seconds must be at least {MIN_CRON_INTERVAL_SECONDS}"
            )
        set_setting(db, "cron_interval_seconds", str(cron_interval_seconds))
    if base_repos_folder is not None:
        set_setting(db, "base_repos_folder", base_repos_folder)
    if cli_tool is not None:
        set_setting(db, "cli_tool", cli_tool)
    if worker_enabled is not None:
        set_setting(db, "worker_enabled", "true" if worker_enabled else "false")
    return get_queue_settings(db)
