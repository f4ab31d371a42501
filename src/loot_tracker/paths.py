"""Locations of the tracker database, log file and exports."""

from __future__ import annotations

from datetime import datetime
from pathlib import Path

from platformdirs import PlatformDirs


APP_NAME = "GuildLootTracker"


def _dirs() -> PlatformDirs:
    return PlatformDirs(appname=APP_NAME, appauthor=False, roaming=True)


def get_data_dir() -> Path:
    """Return the base directory for persistent data."""
    path = Path(_dirs().user_data_path)
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_db_path() -> Path:
    return get_data_dir() / "tracker.sqlite3"


def get_log_path() -> Path:
    path = Path(_dirs().user_log_path)
    path.mkdir(parents=True, exist_ok=True)
    return path / "tracker.log"


def default_export_path(now: datetime) -> Path:
    folder = get_data_dir() / "exports"
    folder.mkdir(exist_ok=True)
    return folder / f"loot-tracker-{now:%Y%m%d-%H%M%S}.json"
