"""XDG-compliant path helpers for treadle data storage."""

from __future__ import annotations

import os
from pathlib import Path

from platformdirs import user_config_dir, user_data_dir, user_state_dir

PROJECT_DIR_NAME = ".treadle"


def get_data_dir() -> Path:
    """Get the data directory for treadle (debug logs)."""
    override = os.environ.get("TREADLE_DATA_DIR")
    if override:
        return Path(override).resolve()
    return Path(user_data_dir("treadle"))


def get_config_dir() -> Path:
    """Get the user config directory (config.toml, remote.json)."""
    override = os.environ.get("TREADLE_CONFIG_DIR")
    if override:
        return Path(override).resolve()
    return Path(user_config_dir("treadle"))


def get_state_dir() -> Path:
    """Get the state directory holding session lock files."""
    override = os.environ.get("TREADLE_STATE_DIR")
    if override:
        return Path(override).resolve()
    return Path(user_state_dir("treadle"))


def get_locks_dir() -> Path:
    return get_state_dir() / "locks"


def get_project_dir(project_root: Path) -> Path:
    """Per-project directory holding the session file and event log."""
    return project_root / PROJECT_DIR_NAME


def get_session_path(project_root: Path) -> Path:
    return get_project_dir(project_root) / "session.json"


def get_event_log_path(project_root: Path) -> Path:
    return get_project_dir(project_root) / "events.jsonl"


def get_project_config_path(project_root: Path) -> Path:
    return get_project_dir(project_root) / "config.toml"


def get_user_config_path() -> Path:
    return get_config_dir() / "config.toml"


def get_remote_config_path() -> Path:
    """Path of the remote listener token file."""
    return get_config_dir() / "remote.json"


def get_debug_log_path() -> Path:
    return get_data_dir() / "debug.log"
