"""Tracker construction from configuration."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

from treadle.errors import TrackerNotFoundError
from treadle.trackers.beads_rust import BeadsRustTracker
from treadle.trackers.json_file import JsonFileTracker

if TYPE_CHECKING:
    from collections.abc import Callable

    from treadle.config import TrackerConfig
    from treadle.trackers.base import TrackerPlugin

type TrackerFactory = Callable[[TrackerConfig, Path], TrackerPlugin]


def _json_tracker(config: TrackerConfig, project_root: Path) -> TrackerPlugin:
    path = Path(config.path)
    return JsonFileTracker(path if path.is_absolute() else project_root / path)


def _beads_tracker(config: TrackerConfig, project_root: Path) -> TrackerPlugin:
    working_dir = Path(config.working_dir) if config.working_dir else project_root
    return BeadsRustTracker(working_dir)


TRACKER_FACTORIES: dict[str, TrackerFactory] = {
    "json": _json_tracker,
    "beads-rust": _beads_tracker,
}


def create_tracker(config: TrackerConfig, project_root: Path) -> TrackerPlugin:
    factory = TRACKER_FACTORIES.get(config.plugin)
    if factory is None:
        raise TrackerNotFoundError(config.plugin)
    return factory(config, project_root)


__all__ = ["TRACKER_FACTORIES", "create_tracker"]
