from __future__ import annotations

from treadle.trackers.base import TrackerDetectResult, TrackerPlugin
from treadle.trackers.registry import create_tracker

__all__ = ["TrackerDetectResult", "TrackerPlugin", "create_tracker"]
