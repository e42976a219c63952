"""treadle: autonomous task-queue runner for AI coding agents."""

from __future__ import annotations

__all__ = ["__version__"]

try:
    from importlib.metadata import version

    __version__ = version("treadle")
except Exception:  # pragma: no cover - source checkout without metadata
    __version__ = "dev"
