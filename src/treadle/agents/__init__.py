from __future__ import annotations

from treadle.agents.base import (
    AgentDetectResult,
    AgentExecution,
    AgentPlugin,
    ExecuteOptions,
    ExitRecord,
    OutputChunk,
)
from treadle.agents.registry import AgentRegistry, create_default_registry

__all__ = [
    "AgentDetectResult",
    "AgentExecution",
    "AgentPlugin",
    "AgentRegistry",
    "ExecuteOptions",
    "ExitRecord",
    "OutputChunk",
    "create_default_registry",
]
