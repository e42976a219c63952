from __future__ import annotations

from treadle.models.entities import (
    ActiveAgentState,
    AgentSwitchRecord,
    EngineState,
    Iteration,
    RateLimitState,
    Task,
    TaskCompletionResult,
    utc_now,
)
from treadle.models.enums import (
    ActiveAgentReason,
    EnginePhase,
    EngineStatus,
    FailureStrategy,
    IterationOutcome,
    StopReason,
    SwitchReason,
    TaskStatus,
)

__all__ = [
    "ActiveAgentReason",
    "ActiveAgentState",
    "AgentSwitchRecord",
    "EnginePhase",
    "EngineState",
    "EngineStatus",
    "FailureStrategy",
    "Iteration",
    "IterationOutcome",
    "RateLimitState",
    "StopReason",
    "SwitchReason",
    "Task",
    "TaskCompletionResult",
    "TaskStatus",
    "utc_now",
]
