"""Core domain enums."""

from __future__ import annotations

from enum import StrEnum


class TaskStatus(StrEnum):
    """Task status values as seen by the engine."""

    OPEN = "open"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    BLOCKED = "blocked"


class EngineStatus(StrEnum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    ERROR = "error"
    COMPLETED = "completed"


class EnginePhase(StrEnum):
    """Fine-grained controller phase, orthogonal to ``EngineStatus``."""

    IDLE = "idle"
    SELECTING_TASK = "selecting_task"
    BUILDING_PROMPT = "building_prompt"
    EXECUTING = "executing"
    DETECTING_OUTCOME = "detecting_outcome"
    RETRY_WAITING = "retry_waiting"
    SWITCHING_AGENT = "switching_agent"
    RECOVERING_PRIMARY = "recovering_primary"
    COMPLETING = "completing"
    FAILING = "failing"
    COMPLETED = "completed"
    FAILED = "failed"


class IterationOutcome(StrEnum):
    COMPLETED = "completed"
    FAILED = "failed"
    INTERRUPTED = "interrupted"

    @property
    def consumes_slot(self) -> bool:
        """Interrupted iterations do not count against ``max_iterations``."""
        return self is not IterationOutcome.INTERRUPTED


class SwitchReason(StrEnum):
    RATE_LIMIT = "rate_limit"
    RECOVERY = "recovery"
    MANUAL = "manual"


class ActiveAgentReason(StrEnum):
    PRIMARY = "primary"
    FALLBACK = "fallback"


class FailureStrategy(StrEnum):
    """What to do when an agent fails without a rate-limit signal."""

    RETRY = "retry"
    SKIP = "skip"
    ABORT = "abort"


class StopReason(StrEnum):
    NO_TASKS = "no_tasks"
    MAX_ITERATIONS = "max_iterations"
    ABORTED = "aborted"
    STOPPED = "stopped"
