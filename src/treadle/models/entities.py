"""Core domain entities.

The controller owns a single ``EngineState`` value; everything else receives
deep copies through ``EngineState.snapshot()``.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from treadle.models.enums import (
    ActiveAgentReason,
    EngineStatus,
    IterationOutcome,
    StopReason,
    SwitchReason,
    TaskStatus,
)


def utc_now() -> datetime:
    return datetime.now(UTC)


class DomainModel(BaseModel):
    """Base model with common config.

    ``extra="forbid"`` makes session snapshots with unknown fields fail closed
    instead of silently dropping data.
    """

    model_config = ConfigDict(extra="forbid", validate_assignment=True)


class Task(DomainModel):
    """Unit of work owned by a tracker."""

    id: str
    title: str = ""
    description: str = ""
    status: TaskStatus = TaskStatus.OPEN
    priority: int = 2
    dependencies: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def label(self) -> str:
        return f"{self.id}: {self.title}" if self.title else self.id


class TaskCompletionResult(DomainModel):
    success: bool
    message: str = ""
    error: str | None = None
    task: Task | None = None


class AgentSwitchRecord(DomainModel):
    at: datetime
    from_agent: str
    to_agent: str
    reason: SwitchReason


class Iteration(DomainModel):
    """One attempt to drive a single task to completion or failure."""

    number: int
    task_id: str
    agent_id: str
    started_at: datetime = Field(default_factory=utc_now)
    ended_at: datetime | None = None
    outcome: IterationOutcome | None = None
    task_completed: bool = False
    attempts: int = 0
    exit_code: int | None = None
    error: str | None = None
    agent_switches: list[AgentSwitchRecord] = Field(default_factory=list)

    @property
    def is_open(self) -> bool:
        return self.ended_at is None

    @property
    def consumed_slot(self) -> bool:
        return self.outcome is not None and self.outcome.consumes_slot

    def append_switch(self, record: AgentSwitchRecord) -> AgentSwitchRecord:
        """Append a switch record, keeping ``at`` strictly increasing."""
        if self.agent_switches and record.at <= self.agent_switches[-1].at:
            bumped = self.agent_switches[-1].at.timestamp() + 1e-6
            record = record.model_copy(
                update={"at": datetime.fromtimestamp(bumped, tz=record.at.tzinfo or UTC)}
            )
        self.agent_switches = [*self.agent_switches, record]
        return record


class ActiveAgentState(DomainModel):
    agent_id: str
    reason: ActiveAgentReason
    since: datetime = Field(default_factory=utc_now)


class RateLimitState(DomainModel):
    primary_agent_id: str
    limited_at: datetime | None = None
    fallback_agent_id: str | None = None
    retry_count: int = 0


class EngineState(DomainModel):
    status: EngineStatus = EngineStatus.IDLE
    current_iteration: int = 0
    current_task: Task | None = None
    active_agent: ActiveAgentState | None = None
    rate_limit_state: RateLimitState | None = None
    iteration_history: list[Iteration] = Field(default_factory=list)
    max_iterations: int = 0
    started_at: datetime = Field(default_factory=utc_now)
    pause_reason: str | None = None
    stop_reason: StopReason | None = None

    @property
    def open_iteration(self) -> Iteration | None:
        for iteration in reversed(self.iteration_history):
            if iteration.is_open:
                return iteration
        return None

    @property
    def iterations_run(self) -> int:
        """Number of iterations that consumed an iteration slot."""
        return sum(1 for iteration in self.iteration_history if iteration.consumed_slot)

    @property
    def tasks_completed(self) -> int:
        return sum(1 for iteration in self.iteration_history if iteration.task_completed)

    @property
    def on_fallback(self) -> bool:
        return (
            self.active_agent is not None
            and self.active_agent.reason is ActiveAgentReason.FALLBACK
        )

    def snapshot(self) -> EngineState:
        """Deep copy for read-only consumers."""
        return self.model_copy(deep=True)
