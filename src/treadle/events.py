"""Engine events and event bus contracts."""

from __future__ import annotations

import dataclasses
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, ClassVar, Protocol
from uuid import uuid4


def _new_event_id() -> str:
    return uuid4().hex


def _now() -> datetime:
    return datetime.now(UTC)


class EngineEvent(Protocol):
    """Base protocol for all engine events."""

    event_type: ClassVar[str]

    @property
    def event_id(self) -> str: ...

    @property
    def occurred_at(self) -> datetime: ...


EventHandler = Callable[[EngineEvent], None]


class EventSubscription(Protocol):
    """Per-consumer bounded queue of events."""

    def __aiter__(self) -> AsyncIterator[EngineEvent]: ...

    async def get(self) -> EngineEvent: ...

    def close(self) -> None: ...


class EventBus(Protocol):
    """Async fan-out bus for engine events."""

    async def publish(self, event: EngineEvent) -> None:
        """Publish a single event to subscribers without blocking on them."""
        ...

    def subscribe(
        self,
        event_types: set[str] | None = None,
        *,
        maxsize: int | None = None,
    ) -> EventSubscription:
        """Subscribe to events (optionally filtered by ``event_type``)."""
        ...

    def add_handler(self, handler: EventHandler, event_type: str | None = None) -> None:
        """Register a sync handler for events (log writers use this)."""
        ...

    def remove_handler(self, handler: EventHandler) -> None:
        """Remove a previously registered handler."""
        ...


# ── Engine lifecycle ──────────────────────────────────────────────────


@dataclass(frozen=True)
class EngineStarted:
    event_type: ClassVar[str] = "engine_started"

    max_iterations: int
    resumed: bool
    primary_agent: str
    event_id: str = field(default_factory=_new_event_id)
    occurred_at: datetime = field(default_factory=_now)


@dataclass(frozen=True)
class EngineStopped:
    event_type: ClassVar[str] = "engine_stopped"

    reason: str
    iterations_run: int
    tasks_completed: int
    event_id: str = field(default_factory=_new_event_id)
    occurred_at: datetime = field(default_factory=_now)


@dataclass(frozen=True)
class EnginePaused:
    event_type: ClassVar[str] = "engine_paused"

    reason: str | None
    event_id: str = field(default_factory=_new_event_id)
    occurred_at: datetime = field(default_factory=_now)


@dataclass(frozen=True)
class EngineResumed:
    event_type: ClassVar[str] = "engine_resumed"

    event_id: str = field(default_factory=_new_event_id)
    occurred_at: datetime = field(default_factory=_now)


@dataclass(frozen=True)
class EngineFailed:
    """Fatal condition surfaced to the user (abort strategy, tracker failure)."""

    event_type: ClassVar[str] = "engine_failed"

    code: str
    error: str
    task_id: str | None = None
    event_id: str = field(default_factory=_new_event_id)
    occurred_at: datetime = field(default_factory=_now)


@dataclass(frozen=True)
class IterationsAdjusted:
    event_type: ClassVar[str] = "iterations_adjusted"

    previous: int
    max_iterations: int
    event_id: str = field(default_factory=_new_event_id)
    occurred_at: datetime = field(default_factory=_now)


@dataclass(frozen=True)
class TasksRefreshed:
    event_type: ClassVar[str] = "tasks_refreshed"

    total: int
    open: int
    event_id: str = field(default_factory=_new_event_id)
    occurred_at: datetime = field(default_factory=_now)


# ── Iteration flow ────────────────────────────────────────────────────


@dataclass(frozen=True)
class TaskSelected:
    event_type: ClassVar[str] = "task_selected"

    task_id: str
    title: str
    iteration: int
    event_id: str = field(default_factory=_new_event_id)
    occurred_at: datetime = field(default_factory=_now)


@dataclass(frozen=True)
class TaskStatusChanged:
    event_type: ClassVar[str] = "task_status_changed"

    task_id: str
    from_status: str
    to_status: str
    event_id: str = field(default_factory=_new_event_id)
    occurred_at: datetime = field(default_factory=_now)


@dataclass(frozen=True)
class IterationStarted:
    event_type: ClassVar[str] = "iteration_started"

    iteration: int
    task_id: str
    agent_id: str
    event_id: str = field(default_factory=_new_event_id)
    occurred_at: datetime = field(default_factory=_now)


@dataclass(frozen=True)
class PromptBuilt:
    event_type: ClassVar[str] = "prompt_built"

    iteration: int
    task_id: str
    length: int
    event_id: str = field(default_factory=_new_event_id)
    occurred_at: datetime = field(default_factory=_now)


@dataclass(frozen=True)
class AgentStarted:
    event_type: ClassVar[str] = "agent_started"

    iteration: int
    task_id: str
    agent_id: str
    attempt: int
    event_id: str = field(default_factory=_new_event_id)
    occurred_at: datetime = field(default_factory=_now)


@dataclass(frozen=True)
class AgentOutput:
    event_type: ClassVar[str] = "agent_output"

    iteration: int
    agent_id: str
    stream: str
    chunk: str
    event_id: str = field(default_factory=_new_event_id)
    occurred_at: datetime = field(default_factory=_now)


@dataclass(frozen=True)
class RateLimitDetected:
    event_type: ClassVar[str] = "rate_limit_detected"

    iteration: int
    agent_id: str
    message: str | None
    retry_after: float | None
    retry_count: int
    event_id: str = field(default_factory=_new_event_id)
    occurred_at: datetime = field(default_factory=_now)


@dataclass(frozen=True)
class RetryScheduled:
    event_type: ClassVar[str] = "retry_scheduled"

    iteration: int
    agent_id: str
    attempt: int
    delay_seconds: float
    reason: str
    event_id: str = field(default_factory=_new_event_id)
    occurred_at: datetime = field(default_factory=_now)


@dataclass(frozen=True)
class AgentSwitched:
    event_type: ClassVar[str] = "agent_switched"

    iteration: int
    from_agent: str
    to_agent: str
    reason: str
    event_id: str = field(default_factory=_new_event_id)
    occurred_at: datetime = field(default_factory=_now)


@dataclass(frozen=True)
class FallbackExhausted:
    event_type: ClassVar[str] = "fallback_exhausted"

    iteration: int
    task_id: str
    tried: tuple[str, ...]
    message: str
    event_id: str = field(default_factory=_new_event_id)
    occurred_at: datetime = field(default_factory=_now)


@dataclass(frozen=True)
class RecoveryAttempted:
    event_type: ClassVar[str] = "recovery_attempted"

    iteration: int
    primary_agent: str
    success: bool
    detail: str
    event_id: str = field(default_factory=_new_event_id)
    occurred_at: datetime = field(default_factory=_now)


@dataclass(frozen=True)
class IterationCompleted:
    event_type: ClassVar[str] = "iteration_completed"

    iteration: int
    task_id: str
    agent_id: str
    task_completed: bool
    duration_ms: int
    event_id: str = field(default_factory=_new_event_id)
    occurred_at: datetime = field(default_factory=_now)


@dataclass(frozen=True)
class IterationFailed:
    event_type: ClassVar[str] = "iteration_failed"

    iteration: int
    task_id: str
    agent_id: str
    error: str
    action: str
    event_id: str = field(default_factory=_new_event_id)
    occurred_at: datetime = field(default_factory=_now)


@dataclass(frozen=True)
class IterationInterrupted:
    event_type: ClassVar[str] = "iteration_interrupted"

    iteration: int
    task_id: str
    reason: str
    event_id: str = field(default_factory=_new_event_id)
    occurred_at: datetime = field(default_factory=_now)


# ── Delivery markers ──────────────────────────────────────────────────


@dataclass(frozen=True)
class EventGap:
    """Delivered in place of events dropped from an overflowing subscriber queue."""

    event_type: ClassVar[str] = "gap"

    dropped: int
    event_id: str = field(default_factory=_new_event_id)
    occurred_at: datetime = field(default_factory=_now)


def _json_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (list, tuple)):
        return [_json_value(item) for item in value]
    if isinstance(value, dict):
        return {key: _json_value(item) for key, item in value.items()}
    return value


def event_to_dict(event: EngineEvent) -> dict[str, Any]:
    """Serialize an event into a JSON-safe dict including its ``type``."""
    payload: dict[str, Any] = {"type": event.event_type}
    for item in dataclasses.fields(event):  # type: ignore[arg-type]
        payload[item.name] = _json_value(getattr(event, item.name))
    return payload


EVENT_TYPES: frozenset[str] = frozenset(
    cls.event_type
    for cls in (
        EngineStarted,
        EngineStopped,
        EnginePaused,
        EngineResumed,
        EngineFailed,
        IterationsAdjusted,
        TasksRefreshed,
        TaskSelected,
        TaskStatusChanged,
        IterationStarted,
        PromptBuilt,
        AgentStarted,
        AgentOutput,
        RateLimitDetected,
        RetryScheduled,
        AgentSwitched,
        FallbackExhausted,
        RecoveryAttempted,
        IterationCompleted,
        IterationFailed,
        IterationInterrupted,
        EventGap,
    )
)
