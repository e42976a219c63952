"""Tracker adapter contract."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from treadle.models import Task, TaskCompletionResult, TaskStatus


@dataclass(frozen=True, slots=True)
class TrackerDetectResult:
    available: bool
    version: str | None = None
    location: str | None = None
    error: str | None = None


@runtime_checkable
class TrackerPlugin(Protocol):
    """System of record for tasks.

    Every call must be idempotent under retry and raise ``TrackerError`` on
    failure; completing an already completed task is a successful no-op.
    """

    @property
    def id(self) -> str: ...

    async def detect(self) -> TrackerDetectResult: ...

    async def get_tasks(self) -> list[Task]:
        """All known tasks in the tracker's stable order."""
        ...

    async def complete_task(self, task_id: str) -> TaskCompletionResult: ...

    async def update_task_status(self, task_id: str, status: TaskStatus) -> Task | None:
        """Set a task's status; ``None`` when the task does not exist."""
        ...


__all__ = ["TrackerDetectResult", "TrackerPlugin"]
