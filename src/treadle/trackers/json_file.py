"""Tracker backed by a JSON task file in the project."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import TYPE_CHECKING, Any

import aiofiles
from pydantic import ValidationError

from treadle.atomic import atomic_write_async
from treadle.errors import TrackerError
from treadle.models import Task, TaskCompletionResult, TaskStatus
from treadle.trackers.base import TrackerDetectResult

if TYPE_CHECKING:
    from collections.abc import Sequence
    from pathlib import Path

logger = logging.getLogger(__name__)

_STATUS_ALIASES = {
    "todo": TaskStatus.OPEN,
    "pending": TaskStatus.OPEN,
    "in-progress": TaskStatus.IN_PROGRESS,
    "done": TaskStatus.COMPLETED,
    "closed": TaskStatus.COMPLETED,
}


def _normalize_task(raw: object, index: int) -> dict[str, Any]:
    if not isinstance(raw, dict):
        raise TrackerError(f"Task entry #{index} is not an object")
    data = dict(raw)
    status = data.get("status")
    if isinstance(status, str):
        data["status"] = _STATUS_ALIASES.get(status.lower(), status.lower())
    if "id" in data:
        data["id"] = str(data["id"])
    deps = data.get("dependencies")
    if isinstance(deps, (list, tuple, set)):
        data["dependencies"] = list(dict.fromkeys(str(dep) for dep in deps))
    return data


class JsonFileTracker:
    """Reads and writes ``{"tasks": [...]}`` (or a bare list) in one file.

    Writes are atomic and preserve the file's shape and task order.
    """

    def __init__(self, path: Path) -> None:
        self._path = path
        self._lock = asyncio.Lock()
        self._bare_list = False

    @property
    def id(self) -> str:
        return "json"

    @property
    def path(self) -> Path:
        return self._path

    async def detect(self) -> TrackerDetectResult:
        if not self._path.exists():
            return TrackerDetectResult(
                available=False, error=f"Task file not found: {self._path}"
            )
        return TrackerDetectResult(available=True, location=str(self._path))

    async def _read(self) -> list[Task]:
        try:
            async with aiofiles.open(self._path, encoding="utf-8") as f:
                content = await f.read()
        except FileNotFoundError as exc:
            raise TrackerError(f"Task file not found: {self._path}") from exc
        except OSError as exc:
            raise TrackerError(f"Cannot read task file {self._path}: {exc}") from exc

        try:
            payload = json.loads(content) if content.strip() else {"tasks": []}
        except json.JSONDecodeError as exc:
            raise TrackerError(f"Task file {self._path} is not valid JSON: {exc}") from exc

        match payload:
            case list() as entries:
                self._bare_list = True
            case {"tasks": list() as entries}:
                self._bare_list = False
            case _:
                raise TrackerError(f"Task file {self._path} must hold a list of tasks")

        try:
            return [Task.model_validate(_normalize_task(raw, i)) for i, raw in enumerate(entries)]
        except ValidationError as exc:
            raise TrackerError(f"Invalid task in {self._path}: {exc}") from exc

    async def _write(self, tasks: list[Task]) -> None:
        entries = [task.model_dump(mode="json") for task in tasks]
        payload: object = entries if self._bare_list else {"tasks": entries}
        content = json.dumps(payload, indent=2) + "\n"
        try:
            await atomic_write_async(self._path, content)
        except OSError as exc:
            raise TrackerError(f"Cannot write task file {self._path}: {exc}") from exc

    async def get_tasks(self) -> list[Task]:
        async with self._lock:
            return await self._read()

    async def complete_task(self, task_id: str) -> TaskCompletionResult:
        async with self._lock:
            tasks = await self._read()
            for index, task in enumerate(tasks):
                if task.id != task_id:
                    continue
                if task.status is TaskStatus.COMPLETED:
                    return TaskCompletionResult(
                        success=True, message=f"Task {task_id} already completed", task=task
                    )
                updated = task.model_copy(update={"status": TaskStatus.COMPLETED})
                tasks[index] = updated
                await self._write(tasks)
                logger.info("Completed task %s", task_id)
                return TaskCompletionResult(
                    success=True, message=f"Task {task_id} completed", task=updated
                )
        return TaskCompletionResult(
            success=False, message=f"Task {task_id} not found", error="not_found"
        )

    async def add_tasks(self, new_tasks: Sequence[Task], *, replace: bool = False) -> list[str]:
        """Append tasks whose ids are not in the file yet and return the ids written.

        Existing tasks keep their position; with ``replace`` a task with a matching id
        is overwritten in place instead of skipped. A missing file is created.
        """
        async with self._lock:
            tasks = await self._read() if self._path.exists() else []
            positions = {task.id: index for index, task in enumerate(tasks)}
            written: list[str] = []
            for task in new_tasks:
                position = positions.get(task.id)
                if position is None:
                    positions[task.id] = len(tasks)
                    tasks.append(task)
                elif replace:
                    tasks[position] = task
                else:
                    logger.info("Skipping task %s: already in %s", task.id, self._path)
                    continue
                written.append(task.id)
            if written:
                await self._write(tasks)
            return written

    async def update_task_status(self, task_id: str, status: TaskStatus) -> Task | None:
        async with self._lock:
            tasks = await self._read()
            for index, task in enumerate(tasks):
                if task.id != task_id:
                    continue
                if task.status is status:
                    return task
                updated = task.model_copy(update={"status": status})
                tasks[index] = updated
                await self._write(tasks)
                return updated
        return None


__all__ = ["JsonFileTracker"]
