"""Tracker for projects using the beads-rust ``br`` CLI."""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Any

from treadle.errors import CommandError, TrackerError
from treadle.models import Task, TaskCompletionResult, TaskStatus
from treadle.process import run_command
from treadle.trackers.base import TrackerDetectResult

logger = logging.getLogger(__name__)

BR_COMMAND = "br"
BR_TIMEOUT_SECONDS = 30.0
_VERSION_RE = re.compile(r"\bbr\b(?:\s+version)?\s+(\S+)", re.IGNORECASE)

_FROM_BEADS = {
    "open": TaskStatus.OPEN,
    "in_progress": TaskStatus.IN_PROGRESS,
    "blocked": TaskStatus.BLOCKED,
    "closed": TaskStatus.COMPLETED,
    "deferred": TaskStatus.BLOCKED,
}
_TO_BEADS = {
    TaskStatus.OPEN: "open",
    TaskStatus.IN_PROGRESS: "in_progress",
    TaskStatus.BLOCKED: "blocked",
    TaskStatus.COMPLETED: "closed",
}


def extract_br_version(stdout: str) -> str:
    """Parse ``br version 1.2.3`` or ``br 1.2.3``."""
    match = _VERSION_RE.search(stdout.strip())
    return match.group(1) if match else "unknown"


def _dependency_ids(raw: object) -> list[str]:
    if not isinstance(raw, list):
        return []
    ids: list[str] = []
    for item in raw:
        match item:
            case str() as dep_id:
                ids.append(dep_id)
            case {"depends_on_id": str() as dep_id}:
                ids.append(dep_id)
            case {"id": str() as dep_id}:
                ids.append(dep_id)
            case _:
                pass
    return list(dict.fromkeys(ids))


def task_from_issue(issue: dict[str, Any]) -> Task:
    status = _FROM_BEADS.get(str(issue.get("status", "open")).lower(), TaskStatus.OPEN)
    priority = issue.get("priority", 2)
    metadata = {
        key: issue[key] for key in ("issue_type", "assignee", "labels") if key in issue
    }
    return Task(
        id=str(issue["id"]),
        title=str(issue.get("title", "")),
        description=str(issue.get("description") or ""),
        status=status,
        priority=priority if isinstance(priority, int) else 2,
        dependencies=_dependency_ids(issue.get("dependencies")),
        metadata=metadata,
    )


class BeadsRustTracker:
    """Drives ``br list/update/close`` in the project working directory."""

    def __init__(self, working_dir: Path, *, beads_dir: str = ".beads") -> None:
        self._working_dir = working_dir
        self._beads_dir = beads_dir
        self.br_version: str | None = None

    @property
    def id(self) -> str:
        return "beads-rust"

    async def detect(self) -> TrackerDetectResult:
        beads_path = self._working_dir / self._beads_dir
        if not beads_path.is_dir():
            return TrackerDetectResult(
                available=False, error=f"Beads directory not found: {beads_path}"
            )
        try:
            output = await self._run("--version")
        except CommandError as exc:
            return TrackerDetectResult(available=False, error=f"br binary not available: {exc}")

        self.br_version = extract_br_version(output)
        return TrackerDetectResult(
            available=True, version=self.br_version, location=str(beads_path)
        )

    async def _run(self, *args: str) -> str:
        result = await run_command(
            [BR_COMMAND, *args], cwd=self._working_dir, timeout=BR_TIMEOUT_SECONDS
        )
        return result.stdout

    async def _br(self, *args: str, task_id: str | None = None) -> str:
        try:
            return await self._run(*args)
        except CommandError as exc:
            raise TrackerError(str(exc), task_id=task_id) from exc

    async def _show(self, task_id: str) -> Task | None:
        output = await self._br("show", task_id, "--json", task_id=task_id)
        try:
            payload = json.loads(output)
        except json.JSONDecodeError as exc:
            raise TrackerError(f"br show returned invalid JSON: {exc}", task_id=task_id) from exc
        if isinstance(payload, list):
            payload = payload[0] if payload else None
        return task_from_issue(payload) if isinstance(payload, dict) else None

    async def get_tasks(self) -> list[Task]:
        output = await self._br("list", "--all", "--json")
        try:
            payload = json.loads(output) if output.strip() else []
        except json.JSONDecodeError as exc:
            raise TrackerError(f"br list returned invalid JSON: {exc}") from exc
        if isinstance(payload, dict):
            payload = payload.get("issues", [])
        if not isinstance(payload, list):
            raise TrackerError("br list returned an unexpected payload")
        return [task_from_issue(issue) for issue in payload if isinstance(issue, dict)]

    async def complete_task(self, task_id: str) -> TaskCompletionResult:
        current = await self._show(task_id)
        if current is None:
            return TaskCompletionResult(
                success=False, message=f"Task {task_id} not found", error="not_found"
            )
        if current.status is TaskStatus.COMPLETED:
            return TaskCompletionResult(
                success=True, message=f"Task {task_id} already closed", task=current
            )
        await self._br("close", task_id, task_id=task_id)
        logger.info("Closed beads issue %s", task_id)
        closed = current.model_copy(update={"status": TaskStatus.COMPLETED})
        return TaskCompletionResult(success=True, message=f"Task {task_id} closed", task=closed)

    async def update_task_status(self, task_id: str, status: TaskStatus) -> Task | None:
        current = await self._show(task_id)
        if current is None:
            return None
        if current.status is status:
            return current
        if status is TaskStatus.COMPLETED:
            await self._br("close", task_id, task_id=task_id)
        elif current.status is TaskStatus.COMPLETED:
            await self._br("reopen", task_id, task_id=task_id)
            if status is not TaskStatus.OPEN:
                await self._br("update", task_id, "--status", _TO_BEADS[status], task_id=task_id)
        else:
            await self._br("update", task_id, "--status", _TO_BEADS[status], task_id=task_id)
        return current.model_copy(update={"status": status})


__all__ = ["BeadsRustTracker", "extract_br_version", "task_from_issue"]
