"""Durable, versioned session snapshots and crash reconciliation.

The snapshot is the serialized ``EngineState`` plus the last known task list.
Readers never see partial writes: every save goes through ``atomic_write``.
Unknown fields and unknown schema versions fail closed; older versions are
upgraded only through ``MIGRATIONS``.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any

import aiofiles
from pydantic import Field, ValidationError, model_validator

from treadle.atomic import atomic_write_async
from treadle.errors import SessionCorruptedError, SessionIncompatibleError
from treadle.models import (
    ActiveAgentReason,
    EngineState,
    EngineStatus,
    IterationOutcome,
    Task,
    TaskStatus,
    utc_now,
)
from treadle.models.entities import DomainModel

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1


def _migrate_v0(payload: dict[str, Any]) -> dict[str, Any]:
    """Unversioned files kept engine state under ``state`` and had no timestamp."""
    migrated = {key: value for key, value in payload.items() if key != "state"}
    if "state" in payload:
        migrated["engine_state"] = payload["state"]
    migrated.setdefault("saved_at", utc_now().isoformat())
    return migrated


# from-version -> function producing the next version's payload
MIGRATIONS: dict[int, Callable[[dict[str, Any]], dict[str, Any]]] = {
    0: _migrate_v0,
}


class SessionSnapshot(DomainModel):
    schema_version: int = SCHEMA_VERSION
    saved_at: datetime = Field(default_factory=utc_now)
    project_root: str | None = None
    engine_state: EngineState
    tasks: list[Task] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_invariants(self) -> SessionSnapshot:
        state = self.engine_state
        open_iterations = [it.number for it in state.iteration_history if it.is_open]
        if len(open_iterations) > 1:
            raise ValueError(f"More than one open iteration: {open_iterations}")
        if state.active_agent is not None and state.active_agent.reason is (
            ActiveAgentReason.FALLBACK
        ):
            if state.rate_limit_state is None or state.rate_limit_state.limited_at is None:
                raise ValueError("Fallback agent active without a recorded rate limit")
        for iteration in state.iteration_history:
            stamps = [record.at for record in iteration.agent_switches]
            if any(later <= earlier for earlier, later in zip(stamps, stamps[1:], strict=False)):
                raise ValueError(f"Agent switches of iteration {iteration.number} out of order")
        return self


def migrate_payload(payload: dict[str, Any]) -> dict[str, Any]:
    """Bring a decoded snapshot up to ``SCHEMA_VERSION`` or raise."""
    version = payload.get("schema_version", 0)
    if not isinstance(version, int) or isinstance(version, bool):
        raise SessionIncompatibleError(version, SCHEMA_VERSION)
    if version > SCHEMA_VERSION:
        raise SessionIncompatibleError(version, SCHEMA_VERSION)
    while version < SCHEMA_VERSION:
        migration = MIGRATIONS.get(version)
        if migration is None:
            raise SessionIncompatibleError(version, SCHEMA_VERSION)
        payload = migration(payload)
        version += 1
        payload["schema_version"] = version
        logger.info("Migrated session snapshot to schema version %d", version)
    return payload


def decode_snapshot(content: str) -> SessionSnapshot:
    try:
        payload = json.loads(content)
    except json.JSONDecodeError as exc:
        raise SessionCorruptedError(f"Session file is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise SessionCorruptedError("Session file does not contain an object")
    payload = migrate_payload(payload)
    try:
        return SessionSnapshot.model_validate(payload)
    except ValidationError as exc:
        raise SessionCorruptedError(f"Session file failed validation: {exc}") from exc


def reconcile(snapshot: SessionSnapshot) -> tuple[SessionSnapshot, list[str]]:
    """Repair a snapshot left behind by a crash.

    The open iteration, if any, is closed as interrupted and every task stored
    as in progress goes back to open. Returns the repaired snapshot and the ids
    of tasks the tracker must reset.
    """
    state = snapshot.engine_state.model_copy(deep=True)
    now = utc_now()
    for iteration in state.iteration_history:
        if iteration.is_open:
            iteration.ended_at = max(now, iteration.started_at)
            iteration.outcome = IterationOutcome.INTERRUPTED
            iteration.error = iteration.error or "Session ended before the iteration finished"

    reset_ids: list[str] = []
    tasks: list[Task] = []
    for task in snapshot.tasks:
        if task.status is TaskStatus.IN_PROGRESS:
            reset_ids.append(task.id)
            task = task.model_copy(update={"status": TaskStatus.OPEN})
        tasks.append(task)
    if state.current_task is not None and state.current_task.id not in reset_ids:
        reset_ids.append(state.current_task.id)

    state.current_task = None
    state.status = EngineStatus.IDLE
    state.pause_reason = None
    state.stop_reason = None
    repaired = snapshot.model_copy(update={"engine_state": state, "tasks": tasks})
    return repaired, reset_ids


class SessionStore:
    """Reads and writes ``<project>/.treadle/session.json``."""

    def __init__(self, path: Path) -> None:
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    def exists(self) -> bool:
        return self._path.exists()

    async def load(self) -> SessionSnapshot:
        try:
            async with aiofiles.open(self._path, encoding="utf-8") as f:
                content = await f.read()
        except FileNotFoundError:
            raise
        except (OSError, UnicodeDecodeError) as exc:
            raise SessionCorruptedError(f"Cannot read session file: {exc}") from exc
        return decode_snapshot(content)

    async def save(self, snapshot: SessionSnapshot) -> None:
        content = snapshot.model_dump_json(indent=2)
        await atomic_write_async(self._path, content)

    def delete(self) -> None:
        self._path.unlink(missing_ok=True)


__all__ = [
    "MIGRATIONS",
    "SCHEMA_VERSION",
    "SessionSnapshot",
    "SessionStore",
    "decode_snapshot",
    "migrate_payload",
    "reconcile",
]
