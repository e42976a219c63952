"""Append every engine event to a JSON-lines file."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from typing import TYPE_CHECKING

import aiofiles

from treadle.event_bus import SubscriptionClosed
from treadle.events import event_to_dict

if TYPE_CHECKING:
    from pathlib import Path

    from treadle.events import EventBus, EventSubscription

logger = logging.getLogger(__name__)


class EventLogWriter:
    """Bus subscriber that writes ``events.jsonl`` without blocking the engine."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._subscription: EventSubscription | None = None
        self._task: asyncio.Task[None] | None = None

    @property
    def path(self) -> Path:
        return self._path

    def start(self, bus: EventBus) -> None:
        if self._task is not None:
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._subscription = bus.subscribe()
        self._task = asyncio.create_task(self._run(self._subscription))

    async def _run(self, subscription: EventSubscription) -> None:
        async with aiofiles.open(self._path, "a", encoding="utf-8") as f:
            while True:
                try:
                    event = await subscription.get()
                except SubscriptionClosed:
                    return
                await f.write(json.dumps(event_to_dict(event)) + "\n")
                await f.flush()

    async def stop(self) -> None:
        """Flush queued events and stop writing."""
        if self._subscription is None or self._task is None:
            return
        self._subscription.close()
        try:
            await asyncio.wait_for(self._task, timeout=5.0)
        except TimeoutError:
            logger.warning("Event log writer did not drain in time")
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        self._task = None
        self._subscription = None


__all__ = ["EventLogWriter"]
