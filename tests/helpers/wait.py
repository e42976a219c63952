"""Polling helpers for engine tests; every timeout stretches on CI."""

from __future__ import annotations

import asyncio
import os
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Callable

    from treadle.engine import ExecutionEngine
    from treadle.models import EngineState, EngineStatus

TIMEOUT_SCALE = 5.0 if os.environ.get("CI") else 1.0
POLL_INTERVAL = 0.01


async def wait_until(
    predicate: Callable[[], bool],
    *,
    timeout: float = 5.0,
    description: str = "condition",
) -> None:
    """Poll ``predicate`` until it holds or raise ``TimeoutError``."""
    budget = timeout * TIMEOUT_SCALE
    try:
        async with asyncio.timeout(budget):
            while not predicate():
                await asyncio.sleep(POLL_INTERVAL)
    except TimeoutError:
        raise TimeoutError(f"{description} not reached within {budget:g}s") from None


async def wait_for_status(
    engine: ExecutionEngine, status: EngineStatus, *, timeout: float = 5.0
) -> None:
    await wait_until(
        lambda: engine.state.status is status,
        timeout=timeout,
        description=f"engine status {status} (currently {engine.state.status})",
    )


async def run_to_end(engine: ExecutionEngine, *, timeout: float = 5.0) -> EngineState:
    """Start ``engine`` and return its state once the loop exits."""
    await engine.start()
    return await asyncio.wait_for(engine.wait(), timeout=timeout * TIMEOUT_SCALE)
