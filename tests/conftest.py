"""Pytest fixtures for treadle tests."""

from __future__ import annotations

import asyncio
import contextlib
import os
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING

import pytest
from hypothesis import Phase, Verbosity, settings

from treadle.config import (
    AgentSelectionConfig,
    EngineConfig,
    ErrorHandlingConfig,
    RateLimitConfig,
    TreadleConfig,
)
from treadle.errors import EngineStateError

_TEST_BASE_DIR = Path(tempfile.mkdtemp(prefix="treadle-tests-"))
os.environ["TREADLE_DATA_DIR"] = str(_TEST_BASE_DIR / "data")
os.environ["TREADLE_CONFIG_DIR"] = str(_TEST_BASE_DIR / "config")
os.environ["TREADLE_STATE_DIR"] = str(_TEST_BASE_DIR / "state")

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator, Callable

    from treadle.engine import ExecutionEngine
    from treadle.event_bus import InMemoryEventBus
    from treadle.trackers.base import TrackerPlugin
    from tests.helpers.fakes import FakeAgent, RecordingSleep


settings.register_profile(
    "ci",
    max_examples=100,
    deadline=None,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
)
settings.register_profile(
    "dev",
    max_examples=20,
    deadline=500,
)
settings.register_profile(
    "debug",
    max_examples=10,
    verbosity=Verbosity.verbose,
    deadline=None,
)
settings.load_profile(os.getenv("HYPOTHESIS_PROFILE", "dev"))


def make_config(
    *,
    primary: str = "primary",
    fallbacks: tuple[str, ...] = ("backup",),
    max_iterations: int = 10,
    strategy: str = "skip",
    error_retries: int = 3,
    error_retry_delay_ms: int = 1000,
    rate_limit_retries: int = 3,
    recover_primary: bool = True,
) -> TreadleConfig:
    """Engine config with two fake agents and deterministic delays."""
    return TreadleConfig(
        engine=EngineConfig(max_iterations=max_iterations),
        error_handling=ErrorHandlingConfig(
            strategy=strategy,  # type: ignore[arg-type]
            max_retries=error_retries,
            retry_delay_ms=error_retry_delay_ms,
        ),
        rate_limit=RateLimitConfig(
            max_retries=rate_limit_retries,
            recover_primary_between_iterations=recover_primary,
        ),
        agent=AgentSelectionConfig(primary=primary, fallback_agents=list(fallbacks)),
    )


@pytest.fixture
def config_factory() -> Callable[..., TreadleConfig]:
    return make_config


@pytest.fixture
def event_bus() -> InMemoryEventBus:
    """Create an in-memory event bus for engine tests."""
    from treadle.event_bus import InMemoryEventBus

    return InMemoryEventBus()


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    from tests.helpers.fakes import RecordingSleep

    return RecordingSleep()


@pytest.fixture
async def engine_factory(
    tmp_path: Path,
    event_bus: InMemoryEventBus,
    recording_sleep: RecordingSleep,
) -> AsyncGenerator[Callable[..., ExecutionEngine], None]:
    """Build engines over fake agents and trackers; stops them on teardown."""
    from treadle.agents.registry import AgentRegistry
    from treadle.engine import ExecutionEngine, SessionStore
    from treadle.paths import get_session_path
    from treadle.session_lock import SessionLock

    created: list[ExecutionEngine] = []

    def _factory(
        tracker: TrackerPlugin,
        agents: list[FakeAgent],
        *,
        config: TreadleConfig | None = None,
        sleep: Callable[[float], object] | None = None,
    ) -> ExecutionEngine:
        registry = AgentRegistry()
        for agent in agents:
            registry.register(agent)
        engine = ExecutionEngine(
            project_root=tmp_path,
            config=config or make_config(),
            tracker=tracker,
            agents=registry,
            store=SessionStore(get_session_path(tmp_path)),
            bus=event_bus,
            lock=SessionLock(tmp_path, locks_dir=tmp_path / "locks"),
            sleep=sleep or recording_sleep,  # type: ignore[arg-type]
        )
        created.append(engine)
        return engine

    yield _factory

    for engine in created:
        if engine.state.open_iteration is not None:
            with contextlib.suppress(EngineStateError):
                await engine.interrupt()
        await asyncio.wait_for(engine.stop(), timeout=5.0)
