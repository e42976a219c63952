"""Engine bootstrap and dependency wiring.

``AppContext`` holds the engine and everything it was built from, so the CLI
and tests share one construction path.

Usage:
    async with bootstrap_app(project_root) as ctx:
        await ctx.engine.start()
        await ctx.engine.wait()
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from treadle.agents.registry import create_default_registry
from treadle.config import TreadleConfig
from treadle.engine.controller import ExecutionEngine
from treadle.engine.event_log import EventLogWriter
from treadle.engine.session_store import SessionStore
from treadle.event_bus import InMemoryEventBus
from treadle.paths import get_event_log_path, get_session_path
from treadle.session_lock import SessionLock
from treadle.trackers.registry import create_tracker

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from treadle.agents.registry import AgentRegistry
    from treadle.remote.server import RemoteServer
    from treadle.trackers.base import TrackerPlugin


@dataclass
class AppContext:
    project_root: Path
    config: TreadleConfig
    bus: InMemoryEventBus
    agents: AgentRegistry
    tracker: TrackerPlugin
    store: SessionStore
    lock: SessionLock
    engine: ExecutionEngine
    event_log: EventLogWriter
    remote_server: RemoteServer | None = field(default=None)

    async def start_remote(self, *, host: str | None = None, port: int | None = None) -> str:
        """Start the remote listener; returns the shared token."""
        from treadle.remote.server import RemoteServer
        from treadle.remote.token import RemoteTokenStore

        token = RemoteTokenStore().load_or_create()
        self.remote_server = RemoteServer(
            self.engine,
            token=token.token,
            host=host or self.config.remote.host,
            port=self.config.remote.port if port is None else port,
            event_queue_size=self.config.remote.event_queue_size,
        )
        await self.remote_server.start()
        return token.token

    async def close(self) -> None:
        if self.remote_server is not None:
            await self.remote_server.stop()
            self.remote_server = None
        await self.engine.stop()
        await self.event_log.stop()
        self.lock.release()


def create_app_context(
    project_root: Path,
    *,
    config: TreadleConfig | None = None,
    config_path: Path | None = None,
) -> AppContext:
    """Create a fully wired AppContext (non-context-manager)."""
    project_root = project_root.resolve()
    if config is None:
        config = TreadleConfig.load(config_path, project_root=project_root)

    bus = InMemoryEventBus()
    agents = create_default_registry(config)
    tracker = create_tracker(config.tracker, project_root)
    store = SessionStore(get_session_path(project_root))
    lock = SessionLock(project_root)
    engine = ExecutionEngine(
        project_root=project_root,
        config=config,
        tracker=tracker,
        agents=agents,
        store=store,
        bus=bus,
        lock=lock,
    )
    event_log = EventLogWriter(get_event_log_path(project_root))
    event_log.start(bus)
    return AppContext(
        project_root=project_root,
        config=config,
        bus=bus,
        agents=agents,
        tracker=tracker,
        store=store,
        lock=lock,
        engine=engine,
        event_log=event_log,
    )


@asynccontextmanager
async def bootstrap_app(
    project_root: Path | None = None,
    *,
    config: TreadleConfig | None = None,
    config_path: Path | None = None,
) -> AsyncIterator[AppContext]:
    ctx = create_app_context(project_root or Path.cwd(), config=config, config_path=config_path)
    try:
        yield ctx
    finally:
        await ctx.close()


__all__ = ["AppContext", "bootstrap_app", "create_app_context"]
