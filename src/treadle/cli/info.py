"""Read-only commands: saved session status and agent availability."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import TYPE_CHECKING

import click
from rich.console import Console
from rich.table import Table

from treadle.cli.render import print_summary
from treadle.config import TreadleConfig
from treadle.engine.session_store import SessionStore
from treadle.errors import SessionCorruptedError
from treadle.paths import get_session_path

if TYPE_CHECKING:
    from treadle.agents.base import AgentDetectResult

_project_option = click.option(
    "-C",
    "--project",
    "project_root",
    type=click.Path(file_okay=False, path_type=Path),
    default=Path.cwd,
    help="Project directory (defaults to the current directory)",
)


@click.command()
@_project_option
def status(project_root: Path) -> None:
    """Show the saved session of a project."""
    console = Console()
    store = SessionStore(get_session_path(project_root.resolve()))
    if not store.exists():
        console.print("No saved session.", style="dim")
        return
    try:
        snapshot = asyncio.run(store.load())
    except SessionCorruptedError as exc:
        raise click.ClickException(str(exc)) from exc

    state = snapshot.engine_state
    saved = f"{snapshot.saved_at:%Y-%m-%d %H:%M:%S}"
    console.print(f"Status: [bold]{state.status.value}[/]  saved {saved}")
    if state.active_agent is not None:
        console.print(
            f"Active agent: {state.active_agent.agent_id} ({state.active_agent.reason.value})",
            highlight=False,
        )
    if snapshot.tasks:
        table = Table(title="Tasks")
        table.add_column("ID")
        table.add_column("Title")
        table.add_column("Status")
        table.add_column("Priority", justify="right")
        for task in snapshot.tasks:
            table.add_row(task.id, task.title, task.status.value, str(task.priority))
        console.print(table)
    print_summary(console, state)


@click.command()
@_project_option
def agents(project_root: Path) -> None:
    """Detect which agent CLIs are installed."""
    from treadle.agents.registry import create_default_registry

    config = TreadleConfig.load(project_root=project_root.resolve())
    registry = create_default_registry(config)
    configured = [config.agent.primary, *config.agent.fallback_agents]

    async def detect_all() -> list[tuple[str, AgentDetectResult]]:
        results = await asyncio.gather(
            *(registry.get(agent_id).detect() for agent_id in registry.ids())
        )
        return list(zip(registry.ids(), results, strict=True))

    table = Table(title="Agents")
    table.add_column("ID")
    table.add_column("Role")
    table.add_column("Available")
    table.add_column("Version / error")
    for agent_id, result in asyncio.run(detect_all()):
        role = ""
        if agent_id == config.agent.primary:
            role = "primary"
        elif agent_id in configured:
            role = f"fallback {configured.index(agent_id)}"
        detail = result.version if result.available else result.error
        table.add_row(
            agent_id,
            role,
            "[green]yes[/]" if result.available else "[red]no[/]",
            detail or "",
        )
    Console().print(table)


__all__ = ["agents", "status"]
