"""Project setup commands: write the project config, import a PRD and change agents."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import TYPE_CHECKING

import click

from treadle.atomic import atomic_write
from treadle.config import AgentSelectionConfig, TrackerConfig, TreadleConfig
from treadle.errors import TreadleError
from treadle.paths import get_project_config_path
from treadle.prd import load_prd, prd_to_tasks
from treadle.prompts import build_prd_prompt
from treadle.trackers.json_file import JsonFileTracker

if TYPE_CHECKING:
    from treadle.models import Task

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
@click.option("--agent", "primary", default="claude", show_default=True, help="Primary agent id")
@click.option("--fallback", "fallbacks", multiple=True, help="Fallback agent id (repeatable)")
@click.option(
    "--tracker",
    type=click.Choice(["json", "beads-rust"]),
    default="json",
    show_default=True,
)
@click.option("-n", "--iterations", type=click.IntRange(min=0), default=None)
@click.option("--overwrite", is_flag=True, help="Replace an existing project config")
@click.option(
    "--from-prd",
    "prd_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Seed the json task file from the user stories in a PRD",
)
def init(
    project_root: Path,
    primary: str,
    fallbacks: tuple[str, ...],
    tracker: str,
    iterations: int | None,
    overwrite: bool,
    prd_path: Path | None,
) -> None:
    """Write .treadle/config.toml for a project."""
    project_root = project_root.resolve()
    config_path = get_project_config_path(project_root)
    if config_path.exists() and not overwrite:
        raise click.ClickException(f"{config_path} already exists (use --overwrite)")
    if prd_path is not None and tracker != "json":
        raise click.UsageError("--from-prd requires the json tracker")
    prd_tasks = _load_prd_tasks(prd_path) if prd_path is not None else []

    config = TreadleConfig(
        agent=AgentSelectionConfig(primary=primary, fallback_agents=list(fallbacks)),
        tracker=TrackerConfig(plugin=tracker),  # type: ignore[arg-type]
    )
    if iterations is not None:
        config.engine.max_iterations = iterations
    asyncio.run(config.save(config_path))
    click.echo(f"Wrote {config_path}")

    if tracker == "json":
        tasks_path = project_root / config.tracker.path
        if prd_path is not None:
            _add_tasks(tasks_path, prd_tasks, prd_path, replace=False)
        elif not tasks_path.exists():
            atomic_write(tasks_path, json.dumps({"tasks": []}, indent=2) + "\n")
            click.echo(f"Created empty task file {tasks_path}")


@click.command()
@_project_option
@click.argument("primary", required=False)
@click.option("--fallback", "fallbacks", multiple=True, help="Fallback agent id (repeatable)")
@click.option("--no-fallback", is_flag=True, help="Clear the fallback list")
def use(
    project_root: Path,
    primary: str | None,
    fallbacks: tuple[str, ...],
    no_fallback: bool,
) -> None:
    """Change the primary and fallback agents in the project config.

    Comments and unrelated settings in the file are preserved.
    """
    if primary is None and not fallbacks and not no_fallback:
        raise click.UsageError("Nothing to change; pass PRIMARY, --fallback or --no-fallback")
    project_root = project_root.resolve()
    config_path = get_project_config_path(project_root)
    config = TreadleConfig.load(config_path if config_path.exists() else None)

    fallback_agents: list[str] | None = None
    if no_fallback:
        fallback_agents = []
    elif fallbacks:
        fallback_agents = list(fallbacks)
    asyncio.run(
        config.update_agent_selection(
            config_path, primary=primary, fallback_agents=fallback_agents
        )
    )
    chain = " -> ".join([config.agent.primary, *config.agent.fallback_agents])
    click.echo(f"Agents: {chain}")


def _load_prd_tasks(prd_path: Path) -> list[Task]:
    try:
        return prd_to_tasks(load_prd(prd_path))
    except TreadleError as exc:
        raise click.ClickException(str(exc)) from exc


def _add_tasks(tasks_path: Path, tasks: list[Task], source: Path, *, replace: bool) -> None:
    try:
        written = asyncio.run(JsonFileTracker(tasks_path).add_tasks(tasks, replace=replace))
    except TreadleError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Imported {len(written)} task(s) from {source.name} into {tasks_path}")
    if skipped := len(tasks) - len(written):
        click.echo(f"Skipped {skipped} task(s) already present (use --replace to overwrite)")


@click.group()
def prd() -> None:
    """Turn PRD markdown into tasks."""


@prd.command("import")
@_project_option
@click.argument("prd_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--replace", is_flag=True, help="Overwrite tasks whose ids already exist")
def import_prd(project_root: Path, prd_path: Path, replace: bool) -> None:
    """Add every `### US-NNN: Title` story in PRD_PATH to the json task file."""
    project_root = project_root.resolve()
    config_path = get_project_config_path(project_root)
    config = TreadleConfig.load(config_path if config_path.exists() else None)
    if config.tracker.plugin != "json":
        raise click.ClickException(
            f"PRD import writes to the json tracker; this project uses {config.tracker.plugin}"
        )
    tasks = _load_prd_tasks(prd_path)
    _add_tasks(project_root / config.tracker.path, tasks, prd_path, replace=replace)


@prd.command("prompt")
@click.option(
    "--skill",
    "skill_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Skill file whose instructions are included",
)
def prd_prompt(skill_path: Path | None) -> None:
    """Print a prompt asking an agent to draft a PRD in the importable format."""
    skill_source = skill_path.read_text(encoding="utf-8") if skill_path is not None else ""
    click.echo(build_prd_prompt(skill_source), nl=False)


__all__ = ["init", "prd", "use"]
