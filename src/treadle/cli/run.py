"""The ``run`` command: drive the task queue until it is empty or bounded out."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
import tomllib
from pathlib import Path

import click
from pydantic import ValidationError
from rich.console import Console

from treadle.cli.render import EventPrinter, print_summary
from treadle.config import AgentSelectionConfig, TreadleConfig
from treadle.debug_log import export_logs_to_file, setup_logging
from treadle.errors import EngineStateError, TreadleError
from treadle.events import EnginePaused
from treadle.models import EngineStatus
from treadle.paths import get_data_dir, get_debug_log_path


async def _run(
    project_root: Path,
    config: TreadleConfig,
    *,
    resume: bool,
    restart: bool,
    force: bool,
    iterations: int | None,
    listen: bool,
    port: int | None,
    show_output: bool,
    console: Console,
) -> EngineStatus:
    from treadle.bootstrap import bootstrap_app

    async with bootstrap_app(project_root, config=config) as ctx:
        engine = ctx.engine
        ctx.bus.add_handler(EventPrinter(console, show_output=show_output))

        if resume:
            reset = await engine.resume_session(force=force, max_iterations=iterations)
            if reset:
                console.print(f"Reset to open: {', '.join(reset)}", style="yellow")
        elif restart:
            await engine.restart()

        if listen:
            token = await ctx.start_remote(port=port)
            address = ctx.remote_server.address if ctx.remote_server else None
            if address is not None:
                console.print(
                    f"Remote control on {address.host}:{address.port} (token: {token})",
                    style="cyan",
                    highlight=False,
                )

        loop = asyncio.get_running_loop()
        stop_requested = asyncio.Event()

        async def shutdown() -> None:
            if stop_requested.is_set():
                return
            stop_requested.set()
            console.print("Stopping after the current step...", style="yellow")
            if engine.state.open_iteration is not None:
                with contextlib.suppress(EngineStateError):
                    await engine.interrupt()
            await engine.stop()

        def on_signal() -> None:
            asyncio.ensure_future(shutdown())

        def on_paused(event: object) -> None:
            # Without a listener nothing can resume the run, so save and exit.
            if not listen and isinstance(event, EnginePaused):
                console.print("Run `treadle run --resume` to continue.", style="yellow")
                asyncio.ensure_future(shutdown())

        ctx.bus.add_handler(on_paused, EnginePaused.event_type)
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, on_signal)
        try:
            await engine.start()
            state = await engine.wait()
        finally:
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(sig)
        print_summary(console, state)
        return state.status


@click.command()
@click.option(
    "-C",
    "--project",
    "project_root",
    type=click.Path(file_okay=False, path_type=Path),
    default=Path.cwd,
    help="Project directory (defaults to the current directory)",
)
@click.option(
    "-c",
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Config file (defaults to .treadle/config.toml, then the user config)",
)
@click.option("--resume", is_flag=True, help="Resume the saved session")
@click.option("--restart", is_flag=True, help="Discard the saved session and start over")
@click.option("--force", is_flag=True, help="Take over a session locked by another instance")
@click.option(
    "-n",
    "--iterations",
    type=click.IntRange(min=0),
    default=None,
    help="Maximum iterations (0 = unbounded)",
)
@click.option("--agent", default=None, help="Primary agent id")
@click.option(
    "--fallback",
    "fallbacks",
    multiple=True,
    help="Fallback agent id (repeat to set order)",
)
@click.option("--listen", is_flag=True, help="Accept remote control connections")
@click.option("--port", type=int, default=None, help="Remote control port")
@click.option("--output", "show_output", is_flag=True, help="Stream agent output")
@click.option("-v", "--verbose", is_flag=True, help="Debug logging")
def run(
    project_root: Path,
    config_path: Path | None,
    resume: bool,
    restart: bool,
    force: bool,
    iterations: int | None,
    agent: str | None,
    fallbacks: tuple[str, ...],
    listen: bool,
    port: int | None,
    show_output: bool,
    verbose: bool,
) -> None:
    """Work through open tasks with the configured agents.

    \b
    Examples:
        treadle run
        treadle run -n 5 --agent claude --fallback gemini --fallback codex
        treadle run --resume --listen
    """
    if resume and restart:
        raise click.UsageError("--resume and --restart are mutually exclusive")

    setup_logging(logging.DEBUG if verbose else logging.WARNING, log_file=get_debug_log_path())
    console = Console()
    project_root = project_root.resolve()

    try:
        try:
            config = TreadleConfig.load(config_path, project_root=project_root)
        except (tomllib.TOMLDecodeError, ValidationError) as exc:
            raise click.ClickException(f"Invalid configuration: {exc}") from exc
        if iterations is not None and not resume:
            config.engine.max_iterations = iterations
        if agent is not None or fallbacks:
            selection = config.agent.model_dump()
            if agent is not None:
                selection["primary"] = agent
            if fallbacks:
                selection["fallback_agents"] = list(fallbacks)
            config.agent = AgentSelectionConfig.model_validate(selection)
        status = asyncio.run(
            _run(
                project_root,
                config,
                resume=resume,
                restart=restart,
                force=force,
                iterations=iterations,
                listen=listen,
                port=port,
                show_output=show_output,
                console=console,
            )
        )
    except TreadleError as exc:
        raise click.ClickException(str(exc)) from exc

    if status is EngineStatus.ERROR:
        export_path = get_data_dir() / "last-error.log"
        count = export_logs_to_file(export_path)
        console.print(f"Wrote {count} log entries to {export_path}", style="dim", highlight=False)
        raise SystemExit(1)


__all__ = ["run"]
