"""``treadle remote``: token management and control of a listening engine."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any

import click
from rich.console import Console

from treadle.cli.render import EventPrinter
from treadle.config import DEFAULT_REMOTE_PORT
from treadle.errors import TreadleError
from treadle.remote.client import RemoteClient
from treadle.remote.token import RemoteTokenStore

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from treadle.remote.contracts import OperationResult


@click.group()
@click.option("--host", default="127.0.0.1", show_default=True, help="Engine host")
@click.option("--port", type=int, default=DEFAULT_REMOTE_PORT, show_default=True)
@click.option("--token", default=None, help="Shared token (defaults to the local remote.json)")
@click.pass_context
def remote(ctx: click.Context, host: str, port: int, token: str | None) -> None:
    """Control an engine started with ``treadle run --listen``."""
    ctx.obj = {"host": host, "port": port, "token": token}


def _client(ctx: click.Context) -> RemoteClient:
    options: dict[str, Any] = ctx.obj
    token = options["token"]
    if token is None:
        stored = RemoteTokenStore().load()
        if stored is None:
            raise click.ClickException("No remote token found; pass --token")
        token = stored.token
    return RemoteClient(options["host"], options["port"], token=token)


def _call(
    ctx: click.Context, action: Callable[[RemoteClient], Awaitable[OperationResult]]
) -> None:
    async def go() -> OperationResult:
        async with _client(ctx) as client:
            return await action(client)

    try:
        result = asyncio.run(go())
    except (TreadleError, ConnectionError, OSError, TimeoutError) as exc:
        raise click.ClickException(str(exc)) from exc
    if not result.success:
        raise click.ClickException(f"{result.operation} failed: {result.error}")
    suffix = f" ({result.data})" if result.data is not None else ""
    click.echo(f"{result.operation}: ok{suffix}")


@remote.command("token")
@click.option("--rotate", is_flag=True, help="Replace the token; connected clients must re-auth")
def token_cmd(rotate: bool) -> None:
    """Print the shared remote token, creating it if needed."""
    store = RemoteTokenStore()
    token = store.rotate() if rotate else store.load_or_create()
    click.echo(token.token)
    click.echo(
        f"version {token.token_version}, created {token.token_created_at:%Y-%m-%d %H:%M:%S}",
        err=True,
    )


@remote.command("state")
@click.pass_context
def state_cmd(ctx: click.Context) -> None:
    """Print the remote engine state."""

    async def go() -> dict[str, Any]:
        async with _client(ctx) as client:
            return await client.get_state()

    try:
        state = asyncio.run(go())
    except (TreadleError, ConnectionError, OSError, TimeoutError) as exc:
        raise click.ClickException(str(exc)) from exc
    console = Console()
    bound = state["max_iterations"] or "unbounded"
    console.print(
        f"{state['status']} ({state['phase']}): {state['tasks_completed']} task(s) completed, "
        f"{state['iterations_run']}/{bound} iteration(s), {state['open_tasks']} open",
        highlight=False,
    )
    if state.get("pause_reason"):
        console.print(f"Paused: {state['pause_reason']}", style="yellow", highlight=False)
    for line in state.get("recent_warnings", []):
        console.print(line, style="dim", highlight=False, markup=False)


@remote.command()
@click.pass_context
def pause(ctx: click.Context) -> None:
    """Pause after the current step."""
    _call(ctx, lambda client: client.pause())


@remote.command()
@click.pass_context
def resume(ctx: click.Context) -> None:
    """Resume a paused engine."""
    _call(ctx, lambda client: client.resume())


@remote.command()
@click.pass_context
def interrupt(ctx: click.Context) -> None:
    """Interrupt the running iteration."""
    _call(ctx, lambda client: client.interrupt())


@remote.command("continue")
@click.pass_context
def continue_cmd(ctx: click.Context) -> None:
    """Resume if paused, otherwise restart a stopped loop."""
    _call(ctx, lambda client: client.continue_execution())


@remote.command()
@click.pass_context
def refresh(ctx: click.Context) -> None:
    """Re-read tasks from the tracker."""
    _call(ctx, lambda client: client.refresh_tasks())


@remote.command("add")
@click.argument("count", type=click.IntRange(min=1))
@click.pass_context
def add_cmd(ctx: click.Context, count: int) -> None:
    """Raise the iteration bound by COUNT."""
    _call(ctx, lambda client: client.add_iterations(count))


@remote.command("remove")
@click.argument("count", type=click.IntRange(min=1))
@click.pass_context
def remove_cmd(ctx: click.Context, count: int) -> None:
    """Lower the iteration bound by COUNT."""
    _call(ctx, lambda client: client.remove_iterations(count))


@remote.command()
@click.option("--output", "show_output", is_flag=True, help="Include agent output")
@click.pass_context
def watch(ctx: click.Context, show_output: bool) -> None:
    """Stream engine events until interrupted."""
    printer = EventPrinter(Console(), show_output=show_output)

    async def go() -> None:
        async with _client(ctx) as client:
            client.on_event(printer.print_payload)
            await client.subscribe()
            while client.is_connected:
                await asyncio.sleep(0.5)

    try:
        asyncio.run(go())
    except KeyboardInterrupt:
        pass
    except (TreadleError, ConnectionError, OSError, TimeoutError) as exc:
        raise click.ClickException(str(exc)) from exc


__all__ = ["remote"]
