"""Command line interface."""

from __future__ import annotations

import click

from treadle import __version__
from treadle.cli.info import agents, status
from treadle.cli.remote import remote
from treadle.cli.run import run
from treadle.cli.setup import init, prd, use


@click.group()
@click.version_option(__version__, prog_name="treadle")
def cli() -> None:
    """Run AI coding agents through a task queue, failing over on rate limits."""


cli.add_command(run)
cli.add_command(status)
cli.add_command(agents)
cli.add_command(remote)
cli.add_command(init)
cli.add_command(use)
cli.add_command(prd)

__all__ = ["cli"]
