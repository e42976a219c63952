"""One-shot commands: agent ``--version`` probes and tracker CLI calls.

Long-running agent processes with streamed output live in
``treadle.agents.process``; this module only runs commands to completion.
"""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass
from typing import TYPE_CHECKING

from treadle.errors import CommandError

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence
    from pathlib import Path


@dataclass(frozen=True, slots=True)
class CommandResult:
    argv: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def output(self) -> str:
        """Trimmed stdout, falling back to stderr for tools that print there."""
        return self.stdout.strip() or self.stderr.strip()


def _decode(data: bytes | None) -> str:
    return (data or b"").decode("utf-8", errors="replace")


async def run_command(
    argv: Sequence[str],
    *,
    cwd: Path | None = None,
    env: Mapping[str, str] | None = None,
    timeout: float | None = None,
    check: bool = True,
) -> CommandResult:
    """Run ``argv`` to completion with stdin closed.

    Raises ``CommandError`` when the executable cannot be started or the
    timeout expires, and for a non-zero exit unless ``check`` is false.
    """
    command = tuple(argv)
    try:
        process = await asyncio.create_subprocess_exec(
            *command,
            cwd=str(cwd) if cwd is not None else None,
            env=dict(env) if env is not None else None,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as exc:
        raise CommandError(command, "not found", detail=str(exc)) from exc
    except OSError as exc:
        raise CommandError(command, "could not be started", detail=str(exc)) from exc

    try:
        async with asyncio.timeout(timeout):
            stdout, stderr = await process.communicate()
    except TimeoutError as exc:
        with contextlib.suppress(ProcessLookupError):
            process.kill()
        with contextlib.suppress(ProcessLookupError):
            await process.communicate()
        raise CommandError(command, f"timed out after {timeout:g}s") from exc

    result = CommandResult(
        argv=command,
        returncode=process.returncode if process.returncode is not None else -1,
        stdout=_decode(stdout),
        stderr=_decode(stderr),
    )
    if check and result.returncode != 0:
        raise CommandError(
            command,
            f"exited with status {result.returncode}",
            returncode=result.returncode,
            detail=result.output,
        )
    return result


__all__ = ["CommandResult", "run_command"]
