"""Agent adapter contracts.

Agents are capability sets selected from a registry by id; nothing here
requires inheritance. ``CliAgent`` is the stock implementation for agents that
run as a command line process.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Literal, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Mapping
    from pathlib import Path

type StreamName = Literal["stdout", "stderr"]


@dataclass(frozen=True, slots=True)
class OutputChunk:
    """Decoded piece of agent output."""

    stream: StreamName
    text: str


@dataclass(frozen=True, slots=True)
class ExitRecord:
    """Terminal record of an agent process, always the last item on a stream."""

    code: int | None
    signal: int | None = None
    interrupted: bool = False
    timed_out: bool = False

    @property
    def success(self) -> bool:
        return self.code == 0 and not self.interrupted


type StreamItem = OutputChunk | ExitRecord


@dataclass(frozen=True, slots=True)
class AgentDetectResult:
    available: bool
    version: str | None = None
    executable_path: str | None = None
    error: str | None = None


@dataclass(frozen=True, slots=True, kw_only=True)
class ExecuteOptions:
    """Per-invocation options passed to ``AgentPlugin.execute``."""

    cwd: Path | None = None
    env: Mapping[str, str] | None = None
    timeout_seconds: float | None = None
    model: str | None = None
    extra_args: tuple[str, ...] = field(default_factory=tuple)


@runtime_checkable
class AgentExecution(Protocol):
    """Handle to one running agent process."""

    def stream(self) -> AsyncIterator[StreamItem]:
        """Yield output chunks in arrival order, then exactly one ``ExitRecord``."""
        ...

    async def wait(self) -> ExitRecord:
        """Wait for exit, draining any output nobody consumed."""
        ...

    async def interrupt(self) -> None:
        """Ask the process to stop: SIGINT, then SIGTERM, then SIGKILL."""
        ...


@runtime_checkable
class AgentPlugin(Protocol):
    """Contract every agent adapter satisfies."""

    @property
    def id(self) -> str: ...

    @property
    def rate_limit_exit_codes(self) -> frozenset[int]:
        """Exit codes that by themselves signal throttling."""
        ...

    async def detect(self) -> AgentDetectResult: ...

    async def execute(self, prompt: str, options: ExecuteOptions) -> AgentExecution: ...

    def rate_limit_patterns(self) -> list[str]:
        """Ordered regexes matched case-insensitively against agent output."""
        ...

    def structured_error_code(self, stdout: str) -> str | None:
        """Machine-readable error code from structured output, if the agent emits one."""
        ...


class OutputFormatter(Protocol):
    """Turns an agent's structured stdout into display lines, chunk by chunk."""

    def feed(self, chunk: str) -> list[str]: ...

    def flush(self) -> list[str]: ...


__all__ = [
    "AgentDetectResult",
    "AgentExecution",
    "AgentPlugin",
    "ExecuteOptions",
    "ExitRecord",
    "OutputChunk",
    "OutputFormatter",
    "StreamItem",
    "StreamName",
]
