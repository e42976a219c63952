"""Generic command line agent adapter."""

from __future__ import annotations

import json
import logging
import os
import re
import shutil
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Literal

from treadle.agents.base import AgentDetectResult, ExecuteOptions
from treadle.agents.process import ProcessExecution
from treadle.errors import CommandError
from treadle.limits import AGENT_DETECT_TIMEOUT
from treadle.process import run_command

if TYPE_CHECKING:
    from collections.abc import Callable

    from treadle.agents.base import OutputFormatter
    from treadle.config import AgentSettings

logger = logging.getLogger(__name__)

_VERSION_RE = re.compile(r"(\d+\.\d+\.\d+)")

type PromptMode = Literal["stdin", "arg"]


def _error_code_from_payload(payload: object) -> str | None:
    match payload:
        case {"error": {"type": str() as code}}:
            return code
        case {"error": {"code": str() as code}}:
            return code
        case {"error": {"status": str() as code}}:
            return code
        case {"type": "error", "code": str() as code}:
            return code
        case {"type": "error", "error_type": str() as code}:
            return code
        case _:
            return None


def json_lines_error_code(stdout: str) -> str | None:
    """Return the last structured error code found in JSON-lines output."""
    found: str | None = None
    for line in stdout.splitlines():
        line = line.strip()
        if not line.startswith("{"):
            continue
        try:
            payload = json.loads(line)
        except json.JSONDecodeError:
            continue
        code = _error_code_from_payload(payload)
        if code is not None:
            found = code
    return found


@dataclass(frozen=True, slots=True, kw_only=True)
class CliAgentSpec:
    """Static description of a CLI agent."""

    id: str
    name: str
    command: str
    install_hint: str
    base_args: tuple[str, ...] = ()
    prompt_mode: PromptMode = "stdin"
    prompt_flag: str | None = None
    model_flag: str | None = "--model"
    patterns: tuple[str, ...] = ()
    exit_codes: frozenset[int] = frozenset()
    error_code_parser: Callable[[str], str | None] = field(default=json_lines_error_code)
    output_formatter: Callable[[], OutputFormatter] | None = None


class CliAgent:
    """Agent that runs a command line tool once per invocation."""

    def __init__(self, spec: CliAgentSpec, settings: AgentSettings | None = None) -> None:
        self._spec = spec
        self._command = (settings.command if settings and settings.command else None) or (
            spec.command
        )
        self._extra_args = tuple(settings.args) if settings else ()
        self._model = settings.model if settings else None
        self._env = dict(settings.env) if settings else {}
        self._timeout = settings.timeout_seconds if settings else None
        self._executable: str | None = None

    @property
    def id(self) -> str:
        return self._spec.id

    @property
    def name(self) -> str:
        return self._spec.name

    @property
    def rate_limit_exit_codes(self) -> frozenset[int]:
        return self._spec.exit_codes

    def rate_limit_patterns(self) -> list[str]:
        return list(self._spec.patterns)

    def structured_error_code(self, stdout: str) -> str | None:
        return self._spec.error_code_parser(stdout)

    async def detect(self) -> AgentDetectResult:
        executable = shutil.which(self._command)
        if executable is None:
            return AgentDetectResult(
                available=False,
                error=(
                    f"{self._spec.name} not found in PATH. "
                    f"Install with: {self._spec.install_hint}"
                ),
            )
        self._executable = executable
        try:
            result = await run_command([executable, "--version"], timeout=AGENT_DETECT_TIMEOUT)
        except CommandError as exc:
            return AgentDetectResult(available=False, executable_path=executable, error=str(exc))
        match = _VERSION_RE.search(result.output)
        return AgentDetectResult(
            available=True,
            version=match.group(1) if match else None,
            executable_path=executable,
        )

    def build_args(self, prompt: str, options: ExecuteOptions) -> list[str]:
        """Build the argv for one invocation, executable first."""
        args = [self._executable or self._command, *self._spec.base_args]
        model = options.model or self._model
        if model and self._spec.model_flag:
            args.extend([self._spec.model_flag, model])
        args.extend(self._extra_args)
        args.extend(options.extra_args)
        if self._spec.prompt_mode == "arg":
            if self._spec.prompt_flag:
                args.append(self._spec.prompt_flag)
            args.append(prompt)
        return args

    async def execute(self, prompt: str, options: ExecuteOptions) -> ProcessExecution:
        argv = self.build_args(prompt, options)
        env = {**os.environ, **self._env, **(options.env or {})}
        logger.info("Starting %s: %s", self.id, argv[0])
        return await ProcessExecution.spawn(
            argv,
            agent_id=self.id,
            cwd=options.cwd,
            env=env,
            stdin_text=prompt if self._spec.prompt_mode == "stdin" else None,
            timeout_seconds=options.timeout_seconds or self._timeout,
        )


__all__ = ["CliAgent", "CliAgentSpec", "PromptMode", "json_lines_error_code"]
