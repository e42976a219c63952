"""Real subprocess tests for agent process execution."""

from __future__ import annotations

import signal
import sys
from typing import TYPE_CHECKING

import pytest

from treadle.agents.base import ExitRecord, OutputChunk
from treadle.agents.process import ProcessExecution
from treadle.errors import CommandError
from treadle.process import run_command

if TYPE_CHECKING:
    from pathlib import Path

pytestmark = [
    pytest.mark.integration,
    pytest.mark.skipif(sys.platform == "win32", reason="POSIX shell and signals"),
]


async def _collect(execution: ProcessExecution) -> tuple[str, str, ExitRecord]:
    stdout: list[str] = []
    stderr: list[str] = []
    exit_record: ExitRecord | None = None
    async for item in execution.stream():
        if isinstance(item, OutputChunk):
            (stdout if item.stream == "stdout" else stderr).append(item.text)
        else:
            exit_record = item
    assert exit_record is not None
    return "".join(stdout), "".join(stderr), exit_record


class TestProcessExecution:
    async def test_stdin_prompt_and_both_streams(self) -> None:
        execution = await ProcessExecution.spawn(
            ["sh", "-c", "cat; echo oops >&2; exit 3"],
            agent_id="shell",
            stdin_text="hello agent\n",
        )

        stdout, stderr, exit_record = await _collect(execution)

        assert stdout == "hello agent\n"
        assert stderr == "oops\n"
        assert exit_record == ExitRecord(code=3)
        assert exit_record.success is False
        assert execution.exit_record == exit_record

    async def test_multibyte_output_survives_chunking(self) -> None:
        execution = await ProcessExecution.spawn(
            ["sh", "-c", "printf 'caf\\303\\251 \\342\\234\\223\\n'"], agent_id="shell"
        )
        stdout, _, exit_record = await _collect(execution)
        assert stdout == "café ✓\n"
        assert exit_record.success is True

    async def test_interrupt_stops_long_running_process(self) -> None:
        execution = await ProcessExecution.spawn(["sleep", "30"], agent_id="sleeper")

        await execution.interrupt()
        exit_record = await execution.wait()

        assert exit_record.interrupted is True
        assert exit_record.code is None
        assert exit_record.signal == signal.SIGINT
        assert exit_record.success is False

    async def test_timeout_interrupts(self) -> None:
        execution = await ProcessExecution.spawn(
            ["sleep", "30"], agent_id="sleeper", timeout_seconds=0.2
        )

        exit_record = await execution.wait()

        assert exit_record.timed_out is True
        assert exit_record.interrupted is True

    async def test_stream_is_single_consumer(self) -> None:
        execution = await ProcessExecution.spawn(["true"], agent_id="noop")
        await execution.wait()

        with pytest.raises(RuntimeError, match="only be consumed once"):
            async for _ in execution.stream():
                pass

    async def test_interrupt_after_exit_is_noop(self) -> None:
        execution = await ProcessExecution.spawn(["true"], agent_id="noop")
        first = await execution.wait()

        await execution.interrupt()

        assert first.success is True
        assert execution.exit_record == first


class TestRunCommand:
    async def test_captures_both_streams(self) -> None:
        result = await run_command(["sh", "-c", "echo out; echo err >&2"])
        assert (result.returncode, result.stdout, result.stderr) == (0, "out\n", "err\n")
        assert result.output == "out"

    async def test_unchecked_failure_returns_result(self) -> None:
        result = await run_command(["sh", "-c", "echo nope >&2; exit 4"], check=False)
        assert result.returncode == 4
        assert result.output == "nope"

    async def test_checked_failure_raises(self) -> None:
        with pytest.raises(CommandError) as exc_info:
            await run_command(["sh", "-c", "echo broken >&2; exit 4"])

        assert exc_info.value.returncode == 4
        assert exc_info.value.detail == "broken"
        assert "exited with status 4" in str(exc_info.value)

    async def test_missing_executable(self, tmp_path: Path) -> None:
        with pytest.raises(CommandError, match="not found"):
            await run_command([str(tmp_path / "no-such-tool"), "--version"])

    async def test_timeout_kills_command(self) -> None:
        with pytest.raises(CommandError, match="timed out after 0.2s"):
            await run_command(["sleep", "30"], timeout=0.2)

    async def test_working_directory(self, tmp_path: Path) -> None:
        result = await run_command(["pwd"], cwd=tmp_path)
        assert result.output == str(tmp_path.resolve())
