"""Agent process management over asyncio subprocess pipes."""

from __future__ import annotations

import asyncio
import codecs
import contextlib
import logging
import signal
from typing import TYPE_CHECKING

import psutil

from treadle.agents.base import ExitRecord, OutputChunk
from treadle.limits import (
    INTERRUPT_GRACE_SECONDS,
    KILL_GRACE_SECONDS,
    OUTPUT_CHANNEL_SIZE,
    OUTPUT_READ_CHUNK,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Mapping, Sequence
    from pathlib import Path

    from treadle.agents.base import StreamItem, StreamName

logger = logging.getLogger(__name__)


class ProcessExecution:
    """One running agent CLI process.

    stdout and stderr are decoded incrementally and pushed, in arrival order,
    into a bounded channel followed by a single ``ExitRecord``. A slow consumer
    applies backpressure to the pipe readers instead of growing memory.
    """

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        *,
        agent_id: str,
        stdin_text: str | None = None,
        timeout_seconds: float | None = None,
        channel_size: int = OUTPUT_CHANNEL_SIZE,
    ) -> None:
        self.agent_id = agent_id
        self._process = process
        self._channel: asyncio.Queue[StreamItem] = asyncio.Queue(maxsize=channel_size)
        self._exit: ExitRecord | None = None
        self._exit_event = asyncio.Event()
        self._interrupted = False
        self._timed_out = False
        self._stream_claimed = False
        self._stdin_text = stdin_text
        self._pump_task = asyncio.create_task(self._pump())
        self._watchdog: asyncio.Task[None] | None = None
        if timeout_seconds is not None and timeout_seconds > 0:
            self._watchdog = asyncio.create_task(self._watch(timeout_seconds))

    @classmethod
    async def spawn(
        cls,
        argv: Sequence[str],
        *,
        agent_id: str,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        stdin_text: str | None = None,
        timeout_seconds: float | None = None,
    ) -> ProcessExecution:
        process = await asyncio.create_subprocess_exec(
            *argv,
            cwd=str(cwd) if cwd is not None else None,
            env=dict(env) if env is not None else None,
            stdin=asyncio.subprocess.PIPE if stdin_text is not None else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
        )
        logger.debug("Spawned agent %s (pid=%s)", agent_id, process.pid)
        return cls(
            process,
            agent_id=agent_id,
            stdin_text=stdin_text,
            timeout_seconds=timeout_seconds,
        )

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def exit_record(self) -> ExitRecord | None:
        return self._exit

    async def _feed_stdin(self) -> None:
        stdin = self._process.stdin
        if stdin is None or self._stdin_text is None:
            return
        # The agent may exit before reading its prompt.
        with contextlib.suppress(BrokenPipeError, ConnectionResetError):
            stdin.write(self._stdin_text.encode("utf-8"))
            await stdin.drain()
        with contextlib.suppress(BrokenPipeError, ConnectionResetError):
            stdin.close()

    async def _read(self, reader: asyncio.StreamReader | None, stream: StreamName) -> None:
        if reader is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            data = await reader.read(OUTPUT_READ_CHUNK)
            text = decoder.decode(data, final=not data)
            if text:
                await self._channel.put(OutputChunk(stream=stream, text=text))
            if not data:
                return

    async def _pump(self) -> None:
        await asyncio.gather(
            self._feed_stdin(),
            self._read(self._process.stdout, "stdout"),
            self._read(self._process.stderr, "stderr"),
        )
        returncode = await self._process.wait()
        if self._watchdog is not None:
            self._watchdog.cancel()
        record = ExitRecord(
            code=returncode if returncode >= 0 else None,
            signal=-returncode if returncode < 0 else None,
            interrupted=self._interrupted,
            timed_out=self._timed_out,
        )
        self._exit = record
        self._exit_event.set()
        await self._channel.put(record)

    async def _watch(self, timeout_seconds: float) -> None:
        await asyncio.sleep(timeout_seconds)
        logger.warning("Agent %s exceeded %.0fs timeout", self.agent_id, timeout_seconds)
        self._timed_out = True
        await self.interrupt()

    async def stream(self) -> AsyncIterator[StreamItem]:
        """Yield output chunks, then the exit record. Single consumer."""
        if self._stream_claimed:
            raise RuntimeError("Agent output stream can only be consumed once")
        self._stream_claimed = True
        while True:
            item = await self._channel.get()
            yield item
            if isinstance(item, ExitRecord):
                return

    async def wait(self) -> ExitRecord:
        if not self._stream_claimed:
            async for _ in self.stream():
                pass
        await self._exit_event.wait()
        assert self._exit is not None
        return self._exit

    def _signal_tree(self, sig: signal.Signals) -> None:
        try:
            parent = psutil.Process(self._process.pid)
            children = parent.children(recursive=True)
        except psutil.NoSuchProcess:
            return
        for proc in (parent, *children):
            with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
                proc.send_signal(sig)

    async def _exited_within(self, seconds: float) -> bool:
        try:
            await asyncio.wait_for(asyncio.shield(self._process.wait()), timeout=seconds)
        except TimeoutError:
            return False
        return True

    async def interrupt(self) -> None:
        if self._process.returncode is not None:
            return
        self._interrupted = True
        for sig, grace in (
            (signal.SIGINT, INTERRUPT_GRACE_SECONDS),
            (signal.SIGTERM, KILL_GRACE_SECONDS),
        ):
            self._signal_tree(sig)
            if await self._exited_within(grace):
                return
        logger.warning("Agent %s ignored SIGINT/SIGTERM, killing", self.agent_id)
        self._signal_tree(signal.SIGKILL)
        await self._exited_within(KILL_GRACE_SECONDS)


__all__ = ["ProcessExecution"]
