"""Fan agent output out to independent consumers."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Protocol

from treadle.agents.base import ExitRecord, OutputChunk
from treadle.limits import OUTPUT_CHANNEL_SIZE

if TYPE_CHECKING:
    from collections.abc import Sequence

    from treadle.agents.base import AgentExecution
    from treadle.engine.completion import CompletionScanner


class OutputConsumer(Protocol):
    async def consume(self, chunk: OutputChunk) -> None: ...


class TailBuffer:
    """Keeps the last ``limit`` characters written to it."""

    def __init__(self, limit: int) -> None:
        self._limit = limit
        self._parts: list[str] = []
        self._size = 0

    def append(self, text: str) -> None:
        if self._limit <= 0 or not text:
            return
        self._parts.append(text)
        self._size += len(text)
        if self._size > 2 * self._limit:
            joined = "".join(self._parts)[-self._limit :]
            self._parts = [joined]
            self._size = len(joined)

    @property
    def text(self) -> str:
        return "".join(self._parts)[-self._limit :] if self._limit > 0 else ""


class CompletionObserver:
    """Feeds stdout into the completion scanner."""

    def __init__(self, scanner: CompletionScanner) -> None:
        self.scanner = scanner

    async def consume(self, chunk: OutputChunk) -> None:
        if chunk.stream == "stdout":
            self.scanner.feed(chunk.text)


class RateLimitObserver:
    """Collects output tails for rate-limit classification after exit."""

    def __init__(self, stdout_limit: int, stderr_limit: int) -> None:
        self.stdout = TailBuffer(stdout_limit)
        self.stderr = TailBuffer(stderr_limit)

    async def consume(self, chunk: OutputChunk) -> None:
        (self.stdout if chunk.stream == "stdout" else self.stderr).append(chunk.text)


class OutputFanout:
    """Reads one execution stream and hands every chunk to each consumer's own queue."""

    def __init__(
        self,
        execution: AgentExecution,
        consumers: Sequence[OutputConsumer],
        *,
        maxsize: int = OUTPUT_CHANNEL_SIZE,
    ) -> None:
        self._execution = execution
        self._consumers = list(consumers)
        self._maxsize = maxsize

    @staticmethod
    async def _drain(queue: asyncio.Queue[OutputChunk | None], consumer: OutputConsumer) -> None:
        while (chunk := await queue.get()) is not None:
            await consumer.consume(chunk)

    async def run(self) -> ExitRecord:
        queues: list[asyncio.Queue[OutputChunk | None]] = [
            asyncio.Queue(maxsize=self._maxsize) for _ in self._consumers
        ]
        workers = [
            asyncio.create_task(self._drain(queue, consumer))
            for queue, consumer in zip(queues, self._consumers, strict=True)
        ]
        exit_record: ExitRecord | None = None
        try:
            async for item in self._execution.stream():
                if isinstance(item, ExitRecord):
                    exit_record = item
                    break
                for queue in queues:
                    await queue.put(item)
            for queue in queues:
                await queue.put(None)
            await asyncio.gather(*workers)
        finally:
            for worker in workers:
                if not worker.done():
                    worker.cancel()
        if exit_record is None:
            exit_record = await self._execution.wait()
        return exit_record


__all__ = [
    "CompletionObserver",
    "OutputConsumer",
    "OutputFanout",
    "RateLimitObserver",
    "TailBuffer",
]
