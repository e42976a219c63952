"""Newline-delimited JSON remote control server over TCP."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from treadle.config import DEFAULT_REMOTE_PORT
from treadle.limits import MAX_LINE_BYTES, REMOTE_EVENT_QUEUE_SIZE
from treadle.remote.contracts import ErrorMessage
from treadle.remote.handler import RemoteSession

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from treadle.engine.controller import ExecutionEngine
    from treadle.remote.contracts import RemoteMessage

logger = logging.getLogger(__name__)

STREAM_LIMIT_BYTES = MAX_LINE_BYTES + 1


@dataclass(frozen=True)
class ServerAddress:
    host: str
    port: int


class _Connection:
    """Serializes writes from the request loop and the event forwarder."""

    def __init__(self, writer: asyncio.StreamWriter) -> None:
        self._writer = writer
        self._lock = asyncio.Lock()

    async def send(self, message: RemoteMessage) -> None:
        async with self._lock:
            if self._writer.is_closing():
                raise ConnectionError("Connection closed")
            self._writer.write(message.to_line())
            await self._writer.drain()


class RemoteServer:
    """Accepts remote clients and hands each connection a ``RemoteSession``.

    Usage::

        server = RemoteServer(engine, token=token)
        address = await server.start()
        ...
        await server.stop()
    """

    def __init__(
        self,
        engine: ExecutionEngine,
        *,
        token: str,
        host: str = "127.0.0.1",
        port: int = DEFAULT_REMOTE_PORT,
        event_queue_size: int = REMOTE_EVENT_QUEUE_SIZE,
    ) -> None:
        self._engine = engine
        self._token = token
        self._host = host
        self._port = port
        self._event_queue_size = event_queue_size
        self._server: asyncio.Server | None = None
        self._address: ServerAddress | None = None
        self._clients: set[asyncio.Task[None]] = set()

    @property
    def is_running(self) -> bool:
        return self._server is not None

    @property
    def address(self) -> ServerAddress | None:
        return self._address

    @property
    def client_count(self) -> int:
        return len(self._clients)

    async def start(self) -> ServerAddress:
        if self._server is not None:
            msg = "Server is already running"
            raise RuntimeError(msg)
        self._server = await asyncio.start_server(
            self._client_connected, self._host, self._port, limit=STREAM_LIMIT_BYTES
        )
        sockname = self._server.sockets[0].getsockname()
        self._address = ServerAddress(host=sockname[0], port=sockname[1])
        logger.info("Remote server listening on %s:%d", self._address.host, self._address.port)
        return self._address

    async def stop(self) -> None:
        if self._server is None:
            return
        self._server.close()
        for task in list(self._clients):
            task.cancel()
        if self._clients:
            await asyncio.gather(*self._clients, return_exceptions=True)
        await self._server.wait_closed()
        self._server = None
        self._address = None
        logger.info("Remote server stopped")

    async def _client_connected(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        task = asyncio.current_task()
        if task is not None:
            self._clients.add(task)
        peer = writer.get_extra_info("peername", "unknown")
        client_id = f"{peer[0]}:{peer[1]}" if isinstance(peer, tuple) else str(peer)
        logger.info("Remote client %s connected", client_id)
        connection = _Connection(writer)
        session = RemoteSession(
            self._engine,
            self._token,
            connection.send,
            client_id=client_id,
            event_queue_size=self._event_queue_size,
        )
        try:
            async for line in _request_lines(reader, client_id):
                await self._dispatch(line, session, connection)
        except (ConnectionError, OSError):
            logger.debug("Remote client %s dropped the connection", client_id)
        finally:
            await session.close()
            if task is not None:
                self._clients.discard(task)
            with contextlib.suppress(ConnectionError, OSError):
                writer.close()
                await writer.wait_closed()
            logger.info("Remote client %s disconnected", client_id)

    @staticmethod
    async def _dispatch(line: str, session: RemoteSession, connection: _Connection) -> None:
        try:
            data = json.loads(line)
        except json.JSONDecodeError:
            await connection.send(
                ErrorMessage(id="unknown", code="PARSE_ERROR", message="Invalid JSON")
            )
            return
        await session.handle(data)


async def _request_lines(reader: asyncio.StreamReader, client_id: str) -> AsyncIterator[str]:
    """Yield non-blank request lines until EOF or an oversized line ends the connection."""
    while True:
        try:
            raw = await reader.readline()
        except ValueError:
            raw = None
        if raw is None or len(raw) > MAX_LINE_BYTES:
            logger.warning("Remote client %s sent a line over %d bytes", client_id, MAX_LINE_BYTES)
            return
        if not raw:
            return
        line = raw.decode("utf-8", errors="replace").strip()
        if line:
            yield line


__all__ = ["RemoteServer", "ServerAddress"]
