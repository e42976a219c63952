"""Async client for a running treadle remote server."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from typing import TYPE_CHECKING, Any

from treadle.errors import TreadleError
from treadle.limits import MAX_LINE_BYTES
from treadle.remote.contracts import (
    AuthRequest,
    AuthResponse,
    CountRequest,
    EngineEventMessage,
    ErrorMessage,
    OperationResult,
    RemoteMessage,
    SimpleRequest,
    StateResponse,
    SubscribeRequest,
    TasksResponse,
    parse_server_message,
)
from treadle.remote.server import STREAM_LIMIT_BYTES

if TYPE_CHECKING:
    from collections.abc import Callable

    EventCallback = Callable[[dict[str, Any]], None]
    MessageCallback = Callable[[RemoteMessage], None]

logger = logging.getLogger(__name__)

_DEFAULT_TIMEOUT = 30.0


class RemoteAuthError(TreadleError):
    code = "AUTH_FAILED"


class RemoteRequestError(TreadleError):
    """The server answered a request with an ``error`` message."""

    def __init__(self, message: str, *, code: str) -> None:
        super().__init__(message, code=code)


class RemoteClient:
    """Correlates responses to requests by id and dispatches pushed events.

    Usage::

        async with RemoteClient("127.0.0.1", 7890, token=token) as client:
            state = await client.get_state()
            client.on_event(print)
            await client.subscribe()
    """

    def __init__(
        self,
        host: str,
        port: int,
        *,
        token: str,
        timeout: float = _DEFAULT_TIMEOUT,
    ) -> None:
        self._host = host
        self._port = port
        self._token = token
        self._timeout = timeout
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._pending: dict[str, asyncio.Future[RemoteMessage]] = {}
        self._event_callbacks: list[EventCallback] = []
        self._message_callbacks: list[MessageCallback] = []
        self._write_lock = asyncio.Lock()

    async def __aenter__(self) -> RemoteClient:
        await self.connect()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    @property
    def is_connected(self) -> bool:
        return (
            self._writer is not None
            and not self._writer.is_closing()
            and self._reader_task is not None
            and not self._reader_task.done()
        )

    def on_event(self, callback: EventCallback) -> None:
        """Register a callback for ``engine_event`` payloads."""
        self._event_callbacks.append(callback)

    def on_message(self, callback: MessageCallback) -> None:
        """Register a callback for uncorrelated messages other than events."""
        self._message_callbacks.append(callback)

    async def connect(self) -> None:
        """Open the connection and authenticate with the shared token."""
        if self.is_connected:
            return
        self._reader, self._writer = await asyncio.open_connection(
            self._host, self._port, limit=STREAM_LIMIT_BYTES
        )
        self._reader_task = asyncio.create_task(self._read_loop(self._reader))
        logger.debug("Remote client connected to %s:%d", self._host, self._port)
        response = await self.request(AuthRequest(token=self._token))
        if not isinstance(response, AuthResponse) or not response.success:
            error = getattr(response, "error", None) or "authentication rejected"
            await self.close()
            raise RemoteAuthError(f"Remote authentication failed: {error}")

    async def close(self) -> None:
        if self._reader_task is not None:
            self._reader_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._reader_task
            self._reader_task = None
        if self._writer is not None:
            with contextlib.suppress(ConnectionError, OSError):
                self._writer.close()
                await self._writer.wait_closed()
            self._writer = None
            self._reader = None
            logger.debug("Remote client disconnected")
        self._fail_pending(ConnectionError("Connection closed"))

    async def request(self, message: RemoteMessage) -> RemoteMessage:
        """Send ``message`` and wait for the response carrying the same id."""
        if not self.is_connected or self._writer is None:
            msg = "Client is not connected; call connect() first"
            raise ConnectionError(msg)
        future: asyncio.Future[RemoteMessage] = asyncio.get_running_loop().create_future()
        self._pending[message.id] = future
        try:
            async with self._write_lock:
                self._writer.write(message.to_line())
                await self._writer.drain()
            async with asyncio.timeout(self._timeout):
                return await future
        finally:
            self._pending.pop(message.id, None)

    async def _read_loop(self, reader: asyncio.StreamReader) -> None:
        try:
            while True:
                try:
                    raw = await reader.readline()
                except ValueError:
                    logger.warning("Remote message exceeded stream framing limit")
                    break
                if not raw:
                    break
                if len(raw) > MAX_LINE_BYTES:
                    logger.warning("Remote message exceeded max line size")
                    break
                self._dispatch(raw)
        except (ConnectionError, OSError) as exc:
            logger.debug("Remote connection lost: %s", exc)
        finally:
            self._fail_pending(ConnectionError("Connection closed by server"))

    def _dispatch(self, raw: bytes) -> None:
        try:
            message = parse_server_message(json.loads(raw))
        except (ValueError, TypeError) as exc:
            logger.warning("Ignoring malformed remote message: %s", exc)
            return

        if isinstance(message, EngineEventMessage):
            for callback in list(self._event_callbacks):
                try:
                    callback(message.event)
                except Exception:
                    logger.exception("Remote event callback failed")
            return

        future = self._pending.get(message.id)
        if future is not None and not future.done():
            future.set_result(message)
            return
        for callback in list(self._message_callbacks):
            try:
                callback(message)
            except Exception:
                logger.exception("Remote message callback failed")

    def _fail_pending(self, error: Exception) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(error)
        self._pending.clear()

    # ── Typed helpers ─────────────────────────────────────────────────

    async def _expect[T: RemoteMessage](self, message: RemoteMessage, kind: type[T]) -> T:
        response = await self.request(message)
        if isinstance(response, ErrorMessage):
            raise RemoteRequestError(response.message, code=response.code)
        if not isinstance(response, kind):
            msg = f"Unexpected response type {response.type!r} to {message.type!r}"
            raise ConnectionError(msg)
        return response

    async def _operation(self, message: RemoteMessage) -> OperationResult:
        return await self._expect(message, OperationResult)

    async def ping(self) -> None:
        await self.request(SimpleRequest(type="ping"))

    async def get_state(self) -> dict[str, Any]:
        return (await self._expect(SimpleRequest(type="get_state"), StateResponse)).state

    async def get_tasks(self) -> list[dict[str, Any]]:
        return (await self._expect(SimpleRequest(type="get_tasks"), TasksResponse)).tasks

    async def pause(self) -> OperationResult:
        return await self._operation(SimpleRequest(type="pause"))

    async def resume(self) -> OperationResult:
        return await self._operation(SimpleRequest(type="resume"))

    async def interrupt(self) -> OperationResult:
        return await self._operation(SimpleRequest(type="interrupt"))

    async def refresh_tasks(self) -> OperationResult:
        return await self._operation(SimpleRequest(type="refresh_tasks"))

    async def continue_execution(self) -> OperationResult:
        return await self._operation(SimpleRequest(type="continue"))

    async def add_iterations(self, count: int) -> OperationResult:
        return await self._operation(CountRequest(type="add_iterations", count=count))

    async def remove_iterations(self, count: int) -> OperationResult:
        return await self._operation(CountRequest(type="remove_iterations", count=count))

    async def subscribe(self, event_types: list[str] | None = None) -> OperationResult:
        return await self._operation(SubscribeRequest(event_types=event_types))

    async def unsubscribe(self) -> OperationResult:
        return await self._operation(SimpleRequest(type="unsubscribe"))


__all__ = ["RemoteAuthError", "RemoteClient", "RemoteRequestError"]
