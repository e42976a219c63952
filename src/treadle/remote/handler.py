"""Per-connection request dispatch for the remote control protocol.

``RemoteSession`` knows nothing about sockets: it receives decoded JSON
objects and hands every outgoing message to an async ``send`` callable, so the
TCP server and tests drive it the same way.
"""

from __future__ import annotations

import asyncio
import contextlib
import hmac
import logging
from typing import TYPE_CHECKING, Any

from treadle.debug_log import format_entry, recent_entries
from treadle.errors import TreadleError
from treadle.event_bus import SubscriptionClosed
from treadle.events import event_to_dict
from treadle.limits import REMOTE_EVENT_QUEUE_SIZE
from treadle.models import TaskStatus
from treadle.remote.contracts import (
    AuthRequest,
    AuthResponse,
    CountRequest,
    EngineEventMessage,
    ErrorMessage,
    OperationResult,
    Pong,
    RequestParseError,
    SimpleRequest,
    StateResponse,
    SubscribeRequest,
    TasksResponse,
    parse_request,
)

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from treadle.engine.controller import ExecutionEngine
    from treadle.events import EventSubscription
    from treadle.remote.contracts import RemoteMessage

    SendFn = Callable[[RemoteMessage], Awaitable[None]]

logger = logging.getLogger(__name__)


def serialize_state(engine: ExecutionEngine) -> dict[str, Any]:
    state = engine.state
    tasks = engine.tasks
    payload = state.model_dump(mode="json")
    payload.update(
        phase=engine.phase.value,
        iterations_run=state.iterations_run,
        tasks_completed=state.tasks_completed,
        total_tasks=len(tasks),
        open_tasks=sum(1 for task in tasks if task.status is TaskStatus.OPEN),
        tasks=[task.model_dump(mode="json") for task in tasks],
        recent_warnings=[
            format_entry(entry) for entry in recent_entries(20, min_level=logging.WARNING)
        ],
    )
    return payload


class RemoteSession:
    """One authenticated (or not yet authenticated) remote client."""

    def __init__(
        self,
        engine: ExecutionEngine,
        token: str,
        send: SendFn,
        *,
        client_id: str = "unknown",
        event_queue_size: int = REMOTE_EVENT_QUEUE_SIZE,
    ) -> None:
        self._engine = engine
        self._token = token
        self._send = send
        self._client_id = client_id
        self._event_queue_size = event_queue_size
        self._authenticated = False
        self._subscription: EventSubscription | None = None
        self._forwarder: asyncio.Task[None] | None = None

    @property
    def authenticated(self) -> bool:
        return self._authenticated

    @property
    def subscribed(self) -> bool:
        return self._subscription is not None

    async def handle(self, data: object) -> None:
        """Process one decoded message and send exactly one response for it."""
        try:
            request = parse_request(data)
        except RequestParseError as exc:
            await self._send(
                ErrorMessage(id=exc.request_id or "unknown", code=exc.code, message=str(exc))
            )
            return

        if isinstance(request, AuthRequest):
            await self._send(self._authenticate(request))
            return
        if not self._authenticated:
            await self._send(
                ErrorMessage(
                    id=request.id,
                    code="AUTH_REQUIRED",
                    message="Authenticate before sending requests",
                )
            )
            return

        try:
            response = await self._dispatch(request)
        except Exception as exc:
            logger.exception("Unhandled error in remote request %s", request.type)
            response = ErrorMessage(id=request.id, code="INTERNAL_ERROR", message=str(exc))
        await self._send(response)

    def _authenticate(self, request: AuthRequest) -> AuthResponse:
        if self._authenticated:
            return AuthResponse(id=request.id, success=True)
        if hmac.compare_digest(request.token.encode("utf-8"), self._token.encode("utf-8")):
            self._authenticated = True
            logger.info("Remote client %s authenticated", self._client_id)
            return AuthResponse(id=request.id, success=True)
        logger.warning("Remote client %s failed authentication", self._client_id)
        return AuthResponse(id=request.id, success=False, error="Invalid token")

    async def _dispatch(self, request: RemoteMessage) -> RemoteMessage:
        engine = self._engine
        match request:
            case SubscribeRequest(event_types=event_types):
                self._subscribe(event_types)
                return OperationResult(id=request.id, operation="subscribe", success=True)
            case CountRequest(type="add_iterations", count=count):
                return await self._operation(request, lambda: engine.add_iterations(count))
            case CountRequest(type="remove_iterations", count=count):
                return await self._operation(request, lambda: engine.remove_iterations(count))
            case SimpleRequest(type="ping"):
                return Pong(id=request.id)
            case SimpleRequest(type="get_state"):
                return StateResponse(id=request.id, state=serialize_state(engine))
            case SimpleRequest(type="get_tasks"):
                return TasksResponse(
                    id=request.id, tasks=[task.model_dump(mode="json") for task in engine.tasks]
                )
            case SimpleRequest(type="unsubscribe"):
                await self.unsubscribe()
                return OperationResult(id=request.id, operation="unsubscribe", success=True)
            case SimpleRequest(type="pause"):
                return await self._operation(request, engine.pause)
            case SimpleRequest(type="resume"):
                return await self._operation(request, engine.resume)
            case SimpleRequest(type="interrupt"):
                return await self._operation(request, engine.interrupt)
            case SimpleRequest(type="continue"):
                return await self._operation(request, engine.continue_execution)
            case SimpleRequest(type="refresh_tasks"):

                async def refresh() -> int:
                    return len(await engine.refresh_tasks())

                return await self._operation(request, refresh)
        return ErrorMessage(
            id=request.id, code="UNKNOWN_MESSAGE_TYPE", message=f"Unsupported: {request.type}"
        )

    async def _operation(
        self, request: RemoteMessage, call: Callable[[], Awaitable[object]]
    ) -> OperationResult:
        try:
            result = await call()
        except TreadleError as exc:
            logger.info("Remote %s from %s rejected: %s", request.type, self._client_id, exc)
            return OperationResult(
                id=request.id,
                operation=request.type,
                success=False,
                error=str(exc),
                code=exc.code,
            )
        logger.info("Remote %s from %s", request.type, self._client_id)
        return OperationResult(id=request.id, operation=request.type, success=True, data=result)

    def _subscribe(self, event_types: list[str] | None) -> None:
        if self._forwarder is not None:
            self._forwarder.cancel()
        if self._subscription is not None:
            self._subscription.close()
        self._subscription = self._engine.bus.subscribe(
            set(event_types) if event_types else None, maxsize=self._event_queue_size
        )
        self._forwarder = asyncio.create_task(self._forward(self._subscription))

    async def _forward(self, subscription: EventSubscription) -> None:
        try:
            while True:
                event = await subscription.get()
                await self._send(EngineEventMessage(event=event_to_dict(event)))
        except SubscriptionClosed:
            return
        except (ConnectionError, OSError) as exc:
            logger.debug("Stopped forwarding events to %s: %s", self._client_id, exc)

    async def unsubscribe(self) -> None:
        subscription, forwarder = self._subscription, self._forwarder
        self._subscription = None
        self._forwarder = None
        if subscription is not None:
            subscription.close()
        if forwarder is not None:
            forwarder.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await forwarder

    async def close(self) -> None:
        await self.unsubscribe()


__all__ = ["RemoteSession", "serialize_state"]
