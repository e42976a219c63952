"""Remote control message types.

Every message is one JSON object per line carrying ``type``, ``id`` and
``timestamp``. Responses echo the ``id`` of the request they answer;
``engine_event`` messages get a fresh id.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Literal
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, ValidationError


def _new_message_id() -> str:
    return uuid4().hex


def _now() -> datetime:
    return datetime.now(UTC)


class RemoteMessage(BaseModel):
    """Envelope shared by every request, response and pushed event."""

    model_config = ConfigDict(extra="forbid")

    type: str
    id: str = Field(default_factory=_new_message_id, description="Correlation id")
    timestamp: datetime = Field(default_factory=_now)

    def to_line(self) -> bytes:
        return (self.model_dump_json(exclude_none=True) + "\n").encode("utf-8")


# ── Requests ──────────────────────────────────────────────────────────


class AuthRequest(RemoteMessage):
    type: Literal["auth"] = "auth"
    token: str


class SimpleRequest(RemoteMessage):
    """Requests that carry no payload beyond the envelope."""

    type: Literal[
        "get_state",
        "get_tasks",
        "pause",
        "resume",
        "interrupt",
        "refresh_tasks",
        "continue",
        "unsubscribe",
        "ping",
    ]


class CountRequest(RemoteMessage):
    type: Literal["add_iterations", "remove_iterations"]
    count: int = Field(ge=1)


class SubscribeRequest(RemoteMessage):
    type: Literal["subscribe"] = "subscribe"
    event_types: list[str] | None = Field(
        default=None, description="Only forward these event types; all when omitted"
    )


_REQUEST_MODELS: dict[str, type[RemoteMessage]] = {
    "auth": AuthRequest,
    "add_iterations": CountRequest,
    "remove_iterations": CountRequest,
    "subscribe": SubscribeRequest,
    **{
        name: SimpleRequest
        for name in (
            "get_state",
            "get_tasks",
            "pause",
            "resume",
            "interrupt",
            "refresh_tasks",
            "continue",
            "unsubscribe",
            "ping",
        )
    },
}

REQUEST_TYPES: frozenset[str] = frozenset(_REQUEST_MODELS)


class RequestParseError(ValueError):
    """Raised when a line is not a well-formed request."""

    def __init__(self, code: str, message: str, request_id: str | None) -> None:
        super().__init__(message)
        self.code = code
        self.request_id = request_id


def parse_request(data: object) -> RemoteMessage:
    if not isinstance(data, dict):
        raise RequestParseError("INVALID_MESSAGE", "Message must be a JSON object", None)
    request_id = data.get("id") if isinstance(data.get("id"), str) else None
    message_type = data.get("type")
    model = _REQUEST_MODELS.get(message_type) if isinstance(message_type, str) else None
    if model is None:
        raise RequestParseError(
            "UNKNOWN_MESSAGE_TYPE", f"Unknown message type: {message_type!r}", request_id
        )
    if request_id is None:
        raise RequestParseError("INVALID_MESSAGE", "Message is missing a string id", None)
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        raise RequestParseError("VALIDATION_ERROR", str(exc), request_id) from exc


# ── Responses and pushed messages ─────────────────────────────────────


class AuthResponse(RemoteMessage):
    type: Literal["auth_response"] = "auth_response"
    success: bool
    error: str | None = None


class StateResponse(RemoteMessage):
    type: Literal["state_response"] = "state_response"
    state: dict[str, Any]


class TasksResponse(RemoteMessage):
    type: Literal["tasks_response"] = "tasks_response"
    tasks: list[dict[str, Any]]


class OperationResult(RemoteMessage):
    type: Literal["operation_result"] = "operation_result"
    operation: str
    success: bool
    error: str | None = None
    code: str | None = None
    data: Any = None


class Pong(RemoteMessage):
    type: Literal["pong"] = "pong"


class ErrorMessage(RemoteMessage):
    type: Literal["error"] = "error"
    code: str
    message: str


class EngineEventMessage(RemoteMessage):
    type: Literal["engine_event"] = "engine_event"
    event: dict[str, Any]


_RESPONSE_MODELS: dict[str, type[RemoteMessage]] = {
    "auth_response": AuthResponse,
    "state_response": StateResponse,
    "tasks_response": TasksResponse,
    "operation_result": OperationResult,
    "pong": Pong,
    "error": ErrorMessage,
    "engine_event": EngineEventMessage,
}


def parse_server_message(data: dict[str, Any]) -> RemoteMessage:
    """Decode a message received by a client; unknown types keep the bare envelope."""
    model = _RESPONSE_MODELS.get(data.get("type", ""))
    if model is None:
        return RemoteMessage.model_validate(
            {key: data[key] for key in ("type", "id", "timestamp") if key in data}
        )
    return model.model_validate(data)


__all__ = [
    "REQUEST_TYPES",
    "AuthRequest",
    "AuthResponse",
    "CountRequest",
    "EngineEventMessage",
    "ErrorMessage",
    "OperationResult",
    "Pong",
    "RemoteMessage",
    "RequestParseError",
    "SimpleRequest",
    "StateResponse",
    "SubscribeRequest",
    "TasksResponse",
    "parse_request",
    "parse_server_message",
]
