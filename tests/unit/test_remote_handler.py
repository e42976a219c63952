"""Tests for remote request dispatch, driven without sockets."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

import pytest

from tests.helpers import FakeAgent, FakeTracker, make_tasks, wait_for_status, wait_until
from treadle.debug_log import DebugLogHandler, clear_log_buffer
from treadle.models import EngineStatus
from treadle.remote.contracts import (
    AuthResponse,
    EngineEventMessage,
    ErrorMessage,
    OperationResult,
    Pong,
    RemoteMessage,
    StateResponse,
    TasksResponse,
)
from treadle.remote.handler import RemoteSession

if TYPE_CHECKING:
    from collections.abc import Callable

    from treadle.engine import ExecutionEngine

pytestmark = pytest.mark.unit

TOKEN = "s3cret"


class Outbox:
    def __init__(self) -> None:
        self.messages: list[RemoteMessage] = []

    async def __call__(self, message: RemoteMessage) -> None:
        self.messages.append(message)

    @property
    def last(self) -> RemoteMessage:
        return self.messages[-1]

    def of_type[T](self, kind: type[T]) -> list[T]:
        return [message for message in self.messages if isinstance(message, kind)]


@pytest.fixture
def engine(engine_factory: Callable[..., ExecutionEngine]) -> ExecutionEngine:
    tracker = FakeTracker(make_tasks("t1", "t2"))
    return engine_factory(tracker, [FakeAgent("primary"), FakeAgent("backup")])


@pytest.fixture
def outbox() -> Outbox:
    return Outbox()


@pytest.fixture
async def session(engine: ExecutionEngine, outbox: Outbox) -> RemoteSession:
    remote = RemoteSession(engine, TOKEN, outbox, client_id="test")
    await remote.handle({"type": "auth", "id": "a", "token": TOKEN})
    outbox.messages.clear()
    return remote


async def _request(session: RemoteSession, outbox: Outbox, **data: Any) -> RemoteMessage:
    data.setdefault("id", f"req-{len(outbox.messages)}")
    await session.handle(data)
    response = outbox.last
    assert response.id == data["id"]
    return response


class TestAuthentication:
    async def test_requests_before_auth_are_refused(
        self, engine: ExecutionEngine, outbox: Outbox
    ) -> None:
        remote = RemoteSession(engine, TOKEN, outbox)

        await remote.handle({"type": "get_state", "id": "1"})

        assert isinstance(outbox.last, ErrorMessage)
        assert outbox.last.code == "AUTH_REQUIRED"
        assert outbox.last.id == "1"
        assert remote.authenticated is False

    async def test_wrong_then_right_token(self, engine: ExecutionEngine, outbox: Outbox) -> None:
        remote = RemoteSession(engine, TOKEN, outbox)

        await remote.handle({"type": "auth", "id": "1", "token": "nope"})
        await remote.handle({"type": "auth", "id": "2", "token": TOKEN})

        first, second = outbox.of_type(AuthResponse)
        assert (first.success, first.error) == (False, "Invalid token")
        assert second.success is True
        assert remote.authenticated is True


class TestMalformedRequests:
    @pytest.mark.parametrize(
        ("data", "code", "response_id"),
        [
            (["not", "an", "object"], "INVALID_MESSAGE", "unknown"),
            ({"type": "launch_rockets", "id": "x1"}, "UNKNOWN_MESSAGE_TYPE", "x1"),
            ({"type": "ping"}, "INVALID_MESSAGE", "unknown"),
            ({"type": "add_iterations", "id": "x2", "count": 0}, "VALIDATION_ERROR", "x2"),
            ({"type": "ping", "id": "x3", "extra": True}, "VALIDATION_ERROR", "x3"),
        ],
    )
    async def test_error_codes(
        self,
        session: RemoteSession,
        outbox: Outbox,
        data: object,
        code: str,
        response_id: str,
    ) -> None:
        await session.handle(data)

        assert len(outbox.messages) == 1
        error = outbox.last
        assert isinstance(error, ErrorMessage)
        assert error.code == code
        assert error.id == response_id


class TestQueries:
    async def test_ping(self, session: RemoteSession, outbox: Outbox) -> None:
        assert isinstance(await _request(session, outbox, type="ping"), Pong)

    async def test_refresh_then_get_tasks(self, session: RemoteSession, outbox: Outbox) -> None:
        refreshed = await _request(session, outbox, type="refresh_tasks")
        tasks = await _request(session, outbox, type="get_tasks")

        assert isinstance(refreshed, OperationResult)
        assert (refreshed.success, refreshed.data) == (True, 2)
        assert isinstance(tasks, TasksResponse)
        assert [task["id"] for task in tasks.tasks] == ["t1", "t2"]

    async def test_state_includes_counters_and_warnings(
        self, session: RemoteSession, outbox: Outbox
    ) -> None:
        clear_log_buffer()
        warn_logger = logging.getLogger("treadle.tests.remote")
        warn_logger.propagate = False
        handler = DebugLogHandler()
        warn_logger.addHandler(handler)
        try:
            warn_logger.warning("agent backup is not installed")
            response = await _request(session, outbox, type="get_state")
        finally:
            warn_logger.removeHandler(handler)
            clear_log_buffer()

        assert isinstance(response, StateResponse)
        state = response.state
        assert state["status"] == "idle"
        assert state["phase"] == "idle"
        assert state["max_iterations"] == 10
        assert (state["iterations_run"], state["tasks_completed"]) == (0, 0)
        assert len(state["recent_warnings"]) == 1
        assert state["recent_warnings"][0].endswith("agent backup is not installed")


class TestOperations:
    async def test_invalid_state_is_reported_not_raised(
        self, session: RemoteSession, outbox: Outbox
    ) -> None:
        paused = await _request(session, outbox, type="pause")
        interrupted = await _request(session, outbox, type="interrupt")

        assert isinstance(paused, OperationResult)
        assert (paused.success, paused.code) == (False, "INVALID_STATE")
        assert isinstance(interrupted, OperationResult)
        assert interrupted.code == "NOTHING_TO_INTERRUPT"

    async def test_iteration_bounds(self, session: RemoteSession, outbox: Outbox) -> None:
        added = await _request(session, outbox, type="add_iterations", count=3)
        refused = await _request(session, outbox, type="remove_iterations", count=13)
        removed = await _request(session, outbox, type="remove_iterations", count=4)

        assert isinstance(added, OperationResult) and added.data == 13
        assert isinstance(refused, OperationResult)
        assert (refused.success, refused.code) == (False, "INVALID_BOUND")
        assert isinstance(removed, OperationResult) and removed.data == 9

    async def test_dispatch_matches_validated_request_models(
        self, session: RemoteSession, engine: ExecutionEngine
    ) -> None:
        # Only parsed request models are routed; a bare envelope naming an
        # operation, or a response message, falls through without side effects.
        bare = await session._dispatch(RemoteMessage(type="add_iterations", id="x"))
        echoed = await session._dispatch(Pong(id="y"))

        assert isinstance(bare, ErrorMessage) and bare.code == "UNKNOWN_MESSAGE_TYPE"
        assert isinstance(echoed, ErrorMessage) and echoed.code == "UNKNOWN_MESSAGE_TYPE"
        assert engine.state.max_iterations == 10

    async def test_continue_starts_the_run(
        self, session: RemoteSession, outbox: Outbox, engine: ExecutionEngine
    ) -> None:
        result = await _request(session, outbox, type="continue")

        assert isinstance(result, OperationResult) and result.success is True
        await wait_for_status(engine, EngineStatus.COMPLETED)
        assert engine.state.tasks_completed == 2


class TestSubscriptions:
    async def test_events_are_forwarded_until_unsubscribed(
        self, session: RemoteSession, outbox: Outbox
    ) -> None:
        await _request(session, outbox, type="subscribe", event_types=["tasks_refreshed"])
        assert session.subscribed is True

        await _request(session, outbox, type="refresh_tasks")
        await wait_until(lambda: bool(outbox.of_type(EngineEventMessage)))

        event = outbox.of_type(EngineEventMessage)[0].event
        assert event["type"] == "tasks_refreshed"
        assert (event["total"], event["open"]) == (2, 2)

        await _request(session, outbox, type="unsubscribe")
        assert session.subscribed is False

    async def test_filter_excludes_other_events(
        self, session: RemoteSession, outbox: Outbox
    ) -> None:
        await _request(session, outbox, type="subscribe", event_types=["engine_paused"])

        await _request(session, outbox, type="refresh_tasks")
        await _request(session, outbox, type="ping")

        assert outbox.of_type(EngineEventMessage) == []
        await session.close()

    async def test_each_request_gets_exactly_one_response(
        self, session: RemoteSession, outbox: Outbox
    ) -> None:
        for index, kind in enumerate(["ping", "get_state", "get_tasks", "pause"]):
            await session.handle({"type": kind, "id": f"r{index}"})

        assert [message.id for message in outbox.messages] == ["r0", "r1", "r2", "r3"]

