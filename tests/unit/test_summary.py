"""Tests for the end-of-run summary lines."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from treadle.engine.summary import describe_iteration, summarize_run
from treadle.models import (
    AgentSwitchRecord,
    EngineState,
    EngineStatus,
    Iteration,
    IterationOutcome,
    StopReason,
    SwitchReason,
)

pytestmark = pytest.mark.unit

_T0 = datetime(2026, 1, 1, tzinfo=UTC)


def _iteration(number: int, outcome: IterationOutcome | None, **kwargs: object) -> Iteration:
    ended_at = _T0 + timedelta(minutes=number) if outcome is not None else None
    return Iteration.model_validate(
        {
            "number": number,
            "task_id": f"t{number}",
            "agent_id": "claude",
            "started_at": _T0,
            "ended_at": ended_at,
            "outcome": outcome,
            **kwargs,
        }
    )


def _switch(seconds: int, to_agent: str, reason: SwitchReason) -> AgentSwitchRecord:
    from_agent = "claude" if reason is SwitchReason.RATE_LIMIT else "codex"
    return AgentSwitchRecord(
        at=_T0 + timedelta(seconds=seconds),
        from_agent=from_agent,
        to_agent=to_agent,
        reason=reason,
    )


class TestDescribeIteration:
    def test_completed_by_primary(self) -> None:
        iteration = _iteration(1, IterationOutcome.COMPLETED, task_completed=True)
        assert describe_iteration(iteration) == "Iteration 1: task t1 completed by claude"

    def test_completed_on_fallback_then_recovered(self) -> None:
        iteration = _iteration(
            2,
            IterationOutcome.COMPLETED,
            task_completed=True,
            agent_id="codex",
            agent_switches=[
                _switch(1, "codex", SwitchReason.RATE_LIMIT),
                _switch(2, "claude", SwitchReason.RECOVERY),
            ],
        )

        assert describe_iteration(iteration) == (
            "Iteration 2: task t2 completed on fallback agent codex due to rate limit; "
            "recovered to primary agent claude"
        )

    def test_finished_without_marker(self) -> None:
        iteration = _iteration(3, IterationOutcome.COMPLETED)
        assert "without the completion marker" in describe_iteration(iteration)

    def test_failed_with_error(self) -> None:
        iteration = _iteration(4, IterationOutcome.FAILED, error="exit code 2")
        assert describe_iteration(iteration) == "Iteration 4: task t4 failed on claude: exit code 2"

    def test_interrupted_and_open(self) -> None:
        interrupted = _iteration(5, IterationOutcome.INTERRUPTED, error="user interrupt")
        running = _iteration(6, None)

        assert describe_iteration(interrupted) == (
            "Iteration 5: task t5 interrupted (user interrupt)"
        )
        assert describe_iteration(running) == "Iteration 6: task t6 in progress on claude"


class TestSummarizeRun:
    def test_totals_and_stop_reason(self) -> None:
        state = EngineState(
            status=EngineStatus.COMPLETED,
            max_iterations=5,
            stop_reason=StopReason.NO_TASKS,
            iteration_history=[
                _iteration(1, IterationOutcome.COMPLETED, task_completed=True),
                _iteration(2, IterationOutcome.INTERRUPTED),
                _iteration(3, IterationOutcome.FAILED),
            ],
        )

        lines = summarize_run(state)

        assert len(lines) == 5
        assert lines[3] == "1 task(s) completed in 2/5 iteration(s)"
        assert lines[4] == "Stopped: no tasks"

    def test_unbounded_and_paused(self) -> None:
        state = EngineState(status=EngineStatus.PAUSED, pause_reason="Tracker error: boom")
        assert summarize_run(state) == [
            "0 task(s) completed in 0/unbounded iteration(s)",
            "Paused: Tracker error: boom",
        ]
