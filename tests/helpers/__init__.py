"""Test helpers package."""

from tests.helpers.fakes import (
    EventRecorder,
    FakeAgent,
    FakeExecution,
    FakeRun,
    FakeTracker,
    RecordingSleep,
    completing_run,
    failing_run,
    make_tasks,
    rate_limited_run,
)
from tests.helpers.wait import run_to_end, wait_for_status, wait_until

__all__ = [
    "EventRecorder",
    "FakeAgent",
    "FakeExecution",
    "FakeRun",
    "FakeTracker",
    "RecordingSleep",
    "completing_run",
    "failing_run",
    "make_tasks",
    "rate_limited_run",
    "run_to_end",
    "wait_for_status",
    "wait_until",
]
