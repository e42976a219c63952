"""Execution engine: iteration controller and its collaborators."""

from treadle.engine.backoff import BackoffPolicy
from treadle.engine.controller import ExecutionEngine, select_next_task
from treadle.engine.rate_limit import RateLimitDetector, RateLimitResult
from treadle.engine.session_store import SessionSnapshot, SessionStore

__all__ = [
    "BackoffPolicy",
    "ExecutionEngine",
    "RateLimitDetector",
    "RateLimitResult",
    "SessionSnapshot",
    "SessionStore",
    "select_next_task",
]
