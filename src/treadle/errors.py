"""Error taxonomy for the execution engine.

Every error carries a machine-readable ``code`` so it can be surfaced over the
remote protocol and in persisted iteration records without string matching.
"""

from __future__ import annotations

import shlex


class TreadleError(Exception):
    """Base for engine errors with a machine-readable code."""

    code: str = "TREADLE_ERROR"

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        if code is not None:
            self.code = code


# ── Agent conditions ──────────────────────────────────────────────────


class TransientAgentCondition(TreadleError):
    """A rate limit was detected; handled inside the engine via retry/fallback."""

    code = "RATE_LIMITED"

    def __init__(
        self,
        agent_id: str,
        message: str | None = None,
        *,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message or f"Agent {agent_id} is rate limited")
        self.agent_id = agent_id
        self.retry_after = retry_after


class FatalAgentError(TreadleError):
    """Agent exited non-zero without any rate-limit signal."""

    code = "AGENT_FAILED"

    def __init__(self, agent_id: str, exit_code: int | None, detail: str = "") -> None:
        message = f"Agent {agent_id} failed (exit={exit_code})"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.agent_id = agent_id
        self.exit_code = exit_code


class FallbackExhaustedError(TreadleError):
    """Primary and every configured fallback are rate limited or unavailable."""

    code = "FALLBACK_EXHAUSTED"

    def __init__(self, tried: list[str]) -> None:
        tried_text = ", ".join(tried) if tried else "none"
        super().__init__(
            f"All agents are rate limited or unavailable (tried: {tried_text}). "
            "Resume once limits clear."
        )
        self.tried = tried


class AgentNotFoundError(TreadleError):
    code = "AGENT_NOT_FOUND"

    def __init__(self, agent_id: str) -> None:
        super().__init__(f"Unknown agent plugin: {agent_id!r}")
        self.agent_id = agent_id


# ── Subprocess ────────────────────────────────────────────────────────


class CommandError(TreadleError):
    """A one-shot command could not be started, timed out or exited non-zero."""

    code = "COMMAND_FAILED"

    def __init__(
        self,
        argv: tuple[str, ...],
        reason: str,
        *,
        returncode: int | None = None,
        detail: str = "",
    ) -> None:
        message = f"`{shlex.join(argv)}` {reason}"
        super().__init__(f"{message}: {detail}" if detail else message)
        self.argv = argv
        self.returncode = returncode
        self.detail = detail


# ── Tracker ───────────────────────────────────────────────────────────


class TrackerError(TreadleError):
    """A tracker adapter call failed; task state may be inconsistent."""

    code = "TRACKER_ERROR"

    def __init__(self, message: str, *, task_id: str | None = None) -> None:
        super().__init__(message)
        self.task_id = task_id


class TrackerNotFoundError(TreadleError):
    code = "TRACKER_NOT_FOUND"

    def __init__(self, tracker_id: str) -> None:
        super().__init__(f"Unknown tracker plugin: {tracker_id!r}")
        self.tracker_id = tracker_id


class PrdError(TreadleError):
    """A PRD document could not be turned into tasks."""

    code = "PRD_INVALID"


# ── Session ───────────────────────────────────────────────────────────


class SessionCorruptedError(TreadleError):
    """Snapshot is unreadable or does not validate; prior state is not guessed."""

    code = "SESSION_CORRUPTED"


class SessionIncompatibleError(SessionCorruptedError):
    """Snapshot was written by an unknown or future schema version."""

    code = "SESSION_INCOMPATIBLE"

    def __init__(self, found: object, supported: int) -> None:
        super().__init__(
            f"Session schema version {found!r} is not supported (this build reads <= {supported})"
        )
        self.found = found
        self.supported = supported


class SessionLockedError(TreadleError):
    """Another live engine instance holds the project session lock."""

    code = "SESSION_LOCKED"

    def __init__(self, pid: int | None = None, hostname: str | None = None) -> None:
        holder = f" by PID {pid} on {hostname}" if pid is not None else ""
        super().__init__(f"Session is locked{holder}. Use --force to override.")
        self.pid = pid
        self.hostname = hostname


class SessionExistsError(TreadleError):
    """A previous session snapshot exists and was neither resumed nor discarded."""

    code = "SESSION_EXISTS"


# ── Engine control ────────────────────────────────────────────────────


class AlreadyRunningError(TreadleError):
    code = "ALREADY_RUNNING"

    def __init__(self) -> None:
        super().__init__("Engine is already running")


class InvalidBoundError(TreadleError):
    """Iteration bound adjustment would fall below the iterations already run."""

    code = "INVALID_BOUND"


class EngineStateError(TreadleError):
    """Operation is not valid in the engine's current status."""

    code = "INVALID_STATE"


__all__ = [
    "AgentNotFoundError",
    "AlreadyRunningError",
    "CommandError",
    "EngineStateError",
    "FallbackExhaustedError",
    "FatalAgentError",
    "InvalidBoundError",
    "PrdError",
    "SessionCorruptedError",
    "SessionExistsError",
    "SessionIncompatibleError",
    "SessionLockedError",
    "TrackerError",
    "TrackerNotFoundError",
    "TransientAgentCondition",
    "TreadleError",
]
