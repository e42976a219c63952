"""Iteration controller: drives tasks from selection to completion or failure.

``ExecutionEngine`` is the only writer of ``EngineState``. Every transition is
published on the event bus and mirrored to the session store before the next
suspension point. Control calls (pause, interrupt, iteration bounds) may come
from other coroutines while the run loop is waiting on the agent, a backoff
timer, the recovery check or the tracker.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING

from treadle.agents.base import ExecuteOptions, ExitRecord
from treadle.engine.backoff import BackoffPolicy
from treadle.engine.completion import CompletionScanner
from treadle.engine.fallback import FallbackSelector
from treadle.engine.output import (
    CompletionObserver,
    OutputFanout,
    RateLimitObserver,
    TailBuffer,
)
from treadle.engine.rate_limit import NOT_RATE_LIMITED, RateLimitDetector
from treadle.engine.session_store import SessionSnapshot, reconcile
from treadle.errors import (
    AlreadyRunningError,
    EngineStateError,
    FallbackExhaustedError,
    FatalAgentError,
    InvalidBoundError,
    SessionExistsError,
    TrackerError,
    TransientAgentCondition,
)
from treadle.event_bus import InMemoryEventBus
from treadle.events import (
    AgentOutput,
    AgentStarted,
    AgentSwitched,
    EngineFailed,
    EnginePaused,
    EngineResumed,
    EngineStarted,
    EngineStopped,
    FallbackExhausted,
    IterationCompleted,
    IterationFailed,
    IterationInterrupted,
    IterationsAdjusted,
    IterationStarted,
    PromptBuilt,
    RateLimitDetected,
    RecoveryAttempted,
    RetryScheduled,
    TaskSelected,
    TasksRefreshed,
    TaskStatusChanged,
)
from treadle.limits import STDERR_TAIL_CHARS
from treadle.models import (
    ActiveAgentReason,
    ActiveAgentState,
    AgentSwitchRecord,
    EnginePhase,
    EngineState,
    EngineStatus,
    FailureStrategy,
    Iteration,
    IterationOutcome,
    RateLimitState,
    StopReason,
    SwitchReason,
    Task,
    TaskStatus,
    utc_now,
)
from treadle.prompts import PROBE_PROMPT, PromptContext, TemplatePromptBuilder

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable
    from pathlib import Path

    from treadle.agents.base import AgentExecution, AgentPlugin, OutputChunk
    from treadle.agents.registry import AgentRegistry
    from treadle.config import TreadleConfig
    from treadle.engine.session_store import SessionStore
    from treadle.events import EngineEvent, EventBus
    from treadle.prompts import PromptBuilder
    from treadle.session_lock import SessionLock
    from treadle.trackers.base import TrackerPlugin

logger = logging.getLogger(__name__)

type SleepFn = Callable[[float], Awaitable[None]]


def select_next_task(tasks: list[Task]) -> Task | None:
    """Highest priority open task whose dependencies are met.

    Priority 0 is highest. A dependency is met when that task is completed or
    unknown to the tracker. Ties keep tracker order.
    """
    by_id = {task.id: task for task in tasks}
    eligible = [
        task
        for task in tasks
        if task.status is TaskStatus.OPEN
        and all(
            dep not in by_id or by_id[dep].status is TaskStatus.COMPLETED
            for dep in task.dependencies
        )
    ]
    if not eligible:
        return None
    return min(eligible, key=lambda task: task.priority)


@dataclass(slots=True)
class AttemptResult:
    exit: ExitRecord
    completed: bool
    stdout: str
    stderr: str
    interrupted: bool = False


class _IterationAborted(Exception):
    """Raised inside an iteration when interrupt or stop cut it short."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


@dataclass(slots=True)
class _RecoveryCheck:
    stdout: TailBuffer
    stderr: TailBuffer
    execution: AgentExecution | None = None
    unavailable: str | None = None


class _OutputForwarder:
    def __init__(self, engine: ExecutionEngine, iteration: int, agent_id: str) -> None:
        self._engine = engine
        self._iteration = iteration
        self._agent_id = agent_id

    async def consume(self, chunk: OutputChunk) -> None:
        await self._engine._emit(
            AgentOutput(
                iteration=self._iteration,
                agent_id=self._agent_id,
                stream=chunk.stream,
                chunk=chunk.text,
            )
        )


class ExecutionEngine:
    """Autonomous task loop with rate-limit failover and resumable sessions."""

    def __init__(
        self,
        *,
        project_root: Path,
        config: TreadleConfig,
        tracker: TrackerPlugin,
        agents: AgentRegistry,
        store: SessionStore,
        bus: EventBus | None = None,
        prompt_builder: PromptBuilder | None = None,
        detector: RateLimitDetector | None = None,
        lock: SessionLock | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._project_root = project_root
        self._config = config
        self._tracker = tracker
        self._agents = agents
        self._store = store
        self._bus: EventBus = bus if bus is not None else InMemoryEventBus()
        self._prompt_builder = prompt_builder or TemplatePromptBuilder()
        self._detector = detector or RateLimitDetector()
        self._lock = lock
        self._sleep = sleep
        self._backoff = BackoffPolicy.from_config(config.rate_limit)
        self._selector = FallbackSelector(config.agent.fallback_agents, agents)

        self._state = EngineState(max_iterations=config.engine.max_iterations)
        self._phase = EnginePhase.IDLE
        self._tasks: list[Task] = []
        self._session_owned = False
        self._run_task: asyncio.Task[None] | None = None
        self._resume_event = asyncio.Event()
        self._resume_event.set()
        self._interrupt_event = asyncio.Event()
        self._stop_event = asyncio.Event()
        self._execution: AgentExecution | None = None
        self._background: set[asyncio.Task[None]] = set()

    # ── Read access ───────────────────────────────────────────────────

    @property
    def bus(self) -> EventBus:
        return self._bus

    @property
    def state(self) -> EngineState:
        """Deep copy of the current state."""
        return self._state.snapshot()

    @property
    def phase(self) -> EnginePhase:
        return self._phase

    @property
    def tasks(self) -> list[Task]:
        return [task.model_copy(deep=True) for task in self._tasks]

    @property
    def is_running(self) -> bool:
        return self._run_task is not None and not self._run_task.done()

    @property
    def primary_agent_id(self) -> str:
        return self._config.agent.primary

    # ── Session lifecycle ─────────────────────────────────────────────

    def _acquire_lock(self, *, force: bool = False) -> None:
        if self._lock is not None and not self._lock.is_held:
            self._lock.acquire_or_raise(force=force)

    async def resume_session(
        self, *, force: bool = False, max_iterations: int | None = None
    ) -> list[str]:
        """Load and reconcile the last snapshot; returns ids of tasks reset to open."""
        if self.is_running:
            raise AlreadyRunningError
        self._acquire_lock(force=force)
        if not self._store.exists():
            raise EngineStateError("No saved session to resume", code="NO_SESSION")
        snapshot = await self._store.load()
        repaired, reset_ids = reconcile(snapshot)
        for task_id in reset_ids:
            await self._tracker.update_task_status(task_id, TaskStatus.OPEN)
        if reset_ids:
            logger.info("Reset interrupted tasks to open: %s", ", ".join(reset_ids))

        self._state = repaired.engine_state
        if max_iterations is not None:
            self._state.max_iterations = max_iterations
        self._tasks = repaired.tasks
        self._session_owned = True
        self._phase = EnginePhase.IDLE
        await self._persist()
        return reset_ids

    async def restart(self) -> None:
        """Discard the saved session and start over from a fresh state."""
        if self.is_running:
            raise AlreadyRunningError
        self._acquire_lock()
        self._store.delete()
        self._state = EngineState(max_iterations=self._config.engine.max_iterations)
        self._tasks = []
        self._session_owned = True
        self._phase = EnginePhase.IDLE
        tasks = await self._tracker.get_tasks()
        for task in tasks:
            if task.status is TaskStatus.IN_PROGRESS:
                await self._tracker.update_task_status(task.id, TaskStatus.OPEN)

    # ── Control operations ────────────────────────────────────────────

    async def start(self) -> None:
        """Begin the run loop in the background."""
        if self.is_running:
            raise AlreadyRunningError
        self._acquire_lock()
        if not self._session_owned and self._store.exists():
            raise SessionExistsError(
                f"A saved session exists at {self._store.path}; resume or restart it"
            )
        self._agents.get(self.primary_agent_id)
        resumed = bool(self._state.iteration_history)
        self._session_owned = True
        self._stop_event.clear()
        self._interrupt_event.clear()
        self._resume_event.set()

        state = self._state
        if state.active_agent is None or (
            state.active_agent.reason is ActiveAgentReason.PRIMARY
            and state.active_agent.agent_id != self.primary_agent_id
        ):
            state.active_agent = ActiveAgentState(
                agent_id=self.primary_agent_id, reason=ActiveAgentReason.PRIMARY
            )
        if not resumed:
            state.started_at = utc_now()
        state.status = EngineStatus.RUNNING
        state.pause_reason = None
        state.stop_reason = None

        await self._emit(
            EngineStarted(
                max_iterations=state.max_iterations,
                resumed=resumed,
                primary_agent=self.primary_agent_id,
            )
        )
        await self._persist()
        self._run_task = asyncio.create_task(self._run_loop())

    async def wait(self) -> EngineState:
        """Wait for the run loop to finish and return the final state."""
        if self._run_task is not None:
            await asyncio.shield(self._run_task)
        return self.state

    async def pause(self, reason: str | None = None) -> None:
        if self._state.status is not EngineStatus.RUNNING:
            raise EngineStateError(f"Cannot pause while {self._state.status}")
        self._state.status = EngineStatus.PAUSED
        self._state.pause_reason = reason
        self._resume_event.clear()
        logger.info("Engine paused%s", f": {reason}" if reason else "")
        await self._emit(EnginePaused(reason=reason))
        await self._persist()

    async def resume(self) -> None:
        if self._state.status is not EngineStatus.PAUSED:
            raise EngineStateError(f"Cannot resume while {self._state.status}")
        self._state.status = EngineStatus.RUNNING
        self._state.pause_reason = None
        self._resume_event.set()
        logger.info("Engine resumed")
        await self._emit(EngineResumed())
        await self._persist()
        if not self.is_running:
            self._run_task = asyncio.create_task(self._run_loop())

    async def interrupt(self) -> None:
        """Cut the current iteration short; the task goes back to open."""
        if self._state.open_iteration is None:
            raise EngineStateError("No iteration in progress", code="NOTHING_TO_INTERRUPT")
        self._interrupt_event.set()

    async def add_iterations(self, count: int) -> int:
        if count < 1:
            raise InvalidBoundError("Iteration count must be positive")
        previous = self._state.max_iterations
        if previous == 0:
            return previous
        self._state.max_iterations = previous + count
        await self._emit(
            IterationsAdjusted(previous=previous, max_iterations=self._state.max_iterations)
        )
        await self._persist()
        return self._state.max_iterations

    async def remove_iterations(self, count: int) -> int:
        if count < 1:
            raise InvalidBoundError("Iteration count must be positive")
        previous = self._state.max_iterations
        if previous == 0:
            raise InvalidBoundError("Cannot remove iterations from an unbounded run")
        floor = max(1, self._state.iterations_run)
        target = previous - count
        if target < floor:
            raise InvalidBoundError(
                f"Cannot reduce max iterations to {target}; {self._state.iterations_run} "
                "already run"
            )
        self._state.max_iterations = target
        await self._emit(IterationsAdjusted(previous=previous, max_iterations=target))
        await self._persist()
        return target

    async def continue_execution(self) -> None:
        """Resume a paused engine or restart the loop after it stopped."""
        if self._state.status is EngineStatus.PAUSED:
            await self.resume()
            return
        if self.is_running:
            raise AlreadyRunningError
        await self.start()

    async def refresh_tasks(self) -> list[Task]:
        self._tasks = await self._tracker.get_tasks()
        open_count = sum(1 for task in self._tasks if task.status is TaskStatus.OPEN)
        await self._emit(TasksRefreshed(total=len(self._tasks), open=open_count))
        await self._persist()
        return self.tasks

    async def stop(self) -> None:
        """End the loop after the current step and release the session lock."""
        self._stop_event.set()
        self._resume_event.set()
        if self._run_task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await self._run_task
        await self._drain_background()
        if self._lock is not None:
            self._lock.release()

    # ── Run loop ──────────────────────────────────────────────────────

    async def _run_loop(self) -> None:
        try:
            while True:
                if not await self._checkpoint():
                    await self._finish_stopped()
                    return
                if self._slots_exhausted():
                    await self._finish(StopReason.MAX_ITERATIONS)
                    return
                try:
                    task = await self._select_task()
                    if task is None:
                        await self._finish(StopReason.NO_TASKS)
                        return
                    await self._run_iteration(task)
                except TrackerError as exc:
                    await self._on_tracker_error(exc)
                    continue
                if self._state.status is EngineStatus.ERROR:
                    self._phase = EnginePhase.FAILED
                    return
                self._phase = EnginePhase.IDLE
                delay = self._config.engine.iteration_delay_ms / 1000.0
                if delay > 0:
                    await self._sleep_unless_woken(delay)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("Engine loop crashed")
            self._state.status = EngineStatus.ERROR
            self._phase = EnginePhase.FAILED
            await self._emit(EngineFailed(code="INTERNAL_ERROR", error=str(exc)))
            with contextlib.suppress(Exception):
                await self._persist()

    def _slots_exhausted(self) -> bool:
        bound = self._state.max_iterations
        return bound > 0 and self._state.iterations_run >= bound

    async def _checkpoint(self) -> bool:
        """Block while paused; False once a stop was requested."""
        while True:
            if self._stop_event.is_set():
                return False
            if self._state.status is not EngineStatus.PAUSED:
                return True
            await self._wait_any(self._resume_event, self._stop_event)

    async def _gate(self) -> None:
        """Defer the next step while paused; raise if interrupted or stopped."""
        while True:
            if self._interrupt_event.is_set():
                raise _IterationAborted("interrupted")
            if self._stop_event.is_set():
                raise _IterationAborted("stopped")
            if self._state.status is not EngineStatus.PAUSED:
                return
            await self._wait_any(self._resume_event, self._interrupt_event, self._stop_event)

    async def _wait_any(self, *events: asyncio.Event) -> None:
        waiters = [asyncio.ensure_future(event.wait()) for event in events]
        try:
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()

    async def _sleep_unless_woken(self, seconds: float) -> bool:
        """Sleep via the injected clock; False if interrupt or stop cut it short."""
        sleeper = asyncio.ensure_future(self._sleep(seconds))
        waiters = [
            asyncio.ensure_future(self._interrupt_event.wait()),
            asyncio.ensure_future(self._stop_event.wait()),
        ]
        try:
            await asyncio.wait([sleeper, *waiters], return_when=asyncio.FIRST_COMPLETED)
        finally:
            for pending in (sleeper, *waiters):
                pending.cancel()
        return not (self._interrupt_event.is_set() or self._stop_event.is_set())

    async def _select_task(self) -> Task | None:
        self._phase = EnginePhase.SELECTING_TASK
        self._tasks = await self._tracker.get_tasks()
        for index, task in enumerate(self._tasks):
            if task.status is TaskStatus.IN_PROGRESS:
                logger.warning("Task %s was left in progress; resetting to open", task.id)
                await self._tracker.update_task_status(task.id, TaskStatus.OPEN)
                self._tasks[index] = task.model_copy(update={"status": TaskStatus.OPEN})
        return select_next_task(self._tasks)

    # ── Iteration ─────────────────────────────────────────────────────

    async def _run_iteration(self, task: Task) -> None:
        state = self._state
        self._interrupt_event.clear()
        number = state.current_iteration + 1
        state.current_iteration = number
        iteration = Iteration(number=number, task_id=task.id, agent_id=self._active_agent_id())
        state.iteration_history.append(iteration)
        state.current_task = task.model_copy(deep=True)
        started = time.monotonic()

        await self._emit(TaskSelected(task_id=task.id, title=task.title, iteration=number))
        await self._emit(
            IterationStarted(iteration=number, task_id=task.id, agent_id=iteration.agent_id)
        )
        await self._set_task_status(task.id, TaskStatus.IN_PROGRESS)
        await self._persist()

        try:
            if self._should_check_primary():
                await self._gate()
                await self._attempt_recovery(iteration)

            self._phase = EnginePhase.BUILDING_PROMPT
            prompt = self._prompt_builder.build(
                state.current_task or task,
                PromptContext(
                    iteration=number,
                    max_iterations=state.max_iterations,
                    completion_marker=self._config.engine.completion_marker,
                    completed_dependencies=tuple(self._completed_dependencies(task)),
                ),
            )
            await self._emit(PromptBuilt(iteration=number, task_id=task.id, length=len(prompt)))
            await self._drive(iteration, task, prompt, started)
        except _IterationAborted as aborted:
            await self._end_interrupted(iteration, task, aborted.reason)
        finally:
            self._execution = None

    def _completed_dependencies(self, task: Task) -> list[str]:
        by_id = {t.id: t for t in self._tasks}
        return [
            by_id[dep].label
            for dep in task.dependencies
            if dep in by_id and by_id[dep].status is TaskStatus.COMPLETED
        ]

    def _active_agent_id(self) -> str:
        active = self._state.active_agent
        return active.agent_id if active is not None else self.primary_agent_id

    def _should_check_primary(self) -> bool:
        rate_config = self._config.rate_limit
        return (
            rate_config.enabled
            and rate_config.recover_primary_between_iterations
            and self._state.on_fallback
        )

    async def _drive(self, iteration: Iteration, task: Task, prompt: str, started: float) -> None:
        """Run attempts until the iteration completes, fails, pauses or is cut short."""
        error_config = self._config.error_handling
        rate_detections = 0
        error_retries = 0
        tried: list[str] = []

        while True:
            await self._gate()
            agent_id = self._active_agent_id()
            agent = self._agents.get(agent_id)
            iteration.attempts += 1
            await self._emit(
                AgentStarted(
                    iteration=iteration.number,
                    task_id=task.id,
                    agent_id=agent_id,
                    attempt=iteration.attempts,
                )
            )
            result = await self._execute(iteration, agent, prompt)
            iteration.exit_code = result.exit.code
            if result.interrupted:
                raise _IterationAborted("interrupted")

            self._phase = EnginePhase.DETECTING_OUTCOME
            if result.completed:
                await self._complete(iteration, task, agent_id, started)
                return

            detection = (
                self._detector.detect(
                    agent, stderr=result.stderr, stdout=result.stdout, exit_code=result.exit.code
                )
                if self._config.rate_limit.enabled
                else NOT_RATE_LIMITED
            )
            if detection.is_rate_limit:
                condition = TransientAgentCondition(
                    agent_id, detection.message, retry_after=detection.retry_after
                )
                rate_detections += 1
                self._record_rate_limit(agent_id, rate_detections)
                logger.warning("%s (detection %d)", condition, rate_detections)
                await self._emit(
                    RateLimitDetected(
                        iteration=iteration.number,
                        agent_id=agent_id,
                        message=detection.message,
                        retry_after=detection.retry_after,
                        retry_count=rate_detections,
                    )
                )
                if self._backoff.allows_retry(rate_detections):
                    delay = self._backoff.delay_seconds(rate_detections, condition.retry_after)
                    await self._wait_before_retry(
                        iteration, agent_id, rate_detections, delay, "rate_limit"
                    )
                    continue

                tried.append(agent_id)
                self._phase = EnginePhase.SWITCHING_AGENT
                next_agent = await self._selector.select(agent_id, tried)
                if next_agent is None:
                    await self._fallback_exhausted(iteration, task, tried)
                    return
                await self._switch_agent(iteration, agent_id, next_agent, SwitchReason.RATE_LIMIT)
                rate_detections = 0
                error_retries = 0
                continue

            if result.exit.success:
                await self._finish_without_marker(iteration, task, agent_id, started)
                return

            error = FatalAgentError(agent_id, result.exit.code, self._failure_detail(result))
            if (
                error_config.strategy is FailureStrategy.RETRY
                and error_retries < error_config.max_retries
            ):
                error_retries += 1
                logger.warning("%s; retry %d/%d", error, error_retries, error_config.max_retries)
                await self._wait_before_retry(
                    iteration,
                    agent_id,
                    error_retries,
                    error_config.retry_delay_ms / 1000.0,
                    "error",
                )
                continue
            await self._fail(iteration, task, agent_id, error)
            return

    async def _wait_before_retry(
        self, iteration: Iteration, agent_id: str, attempt: int, delay: float, reason: str
    ) -> None:
        self._phase = EnginePhase.RETRY_WAITING
        await self._emit(
            RetryScheduled(
                iteration=iteration.number,
                agent_id=agent_id,
                attempt=attempt,
                delay_seconds=delay,
                reason=reason,
            )
        )
        await self._persist()
        if not await self._sleep_unless_woken(delay):
            raise _IterationAborted(
                "interrupted" if self._interrupt_event.is_set() else "stopped"
            )

    @staticmethod
    def _failure_detail(result: AttemptResult) -> str:
        if result.exit.timed_out:
            return "timed out"
        lines = [line for line in result.stderr.strip().splitlines() if line.strip()]
        if lines:
            return lines[-1][:300]
        if result.exit.signal is not None:
            return f"killed by signal {result.exit.signal}"
        return ""

    async def _execute(
        self, iteration: Iteration, agent: AgentPlugin, prompt: str
    ) -> AttemptResult:
        self._phase = EnginePhase.EXECUTING
        options = ExecuteOptions(cwd=self._project_root)
        try:
            execution = await agent.execute(prompt, options)
        except OSError as exc:
            logger.error("Failed to launch %s: %s", agent.id, exc)
            return AttemptResult(
                exit=ExitRecord(code=127), completed=False, stdout="", stderr=str(exc)
            )
        self._execution = execution

        scanner = CompletionScanner(self._config.engine.completion_marker)
        completion = CompletionObserver(scanner)
        observer = RateLimitObserver(self._config.engine.output_tail_chars, STDERR_TAIL_CHARS)
        fanout = OutputFanout(
            execution,
            [completion, observer, _OutputForwarder(self, iteration.number, agent.id)],
        )
        pump = asyncio.ensure_future(fanout.run())
        interrupt_waiter = asyncio.ensure_future(self._interrupt_event.wait())
        interrupted = False
        try:
            await asyncio.wait([pump, interrupt_waiter], return_when=asyncio.FIRST_COMPLETED)
            if not pump.done():
                interrupted = True
                logger.info("Interrupting %s", agent.id)
                await execution.interrupt()
            exit_record = await pump
        finally:
            interrupt_waiter.cancel()
            if not pump.done():
                pump.cancel()
        return AttemptResult(
            exit=exit_record,
            completed=scanner.found and not interrupted,
            stdout=observer.stdout.text,
            stderr=observer.stderr.text,
            interrupted=interrupted,
        )

    # ── Agent switching ───────────────────────────────────────────────

    def _record_rate_limit(self, agent_id: str, detections: int) -> None:
        state = self._state
        current = state.rate_limit_state or RateLimitState(primary_agent_id=self.primary_agent_id)
        update: dict[str, object] = {"retry_count": detections}
        if agent_id == self.primary_agent_id and current.limited_at is None:
            update["limited_at"] = utc_now()
        state.rate_limit_state = current.model_copy(update=update)

    async def _switch_agent(
        self, iteration: Iteration, from_agent: str, to_agent: str, reason: SwitchReason
    ) -> None:
        state = self._state
        now = utc_now()
        record = iteration.append_switch(
            AgentSwitchRecord(at=now, from_agent=from_agent, to_agent=to_agent, reason=reason)
        )
        if reason is SwitchReason.RECOVERY or to_agent == self.primary_agent_id:
            state.rate_limit_state = None
            state.active_agent = ActiveAgentState(
                agent_id=to_agent, reason=ActiveAgentReason.PRIMARY, since=record.at
            )
        else:
            current = state.rate_limit_state or RateLimitState(
                primary_agent_id=self.primary_agent_id
            )
            state.rate_limit_state = current.model_copy(
                update={
                    "limited_at": current.limited_at or now,
                    "fallback_agent_id": to_agent,
                    "retry_count": 0,
                }
            )
            state.active_agent = ActiveAgentState(
                agent_id=to_agent, reason=ActiveAgentReason.FALLBACK, since=record.at
            )
        iteration.agent_id = to_agent
        logger.info("Switched agent %s -> %s (%s)", from_agent, to_agent, reason)
        await self._emit(
            AgentSwitched(
                iteration=iteration.number,
                from_agent=from_agent,
                to_agent=to_agent,
                reason=reason.value,
            )
        )
        await self._persist()

    async def _attempt_recovery(self, iteration: Iteration) -> None:
        self._phase = EnginePhase.RECOVERING_PRIMARY
        primary = self.primary_agent_id
        success, detail = await self._check_primary()
        await self._emit(
            RecoveryAttempted(
                iteration=iteration.number, primary_agent=primary, success=success, detail=detail
            )
        )
        if success:
            await self._switch_agent(
                iteration, self._active_agent_id(), primary, SwitchReason.RECOVERY
            )
        else:
            logger.info("Primary %s still unavailable, staying on fallback: %s", primary, detail)

    async def _check_primary(self) -> tuple[bool, str]:
        """Send a tiny synthetic prompt to the primary under a hard timeout.

        Interrupt and stop cut the check short: its process is signalled and the
        iteration ends as interrupted without recording a recovery.
        """
        agent = self._agents.get(self.primary_agent_id)
        timeout = self._config.rate_limit.recovery_probe_timeout_ms / 1000.0
        check = _RecoveryCheck(
            stdout=TailBuffer(self._config.engine.output_tail_chars),
            stderr=TailBuffer(STDERR_TAIL_CHARS),
        )
        runner = asyncio.ensure_future(self._run_recovery_check(agent, check, timeout))
        waiters = [
            asyncio.ensure_future(self._interrupt_event.wait()),
            asyncio.ensure_future(self._stop_event.wait()),
        ]
        try:
            done, _ = await asyncio.wait(
                [runner, *waiters], timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            for waiter in waiters:
                waiter.cancel()

        if runner not in done:
            runner.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await runner
            if self._interrupt_event.is_set() or self._stop_event.is_set():
                if check.execution is not None:
                    logger.info("Interrupting recovery check of %s", agent.id)
                    await check.execution.interrupt()
                raise _IterationAborted(
                    "interrupted" if self._interrupt_event.is_set() else "stopped"
                )
            if check.execution is not None:
                self._spawn_background(check.execution.interrupt())
            return False, f"recovery check timed out after {timeout:g}s"

        try:
            exit_record = runner.result()
        except OSError as exc:
            return False, f"recovery check failed to start: {exc}"
        if exit_record is None:
            if check.unavailable is not None:
                return False, check.unavailable
            return False, "recovery check ended without an exit status"
        detection = self._detector.detect(
            agent, stderr=check.stderr.text, stdout=check.stdout.text, exit_code=exit_record.code
        )
        if detection.is_rate_limit:
            return False, detection.message or "still rate limited"
        if not exit_record.success:
            return False, f"recovery check exited with {exit_record.code}"
        return True, "primary agent responded"

    async def _run_recovery_check(
        self, agent: AgentPlugin, check: _RecoveryCheck, timeout: float
    ) -> ExitRecord | None:
        detected = await agent.detect()
        if not detected.available:
            check.unavailable = detected.error or "primary agent unavailable"
            return None
        check.execution = await agent.execute(
            PROBE_PROMPT, ExecuteOptions(cwd=self._project_root, timeout_seconds=timeout)
        )
        exit_record: ExitRecord | None = None
        async with contextlib.aclosing(check.execution.stream()) as stream:
            async for item in stream:
                if isinstance(item, ExitRecord):
                    exit_record = item
                elif item.stream == "stdout":
                    check.stdout.append(item.text)
                else:
                    check.stderr.append(item.text)
        return exit_record

    # ── Iteration endings ─────────────────────────────────────────────

    def _close_iteration(
        self,
        iteration: Iteration,
        outcome: IterationOutcome,
        *,
        task_completed: bool = False,
        error: str | None = None,
    ) -> None:
        iteration.ended_at = max(utc_now(), iteration.started_at)
        iteration.outcome = outcome
        iteration.task_completed = task_completed
        if error is not None:
            iteration.error = error
        self._state.current_task = None

    async def _complete(
        self, iteration: Iteration, task: Task, agent_id: str, started: float
    ) -> None:
        self._phase = EnginePhase.COMPLETING
        result = await self._tracker.complete_task(task.id)
        if not result.success:
            raise TrackerError(
                result.error or result.message or f"Could not complete {task.id}", task_id=task.id
            )
        self._update_local_task(task.id, TaskStatus.COMPLETED)
        self._close_iteration(iteration, IterationOutcome.COMPLETED, task_completed=True)
        if not self._state.on_fallback:
            self._state.rate_limit_state = None
        logger.info("Task %s completed by %s", task.id, agent_id)
        await self._emit(
            TaskStatusChanged(
                task_id=task.id,
                from_status=TaskStatus.IN_PROGRESS.value,
                to_status=TaskStatus.COMPLETED.value,
            )
        )
        await self._emit(
            IterationCompleted(
                iteration=iteration.number,
                task_id=task.id,
                agent_id=agent_id,
                task_completed=True,
                duration_ms=int((time.monotonic() - started) * 1000),
            )
        )
        await self._persist()

    async def _finish_without_marker(
        self, iteration: Iteration, task: Task, agent_id: str, started: float
    ) -> None:
        self._phase = EnginePhase.COMPLETING
        logger.info("Agent %s exited cleanly without the completion marker", agent_id)
        self._close_iteration(iteration, IterationOutcome.COMPLETED)
        if not self._state.on_fallback:
            self._state.rate_limit_state = None
        await self._set_task_status(task.id, TaskStatus.OPEN)
        await self._emit(
            IterationCompleted(
                iteration=iteration.number,
                task_id=task.id,
                agent_id=agent_id,
                task_completed=False,
                duration_ms=int((time.monotonic() - started) * 1000),
            )
        )
        await self._persist()

    async def _fail(
        self, iteration: Iteration, task: Task, agent_id: str, error: FatalAgentError
    ) -> None:
        self._phase = EnginePhase.FAILING
        strategy = self._config.error_handling.strategy
        logger.error("%s (strategy=%s)", error, strategy)
        self._close_iteration(iteration, IterationOutcome.FAILED, error=str(error))

        if strategy is FailureStrategy.ABORT:
            await self._set_task_status(task.id, TaskStatus.OPEN)
            self._state.status = EngineStatus.ERROR
            self._state.stop_reason = StopReason.ABORTED
            await self._emit(
                IterationFailed(
                    iteration=iteration.number,
                    task_id=task.id,
                    agent_id=agent_id,
                    error=str(error),
                    action="abort",
                )
            )
            await self._emit(EngineFailed(code=error.code, error=str(error), task_id=task.id))
        else:
            await self._set_task_status(task.id, TaskStatus.BLOCKED)
            await self._emit(
                IterationFailed(
                    iteration=iteration.number,
                    task_id=task.id,
                    agent_id=agent_id,
                    error=str(error),
                    action="skip",
                )
            )
        await self._persist()

    async def _fallback_exhausted(
        self, iteration: Iteration, task: Task, tried: list[str]
    ) -> None:
        error = FallbackExhaustedError(tried)
        logger.error("%s", error)
        self._close_iteration(iteration, IterationOutcome.INTERRUPTED, error=str(error))
        await self._set_task_status(task.id, TaskStatus.OPEN)
        await self._emit(
            FallbackExhausted(
                iteration=iteration.number, task_id=task.id, tried=tuple(tried), message=str(error)
            )
        )
        await self._emit(
            IterationInterrupted(iteration=iteration.number, task_id=task.id, reason=error.code)
        )
        await self._enter_pause(str(error))

    async def _end_interrupted(self, iteration: Iteration, task: Task, reason: str) -> None:
        logger.info("Iteration %d %s", iteration.number, reason)
        self._close_iteration(iteration, IterationOutcome.INTERRUPTED, error=reason)
        self._interrupt_event.clear()
        await self._set_task_status(task.id, TaskStatus.OPEN)
        await self._emit(
            IterationInterrupted(iteration=iteration.number, task_id=task.id, reason=reason)
        )
        await self._persist()

    async def _on_tracker_error(self, exc: TrackerError) -> None:
        logger.error("Tracker error: %s", exc)
        iteration = self._state.open_iteration
        if iteration is not None:
            self._close_iteration(iteration, IterationOutcome.INTERRUPTED, error=str(exc))
            await self._emit(
                IterationInterrupted(
                    iteration=iteration.number, task_id=iteration.task_id, reason=exc.code
                )
            )
        self._state.current_task = None
        self._interrupt_event.clear()
        await self._enter_pause(f"Tracker error: {exc}")

    async def _enter_pause(self, reason: str) -> None:
        if self._state.status is EngineStatus.RUNNING:
            await self.pause(reason)
        else:
            self._state.pause_reason = reason
            await self._persist()

    async def _finish(self, reason: StopReason) -> None:
        self._state.status = EngineStatus.COMPLETED
        self._state.stop_reason = reason
        self._phase = EnginePhase.COMPLETED
        await self._emit_stopped(reason)

    async def _finish_stopped(self) -> None:
        self._state.status = EngineStatus.IDLE
        self._state.stop_reason = StopReason.STOPPED
        self._phase = EnginePhase.IDLE
        await self._emit_stopped(StopReason.STOPPED)

    async def _emit_stopped(self, reason: StopReason) -> None:
        logger.info(
            "Engine stopped (%s): %d iteration(s), %d task(s) completed",
            reason,
            self._state.iterations_run,
            self._state.tasks_completed,
        )
        await self._emit(
            EngineStopped(
                reason=reason.value,
                iterations_run=self._state.iterations_run,
                tasks_completed=self._state.tasks_completed,
            )
        )
        await self._persist()

    # ── Helpers ───────────────────────────────────────────────────────

    def _update_local_task(self, task_id: str, status: TaskStatus) -> None:
        for index, task in enumerate(self._tasks):
            if task.id == task_id:
                self._tasks[index] = task.model_copy(update={"status": status})
        current = self._state.current_task
        if current is not None and current.id == task_id:
            self._state.current_task = current.model_copy(update={"status": status})

    async def _set_task_status(self, task_id: str, status: TaskStatus) -> None:
        previous = next((t.status for t in self._tasks if t.id == task_id), None)
        updated = await self._tracker.update_task_status(task_id, status)
        if updated is None:
            raise TrackerError(f"Task {task_id} not found in tracker", task_id=task_id)
        self._update_local_task(task_id, status)
        if previous is not status:
            await self._emit(
                TaskStatusChanged(
                    task_id=task_id,
                    from_status=previous.value if previous is not None else "unknown",
                    to_status=status.value,
                )
            )

    async def _emit(self, event: EngineEvent) -> None:
        await self._bus.publish(event)

    async def _persist(self) -> None:
        # Until start/resume/restart claims the session, a saved file belongs to someone else.
        if not self._session_owned:
            return
        snapshot = SessionSnapshot(
            project_root=str(self._project_root),
            engine_state=self._state.snapshot(),
            tasks=self.tasks,
        )
        await self._store.save(snapshot)

    def _spawn_background(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _drain_background(self) -> None:
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)


__all__ = ["AttemptResult", "ExecutionEngine", "select_next_task"]
