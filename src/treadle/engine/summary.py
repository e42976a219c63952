"""Human readable end-of-run summary derived from persisted iteration records."""

from __future__ import annotations

from typing import TYPE_CHECKING

from treadle.models import IterationOutcome, SwitchReason

if TYPE_CHECKING:
    from treadle.models import EngineState, Iteration


def describe_iteration(iteration: Iteration) -> str:
    head = f"Iteration {iteration.number}: task {iteration.task_id}"
    rate_switches = [s for s in iteration.agent_switches if s.reason is SwitchReason.RATE_LIMIT]
    recoveries = [s for s in iteration.agent_switches if s.reason is SwitchReason.RECOVERY]

    match iteration.outcome:
        case IterationOutcome.COMPLETED if iteration.task_completed:
            line = f"{head} completed"
            if rate_switches:
                line += f" on fallback agent {rate_switches[-1].to_agent} due to rate limit"
            else:
                line += f" by {iteration.agent_id}"
        case IterationOutcome.COMPLETED:
            line = f"{head} finished without the completion marker ({iteration.agent_id})"
        case IterationOutcome.FAILED:
            line = f"{head} failed on {iteration.agent_id}"
            if iteration.error:
                line += f": {iteration.error}"
        case IterationOutcome.INTERRUPTED:
            line = f"{head} interrupted"
            if iteration.error:
                line += f" ({iteration.error})"
        case _:
            line = f"{head} in progress on {iteration.agent_id}"

    if recoveries:
        line += f"; recovered to primary agent {recoveries[-1].to_agent}"
    return line


def summarize_run(state: EngineState) -> list[str]:
    lines = [describe_iteration(iteration) for iteration in state.iteration_history]
    bound = state.max_iterations or "unbounded"
    lines.append(
        f"{state.tasks_completed} task(s) completed in {state.iterations_run}/{bound} iteration(s)"
    )
    if state.stop_reason is not None:
        lines.append(f"Stopped: {state.stop_reason.value.replace('_', ' ')}")
    if state.pause_reason:
        lines.append(f"Paused: {state.pause_reason}")
    return lines


__all__ = ["describe_iteration", "summarize_run"]
