"""Console rendering of engine events and run summaries."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from treadle.agents.builtin import create_output_formatter
from treadle.engine.summary import summarize_run
from treadle.events import event_to_dict

if TYPE_CHECKING:
    from rich.console import Console

    from treadle.agents.base import OutputFormatter
    from treadle.events import EngineEvent
    from treadle.models import EngineState

_STYLES = {
    "engine_started": "bold cyan",
    "engine_stopped": "bold cyan",
    "engine_paused": "yellow",
    "engine_resumed": "cyan",
    "engine_failed": "bold red",
    "task_selected": "bold",
    "iteration_completed": "green",
    "iteration_failed": "red",
    "iteration_interrupted": "yellow",
    "rate_limit_detected": "yellow",
    "retry_scheduled": "dim",
    "agent_switched": "magenta",
    "fallback_exhausted": "bold red",
    "recovery_attempted": "magenta",
    "iterations_adjusted": "cyan",
    "gap": "dim",
}


def describe_event(payload: dict[str, Any]) -> str | None:
    """One line for an event payload; None for events not worth a line."""
    match payload.get("type"):
        case "engine_started":
            bound = payload["max_iterations"] or "unbounded"
            verb = "Resumed" if payload["resumed"] else "Started"
            return f"{verb} with {payload['primary_agent']} (max iterations: {bound})"
        case "engine_stopped":
            return (
                f"Stopped ({payload['reason']}): {payload['tasks_completed']} task(s) in "
                f"{payload['iterations_run']} iteration(s)"
            )
        case "engine_paused":
            return f"Paused: {payload['reason']}" if payload.get("reason") else "Paused"
        case "engine_resumed":
            return "Resumed"
        case "engine_failed":
            return f"Failed [{payload['code']}]: {payload['error']}"
        case "task_selected":
            return f"Iteration {payload['iteration']}: {payload['task_id']} {payload['title']}"
        case "iteration_completed":
            done = "completed" if payload["task_completed"] else "finished without marker"
            seconds = payload["duration_ms"] / 1000
            return f"  {payload['task_id']} {done} by {payload['agent_id']} in {seconds:.1f}s"
        case "iteration_failed":
            return f"  {payload['task_id']} failed ({payload['action']}): {payload['error']}"
        case "iteration_interrupted":
            return f"  {payload['task_id']} interrupted: {payload['reason']}"
        case "rate_limit_detected":
            return f"  Rate limit on {payload['agent_id']}: {payload.get('message') or ''}"
        case "retry_scheduled":
            return f"  Retrying {payload['agent_id']} in {payload['delay_seconds']:.1f}s"
        case "agent_switched":
            return (
                f"  Switched {payload['from_agent']} -> {payload['to_agent']} ({payload['reason']})"
            )
        case "fallback_exhausted":
            return f"  {payload['message']}"
        case "recovery_attempted":
            result = "recovered" if payload["success"] else "still unavailable"
            return f"  Primary {payload['primary_agent']} {result}: {payload['detail']}"
        case "iterations_adjusted":
            return f"Max iterations {payload['previous']} -> {payload['max_iterations']}"
        case "gap":
            return f"  ... {payload['dropped']} event(s) dropped"
    return None


_ITERATION_END = frozenset({"iteration_completed", "iteration_failed", "iteration_interrupted"})


class EventPrinter:
    """Synchronous bus handler that prints engine progress.

    With ``show_output`` agent output is echoed as it arrives; agents with
    structured stdout (Kimi's stream-json) are rendered line by line instead.
    """

    def __init__(self, console: Console, *, show_output: bool = False) -> None:
        self._console = console
        self._show_output = show_output
        self._formatters: dict[tuple[int, str], OutputFormatter | None] = {}

    def __call__(self, event: EngineEvent) -> None:
        self.print_payload(event_to_dict(event))

    def print_payload(self, payload: dict[str, Any]) -> None:
        event_type = payload.get("type")
        if event_type == "agent_output":
            if self._show_output:
                self._print_output(payload)
            return
        if event_type in _ITERATION_END:
            self._flush_output(payload["iteration"])
        line = describe_event(payload)
        if line is not None:
            style = _STYLES.get(payload["type"])
            self._console.print(line, style=style, highlight=False, markup=False)

    def _print_output(self, payload: dict[str, Any]) -> None:
        formatter = None
        if payload["stream"] == "stdout":
            key = (payload["iteration"], payload["agent_id"])
            if key not in self._formatters:
                self._formatters[key] = create_output_formatter(payload["agent_id"])
            formatter = self._formatters[key]
        if formatter is None:
            self._console.out(payload["chunk"], end="", highlight=False)
            return
        for line in formatter.feed(payload["chunk"]):
            self._console.out(line, highlight=False)

    def _flush_output(self, iteration: int) -> None:
        for key in [key for key in self._formatters if key[0] == iteration]:
            formatter = self._formatters.pop(key)
            if formatter is not None:
                for line in formatter.flush():
                    self._console.out(line, highlight=False)


def print_summary(console: Console, state: EngineState) -> None:
    console.rule("Summary")
    for line in summarize_run(state):
        console.print(line, highlight=False, markup=False)


__all__ = ["EventPrinter", "describe_event", "print_summary"]
