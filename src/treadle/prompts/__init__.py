"""Prompt building and template loading."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from functools import cache
from importlib.resources import files
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from treadle.models import Task


@cache
def _load_prompt_template(filename: str) -> str:
    """Load a prompt template from package resources."""
    return (files("treadle.prompts") / filename).read_text(encoding="utf-8")


TASK_PROMPT = _load_prompt_template("task_prompt.md")
PROBE_PROMPT = _load_prompt_template("probe_prompt.md").strip()
PRD_PROMPT = _load_prompt_template("prd_prompt.md")

_FRONT_MATTER = re.compile(r"\A---\s*\n.*?\n---\s*(?:\n|\Z)", re.DOTALL)


def build_prd_prompt(skill_source: str = "") -> str:
    """Prompt for an agent that drafts a PRD ``treadle prd import`` can read.

    ``skill_source`` is an optional skill file; its YAML front matter is dropped
    and the rest is included ahead of the format rules.
    """
    skill = _FRONT_MATTER.sub("", skill_source, count=1).strip()
    skill_section = f"\n## Guidance\n\n{skill}\n" if skill else ""
    return PRD_PROMPT.format(skill_section=skill_section)


@dataclass(frozen=True, slots=True, kw_only=True)
class PromptContext:
    iteration: int
    max_iterations: int
    completion_marker: str
    completed_dependencies: tuple[str, ...] = field(default_factory=tuple)


class PromptBuilder(Protocol):
    def build(self, task: Task, context: PromptContext) -> str: ...


class TemplatePromptBuilder:
    """Renders ``task_prompt.md`` (or a custom template) with ``str.format``."""

    def __init__(self, template: str = TASK_PROMPT) -> None:
        self._template = template

    def build(self, task: Task, context: PromptContext) -> str:
        dependencies_section = ""
        if context.completed_dependencies:
            deps = "\n".join(f"- {dep}" for dep in context.completed_dependencies)
            dependencies_section = f"\n## Completed prerequisites\n{deps}\n"
        prompt = self._template.format(
            iteration=context.iteration,
            max_iterations_label=context.max_iterations or "unbounded",
            task_id=task.id,
            title=task.title or task.id,
            description=task.description or "No description provided.",
            dependencies_section=dependencies_section,
            completion_marker=context.completion_marker,
        )
        if context.completion_marker not in prompt:
            prompt = f"{prompt.rstrip()}\n\nWhen done, print: {context.completion_marker}\n"
        return prompt


__all__ = [
    "PRD_PROMPT",
    "PROBE_PROMPT",
    "TASK_PROMPT",
    "PromptBuilder",
    "PromptContext",
    "TemplatePromptBuilder",
    "build_prd_prompt",
]
