"""Tests for task prompt rendering."""

from __future__ import annotations

import pytest

from treadle.config import COMPLETION_MARKER
from treadle.models import Task
from treadle.prompts import (
    PROBE_PROMPT,
    PromptContext,
    TemplatePromptBuilder,
    build_prd_prompt,
)

pytestmark = pytest.mark.unit


def _context(**kwargs: object) -> PromptContext:
    defaults: dict[str, object] = {
        "iteration": 2,
        "max_iterations": 10,
        "completion_marker": COMPLETION_MARKER,
    }
    return PromptContext(**(defaults | kwargs))  # type: ignore[arg-type]


class TestTemplatePromptBuilder:
    def test_default_template(self) -> None:
        task = Task(id="t7", title="Add login", description="Use OAuth.")

        prompt = TemplatePromptBuilder().build(task, _context())

        assert "Iteration 2 of 10" in prompt
        assert "## Task t7: Add login" in prompt
        assert "Use OAuth." in prompt
        assert COMPLETION_MARKER in prompt
        assert "Completed prerequisites" not in prompt

    def test_dependencies_and_fallbacks(self) -> None:
        task = Task(id="t8")

        prompt = TemplatePromptBuilder().build(
            task, _context(max_iterations=0, completed_dependencies=("t1", "t2"))
        )

        assert "of unbounded" in prompt
        assert "## Task t8: t8" in prompt
        assert "No description provided." in prompt
        assert "- t1\n- t2" in prompt

    def test_marker_is_appended_when_template_omits_it(self) -> None:
        builder = TemplatePromptBuilder("Do {task_id} now.")

        prompt = builder.build(Task(id="x"), _context(completion_marker="DONE!"))

        assert prompt == "Do x now.\n\nWhen done, print: DONE!\n"

    def test_probe_prompt_is_short(self) -> None:
        assert PROBE_PROMPT.startswith("Reply with the single word OK")
        assert "\n" not in PROBE_PROMPT


class TestPrdPrompt:
    def test_describes_the_importable_format(self) -> None:
        prompt = build_prd_prompt()

        assert "### US-001: Title" in prompt
        assert "**Acceptance Criteria:**" in prompt
        assert "Plain text description" in prompt
        assert "no **Description:** prefix" in prompt
        assert '"**Description:** As a user' not in prompt
        assert "## Guidance" not in prompt

    def test_skill_source_without_front_matter(self) -> None:
        skill = "---\ntitle: My Skill\n---\nSome skill instructions with {braces}."

        prompt = build_prd_prompt(skill)

        assert "## Guidance\n\nSome skill instructions with {braces}." in prompt
        assert "title: My Skill" not in prompt
        assert "no **Description:** prefix" in prompt
