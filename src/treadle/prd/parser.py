"""Turn PRD markdown into tracker tasks.

A PRD lists user stories under headings like ``### US-001: Title``. The story
description is the first paragraph under the heading, written either as plain
text, behind a ``**Description:**`` label, or with bold keywords
(``**As a** user``). Labelled sections such as ``**Acceptance Criteria:**``,
``**Priority:**`` and ``**Depends on:**`` follow it.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from treadle.errors import PrdError
from treadle.models import Task

if TYPE_CHECKING:
    from pathlib import Path

logger = logging.getLogger(__name__)

_DOCUMENT_TITLE = re.compile(r"^#\s+(?:PRD:\s*)?(?P<name>.+?)\s*$")
_STORY_HEADING = re.compile(r"^#{2,4}\s+(?P<id>US-\d+)\s*[:-]\s*(?P<title>.+?)\s*$")
_HEADING = re.compile(r"^#{1,6}\s")
_RULE = re.compile(r"^\s*(?:-{3,}|\*{3,}|_{3,})\s*$")
_LABEL = re.compile(r"^\s*\*\*(?P<label>[^*]+?)(?::\*\*|\*\*:)\s*(?P<value>.*)$")
_LIST_ITEM = re.compile(r"^\s*[-*]\s+(?:\[[ xX]\]\s*)?(?P<text>.+?)\s*$")
_PRIORITY = re.compile(r"^P?(?P<level>\d)\b", re.IGNORECASE)

_DESCRIPTION_LABEL = "description"
_CRITERIA_LABEL = "acceptance criteria"
_DEPENDENCY_LABELS = frozenset({"depends on", "dependencies"})
_NO_DEPENDENCIES = frozenset({"none", "n/a", "-"})
_MAX_PRIORITY = 4
DEFAULT_PRIORITY = 2


@dataclass(frozen=True, slots=True)
class UserStory:
    id: str
    title: str
    description: str
    acceptance_criteria: tuple[str, ...] = ()
    priority: int | None = None
    depends_on: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class PrdDocument:
    name: str
    user_stories: list[UserStory] = field(default_factory=list)


def _clean(text: str) -> str:
    return " ".join(text.replace("**", "").split())


def _extract_description(lines: list[str], title: str) -> str:
    """First paragraph under the heading, stopping at any labelled section."""
    parts: list[str] = []
    for line in lines:
        if _HEADING.match(line) or _RULE.match(line):
            break
        if not line.strip():
            if parts:
                break
            continue
        label = _LABEL.match(line)
        if label is not None:
            if label["label"].strip().lower() != _DESCRIPTION_LABEL:
                break
            line = label["value"]
        cleaned = _clean(line)
        if cleaned:
            parts.append(cleaned)
    return " ".join(parts) or title


def _parse_priority(value: str) -> int | None:
    found = _PRIORITY.match(value.strip())
    if found is None:
        return None
    return min(int(found["level"]), _MAX_PRIORITY)


def _parse_dependencies(value: str) -> tuple[str, ...]:
    ids = (item.strip(" .`") for item in re.split(r"[,\s]+", _clean(value)))
    return tuple(dict.fromkeys(i for i in ids if i and i.lower() not in _NO_DEPENDENCIES))


def _parse_story(story_id: str, title: str, lines: list[str]) -> UserStory:
    criteria: list[str] = []
    priority: int | None = None
    depends_on: tuple[str, ...] = ()
    in_criteria = False
    for line in lines:
        label = _LABEL.match(line)
        if label is not None:
            name = label["label"].strip().lower()
            value = label["value"]
            in_criteria = name == _CRITERIA_LABEL
            if name == "priority":
                priority = _parse_priority(_clean(value))
            elif name in _DEPENDENCY_LABELS:
                depends_on = _parse_dependencies(value)
            continue
        if _RULE.match(line):
            in_criteria = False
            continue
        item = _LIST_ITEM.match(line)
        if in_criteria and item is not None:
            criteria.append(_clean(item["text"]))
    return UserStory(
        id=story_id,
        title=title,
        description=_extract_description(lines, title),
        acceptance_criteria=tuple(criteria),
        priority=priority,
        depends_on=depends_on,
    )


def parse_prd_markdown(markdown: str) -> PrdDocument:
    name = ""
    stories: list[UserStory] = []
    current: tuple[str, str] | None = None
    body: list[str] = []

    def flush() -> None:
        if current is not None:
            stories.append(_parse_story(current[0], current[1], body))

    for line in markdown.splitlines():
        heading = _STORY_HEADING.match(line)
        if heading is not None:
            flush()
            current = (heading["id"], _clean(heading["title"]))
            body = []
            continue
        if _HEADING.match(line):
            flush()
            current = None
            body = []
            title = _DOCUMENT_TITLE.match(line)
            if title is not None and not name:
                name = _clean(title["name"])
            continue
        if current is not None:
            body.append(line)
    flush()
    return PrdDocument(name=name, user_stories=stories)


def load_prd(path: Path) -> PrdDocument:
    try:
        markdown = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise PrdError(f"Cannot read PRD {path}: {exc}") from exc
    document = parse_prd_markdown(markdown)
    logger.debug("Parsed %d user stories from %s", len(document.user_stories), path)
    return document


def story_to_task(story: UserStory) -> Task:
    description = story.description
    if story.acceptance_criteria:
        checklist = "\n".join(f"- [ ] {item}" for item in story.acceptance_criteria)
        description = f"{description}\n\nAcceptance criteria:\n{checklist}"
    return Task(
        id=story.id,
        title=story.title,
        description=description,
        priority=DEFAULT_PRIORITY if story.priority is None else story.priority,
        dependencies=list(story.depends_on),
        metadata={"source": "prd", "acceptance_criteria": list(story.acceptance_criteria)},
    )


def prd_to_tasks(document: PrdDocument) -> list[Task]:
    """Convert every story, rejecting documents with no stories or repeated ids."""
    if not document.user_stories:
        raise PrdError("No user stories found (expected headings like '### US-001: Title')")
    seen: set[str] = set()
    for story in document.user_stories:
        if story.id in seen:
            raise PrdError(f"User story {story.id} appears more than once")
        seen.add(story.id)
    return [story_to_task(story) for story in document.user_stories]


__all__ = [
    "PrdDocument",
    "UserStory",
    "load_prd",
    "parse_prd_markdown",
    "prd_to_tasks",
    "story_to_task",
]
