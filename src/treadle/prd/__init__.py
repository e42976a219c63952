from __future__ import annotations

from treadle.prd.parser import (
    PrdDocument,
    UserStory,
    load_prd,
    parse_prd_markdown,
    prd_to_tasks,
    story_to_task,
)

__all__ = [
    "PrdDocument",
    "UserStory",
    "load_prd",
    "parse_prd_markdown",
    "prd_to_tasks",
    "story_to_task",
]
