"""Classify agent failures as transient rate limits or genuine errors."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from treadle.agents.base import AgentPlugin

logger = logging.getLogger(__name__)

RATE_LIMIT_ERROR_CODES = frozenset(
    {
        "rate_limit_error",
        "rate_limit_exceeded",
        "rate_limited",
        "too_many_requests",
        "resource_exhausted",
        "overloaded_error",
        "engine_overloaded",
        "exceeded_current_quota",
        "insufficient_quota",
        "429",
    }
)

_UNIT_SECONDS = {
    "ms": 0.001,
    "millisecond": 0.001,
    "milliseconds": 0.001,
    "s": 1.0,
    "sec": 1.0,
    "secs": 1.0,
    "second": 1.0,
    "seconds": 1.0,
    "m": 60.0,
    "min": 60.0,
    "mins": 60.0,
    "minute": 60.0,
    "minutes": 60.0,
    "h": 3600.0,
    "hour": 3600.0,
    "hours": 3600.0,
}
_UNIT = r"(ms|milliseconds?|s|secs?|seconds?|m|mins?|minutes?|h|hours?)"
_RETRY_AFTER_PATTERNS = (
    re.compile(r'"retry_?after_ms"\s*:\s*(\d+(?:\.\d+)?)()', re.IGNORECASE),
    re.compile(r'"retry_?after"\s*:\s*"?(\d+(?:\.\d+)?)()', re.IGNORECASE),
    re.compile(rf"retry[- ]after[:=\s]+(\d+(?:\.\d+)?)\s*(?:{_UNIT}\b)?", re.IGNORECASE),
    re.compile(rf"(?:try again|retry|retrying) in\s+(\d+(?:\.\d+)?)\s*{_UNIT}\b", re.IGNORECASE),
)
_MAX_MESSAGE_CHARS = 300


@dataclass(frozen=True, slots=True)
class RateLimitResult:
    is_rate_limit: bool
    message: str | None = None
    retry_after: float | None = None  # seconds, only when the agent said so


NOT_RATE_LIMITED = RateLimitResult(is_rate_limit=False)


def parse_retry_after(text: str) -> float | None:
    """Extract an explicit retry-after duration in seconds from agent output."""
    for index, pattern in enumerate(_RETRY_AFTER_PATTERNS):
        match = pattern.search(text)
        if match is None:
            continue
        value = float(match.group(1))
        unit = (match.group(2) or "").lower()
        if index == 0:
            return value / 1000.0
        return value * _UNIT_SECONDS.get(unit, 1.0)
    return None


def _line_around(text: str, start: int, end: int) -> str:
    line_start = text.rfind("\n", 0, start) + 1
    line_end = text.find("\n", end)
    line = text[line_start : line_end if line_end != -1 else len(text)].strip()
    if len(line) > _MAX_MESSAGE_CHARS:
        line = line[:_MAX_MESSAGE_CHARS] + "..."
    return line


class RateLimitDetector:
    """Matches agent output against per-agent patterns, structured codes and exit codes.

    stderr is always inspected; stdout only when the process exited non-zero,
    since successful output may legitimately discuss rate limits.
    """

    def __init__(self, *, error_codes: frozenset[str] = RATE_LIMIT_ERROR_CODES) -> None:
        self._error_codes = frozenset(code.lower() for code in error_codes)
        self._compiled: dict[tuple[str, tuple[str, ...]], list[re.Pattern[str]]] = {}

    def _patterns_for(self, agent: AgentPlugin) -> list[re.Pattern[str]]:
        raw = tuple(agent.rate_limit_patterns())
        key = (agent.id, raw)
        compiled = self._compiled.get(key)
        if compiled is None:
            compiled = []
            for pattern in raw:
                try:
                    compiled.append(re.compile(pattern, re.IGNORECASE))
                except re.error:
                    logger.warning("Invalid rate limit pattern for %s: %r", agent.id, pattern)
                    compiled.append(re.compile(re.escape(pattern), re.IGNORECASE))
            self._compiled[key] = compiled
        return compiled

    def detect(
        self,
        agent: AgentPlugin,
        *,
        stderr: str,
        stdout: str = "",
        exit_code: int | None = None,
    ) -> RateLimitResult:
        combined = f"{stderr}\n{stdout}"

        code = agent.structured_error_code(stdout)
        if code is not None and code.lower() in self._error_codes:
            return RateLimitResult(
                is_rate_limit=True,
                message=f"{agent.id} reported {code}",
                retry_after=parse_retry_after(combined),
            )

        sources = [stderr]
        if exit_code != 0:
            sources.append(stdout)
        for pattern in self._patterns_for(agent):
            for text in sources:
                match = pattern.search(text)
                if match is not None:
                    return RateLimitResult(
                        is_rate_limit=True,
                        message=_line_around(text, match.start(), match.end()),
                        retry_after=parse_retry_after(combined),
                    )

        if exit_code is not None and exit_code in agent.rate_limit_exit_codes:
            return RateLimitResult(
                is_rate_limit=True,
                message=f"{agent.id} exited with rate limit code {exit_code}",
                retry_after=parse_retry_after(combined),
            )

        return NOT_RATE_LIMITED


__all__ = [
    "NOT_RATE_LIMITED",
    "RATE_LIMIT_ERROR_CODES",
    "RateLimitDetector",
    "RateLimitResult",
    "parse_retry_after",
]
