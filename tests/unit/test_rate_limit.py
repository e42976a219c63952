"""Tests for rate-limit classification and retry-after parsing."""

from __future__ import annotations

import pytest

from tests.helpers import FakeAgent
from treadle.engine import RateLimitDetector
from treadle.engine.rate_limit import parse_retry_after

pytestmark = pytest.mark.unit


class TestParseRetryAfter:
    @pytest.mark.parametrize(
        ("text", "expected"),
        [
            ("Retry-After: 30", 30.0),
            ("please retry after 2 minutes", 120.0),
            ("retry after 1500ms", 1.5),
            ("Try again in 45 seconds.", 45.0),
            ("retrying in 1 hour", 3600.0),
            ('{"error": {"retry_after_ms": 2500}}', 2.5),
            ('{"retryAfter": "12"}', 12.0),
        ],
    )
    def test_recognised_forms(self, text: str, expected: float) -> None:
        assert parse_retry_after(text) == pytest.approx(expected)

    @pytest.mark.parametrize("text", ["", "rate limit exceeded", "retry later"])
    def test_absent(self, text: str) -> None:
        assert parse_retry_after(text) is None


class TestRateLimitDetector:
    def test_stderr_pattern_matches(self) -> None:
        agent = FakeAgent("claude", patterns=[r"429", r"rate.?limit"])
        result = RateLimitDetector().detect(
            agent, stderr="info: starting\nAPI error 429: Rate-Limit reached\n", exit_code=1
        )

        assert result.is_rate_limit is True
        assert result.message == "API error 429: Rate-Limit reached"
        assert result.retry_after is None

    def test_stdout_ignored_on_clean_exit(self) -> None:
        agent = FakeAgent("claude")
        detector = RateLimitDetector()

        clean = detector.detect(agent, stderr="", stdout="I added rate limit handling", exit_code=0)
        failed = detector.detect(agent, stderr="", stdout="rate limit hit", exit_code=1)

        assert clean.is_rate_limit is False
        assert failed.is_rate_limit is True

    def test_structured_error_code(self) -> None:
        agent = FakeAgent("codex", patterns=[], error_code="Too_Many_Requests")
        result = RateLimitDetector().detect(
            agent, stderr="", stdout='{"type":"error"} retry after 20s', exit_code=1
        )

        assert result.is_rate_limit is True
        assert result.message == "codex reported Too_Many_Requests"
        assert result.retry_after == 20.0

    def test_unknown_structured_code_is_not_rate_limit(self) -> None:
        agent = FakeAgent("codex", patterns=[], error_code="invalid_request")
        result = RateLimitDetector().detect(agent, stderr="", stdout="{}", exit_code=1)
        assert result.is_rate_limit is False

    def test_exit_code_heuristic(self) -> None:
        agent = FakeAgent("gemini", patterns=[], exit_codes=frozenset({75}))
        detector = RateLimitDetector()

        assert detector.detect(agent, stderr="", exit_code=75).is_rate_limit is True
        assert detector.detect(agent, stderr="", exit_code=1).is_rate_limit is False

    def test_invalid_pattern_matches_literally(self) -> None:
        agent = FakeAgent("odd", patterns=["quota [exceeded"])
        result = RateLimitDetector().detect(agent, stderr="quota [exceeded today", exit_code=1)
        assert result.is_rate_limit is True

    def test_genuine_error_is_not_rate_limit(self) -> None:
        agent = FakeAgent("claude")
        result = RateLimitDetector().detect(
            agent, stderr="Traceback: KeyError 'x'", exit_code=1
        )
        assert result.is_rate_limit is False
        assert result.message is None

    def test_long_lines_are_shortened(self) -> None:
        agent = FakeAgent("claude")
        line = "rate limit " + "x" * 1000
        result = RateLimitDetector().detect(agent, stderr=line, exit_code=1)
        assert result.message is not None
        assert result.message.endswith("...")
        assert len(result.message) == 303
