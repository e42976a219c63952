"""Tests for completion marker scanning."""

from __future__ import annotations

import pytest
from hypothesis import given
from hypothesis import strategies as st

from treadle.config import COMPLETION_MARKER
from treadle.engine.completion import CompletionScanner

pytestmark = pytest.mark.unit


class TestCompletionScanner:
    def test_marker_in_single_chunk(self) -> None:
        scanner = CompletionScanner(COMPLETION_MARKER)
        assert scanner.feed(f"done\n{COMPLETION_MARKER}\n") is True

    def test_marker_split_across_chunks(self) -> None:
        scanner = CompletionScanner(COMPLETION_MARKER)
        assert scanner.feed("work finished <prom") is False
        assert scanner.feed("ise>COMPLE") is False
        assert scanner.feed("TE</promise>") is True

    def test_stays_found(self) -> None:
        scanner = CompletionScanner("DONE")
        scanner.feed("DONE")
        assert scanner.feed("more output") is True
        assert scanner.found is True

    def test_reset(self) -> None:
        scanner = CompletionScanner("DONE")
        scanner.feed("DO")
        scanner.reset()
        assert scanner.feed("NE") is False

    def test_single_character_marker(self) -> None:
        scanner = CompletionScanner("!")
        assert scanner.feed("abc") is False
        assert scanner.feed("!") is True

    def test_empty_marker_rejected(self) -> None:
        with pytest.raises(ValueError):
            CompletionScanner("")

    @given(
        prefix=st.text(alphabet="abc<>/ \n", max_size=40),
        cuts=st.lists(st.integers(min_value=0, max_value=80), max_size=6),
    )
    def test_any_chunking_finds_marker(self, prefix: str, cuts: list[int]) -> None:
        text = prefix + COMPLETION_MARKER + "\n"
        bounds = sorted({0, len(text), *(c for c in cuts if c < len(text))})
        scanner = CompletionScanner(COMPLETION_MARKER)

        for start, end in zip(bounds, bounds[1:], strict=False):
            scanner.feed(text[start:end])

        assert scanner.found is True
