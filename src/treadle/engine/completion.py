"""Completion sentinel detection over chunked output."""

from __future__ import annotations


class CompletionScanner:
    """Finds the completion marker even when it is split across chunks."""

    def __init__(self, marker: str) -> None:
        if not marker:
            raise ValueError("Completion marker must not be empty")
        self._marker = marker
        self._carry = ""
        self._found = False

    @property
    def marker(self) -> str:
        return self._marker

    @property
    def found(self) -> bool:
        return self._found

    def feed(self, text: str) -> bool:
        """Scan one chunk; returns True once the marker has been seen."""
        if self._found or not text:
            return self._found
        window = self._carry + text
        if self._marker in window:
            self._found = True
            self._carry = ""
        else:
            keep = len(self._marker) - 1
            self._carry = window[-keep:] if keep else ""
        return self._found

    def reset(self) -> None:
        self._carry = ""
        self._found = False


__all__ = ["CompletionScanner"]
