"""Kimi CLI stream-json output parsing and display."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any


@dataclass(slots=True)
class KimiToolCall:
    name: str | None = None
    input: dict[str, Any] | None = None


@dataclass(slots=True)
class KimiCost:
    input_tokens: int | None = None
    output_tokens: int | None = None
    total_usd: float | None = None


@dataclass(slots=True)
class KimiJsonlMessage:
    """One parsed line of ``kimi --output-format stream-json`` output."""

    raw: dict[str, Any]
    type: str | None = None
    message: str | None = None
    session_id: str | None = None
    result: Any = None
    tool: KimiToolCall | None = None
    cost: KimiCost | None = None

    @property
    def error_message(self) -> str | None:
        error = self.raw.get("error")
        if isinstance(error, str):
            return error
        if isinstance(error, dict):
            message = error.get("message")
            return message if isinstance(message, str) else "Unknown error"
        if self.type == "error":
            return self.message or "Unknown error"
        return None

    @property
    def error_code(self) -> str | None:
        error = self.raw.get("error")
        if isinstance(error, dict):
            for key in ("type", "code"):
                value = error.get(key)
                if isinstance(value, str):
                    return value
        if self.type == "error":
            code = self.raw.get("code")
            return code if isinstance(code, str) else None
        return None


@dataclass(slots=True)
class KimiParseResult:
    success: bool
    raw: str
    message: KimiJsonlMessage | None = None
    error: str | None = None


def _number(value: object) -> int | float | None:
    if isinstance(value, bool):
        return None
    return value if isinstance(value, (int, float)) else None


def parse_jsonl_line(line: str) -> KimiParseResult:
    """Parse a single line, keeping the raw text when it is not a JSON object."""
    trimmed = line.strip()
    if not trimmed:
        return KimiParseResult(success=False, raw=line, error="Empty line")
    try:
        parsed = json.loads(trimmed)
    except json.JSONDecodeError as exc:
        return KimiParseResult(success=False, raw=line, error=str(exc))
    if not isinstance(parsed, dict):
        return KimiParseResult(success=False, raw=line, error="Not a JSON object")

    message = KimiJsonlMessage(raw=parsed)
    if isinstance(parsed.get("type"), str):
        message.type = parsed["type"]
    if isinstance(parsed.get("message"), str):
        message.message = parsed["message"]
    if isinstance(parsed.get("sessionId"), str):
        message.session_id = parsed["sessionId"]
    if "result" in parsed:
        message.result = parsed["result"]

    tool = parsed.get("tool")
    if isinstance(tool, dict):
        message.tool = KimiToolCall(
            name=tool["name"] if isinstance(tool.get("name"), str) else None,
            input=tool["input"] if isinstance(tool.get("input"), dict) else None,
        )

    cost = parsed.get("cost")
    if isinstance(cost, dict):
        input_tokens = _number(cost.get("inputTokens"))
        output_tokens = _number(cost.get("outputTokens"))
        message.cost = KimiCost(
            input_tokens=int(input_tokens) if input_tokens is not None else None,
            output_tokens=int(output_tokens) if output_tokens is not None else None,
            total_usd=_number(cost.get("totalUSD")),
        )

    return KimiParseResult(success=True, raw=line, message=message)


@dataclass(slots=True)
class ParsedOutput:
    messages: list[KimiJsonlMessage] = field(default_factory=list)
    fallback: list[str] = field(default_factory=list)

    def add(self, result: KimiParseResult) -> None:
        if result.success and result.message is not None:
            self.messages.append(result.message)
        elif result.raw.strip():
            self.fallback.append(result.raw)


def parse_jsonl_output(output: str) -> ParsedOutput:
    """Parse complete output; non-JSON lines are kept in ``fallback``."""
    parsed = ParsedOutput()
    for line in output.split("\n"):
        parsed.add(parse_jsonl_line(line))
    return parsed


class StreamingJsonlParser:
    """Accumulates partial lines across chunks."""

    def __init__(self) -> None:
        self._buffer = ""

    def push(self, chunk: str) -> list[KimiParseResult]:
        self._buffer += chunk
        results: list[KimiParseResult] = []
        while (newline := self._buffer.find("\n")) != -1:
            line, self._buffer = self._buffer[:newline], self._buffer[newline + 1 :]
            results.append(parse_jsonl_line(line))
        return results

    def flush(self) -> list[KimiParseResult]:
        buffered, self._buffer = self._buffer, ""
        if not buffered.strip():
            return []
        return [parse_jsonl_line(buffered)]


def _cost_text(cost: KimiCost) -> str:
    parts: list[str] = []
    if cost.input_tokens is not None or cost.output_tokens is not None:
        parts.append(f"{cost.input_tokens or 0} in / {cost.output_tokens or 0} out tokens")
    if cost.total_usd is not None:
        parts.append(f"${cost.total_usd:.4f}")
    return ", ".join(parts)


def describe_message(message: KimiJsonlMessage) -> str | None:
    """Display line for one stream-json message; None when it carries nothing to show."""
    if (error := message.error_message) is not None:
        code = message.error_code
        return f"[error {code}] {error}" if code else f"[error] {error}"
    if message.tool is not None:
        arguments = ", ".join(message.tool.input or {})
        return f"[tool] {message.tool.name or 'unknown'}({arguments})"
    text = message.message
    if text is None and message.result is not None:
        result = message.result
        text = result if isinstance(result, str) else json.dumps(result)
    cost = _cost_text(message.cost) if message.cost is not None else ""
    if text and cost:
        return f"{text} ({cost})"
    return text or (f"[cost] {cost}" if cost else None)


class KimiOutputFormatter:
    """Renders ``--output-format stream-json`` stdout as readable lines.

    Lines that are not JSON objects are passed through unchanged.
    """

    def __init__(self) -> None:
        self._parser = StreamingJsonlParser()

    def feed(self, chunk: str) -> list[str]:
        return self._lines(self._parser.push(chunk))

    def flush(self) -> list[str]:
        return self._lines(self._parser.flush())

    @staticmethod
    def _lines(results: list[KimiParseResult]) -> list[str]:
        lines: list[str] = []
        for result in results:
            if result.message is not None:
                line = describe_message(result.message)
            else:
                line = result.raw.rstrip("\r") if result.raw.strip() else None
            if line is not None:
                lines.append(line)
        return lines


def kimi_error_code(stdout: str) -> str | None:
    """Last structured error code in Kimi stream-json output."""
    parsed = parse_jsonl_output(stdout)
    code: str | None = None
    for message in parsed.messages:
        if message.error_code is not None:
            code = message.error_code
    return code


__all__ = [
    "KimiCost",
    "KimiJsonlMessage",
    "KimiOutputFormatter",
    "KimiParseResult",
    "KimiToolCall",
    "ParsedOutput",
    "StreamingJsonlParser",
    "describe_message",
    "kimi_error_code",
    "parse_jsonl_line",
    "parse_jsonl_output",
]
