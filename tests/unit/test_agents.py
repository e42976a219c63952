"""Tests for built-in agent definitions, argv construction and output parsers."""

from __future__ import annotations

import json
from pathlib import Path
from typing import TYPE_CHECKING

import pytest

from treadle.agents.base import AgentPlugin, ExecuteOptions
from treadle.agents.builtin import (
    AGENT_PRIORITY,
    create_output_formatter,
    get_builtin_agent,
    list_builtin_agents,
)
from treadle.agents.cli_agent import CliAgent, json_lines_error_code
from treadle.agents.kimi import (
    KimiOutputFormatter,
    StreamingJsonlParser,
    describe_message,
    kimi_error_code,
    parse_jsonl_line,
    parse_jsonl_output,
)
from treadle.agents.registry import AgentRegistry, create_default_registry
from treadle.config import AgentSettings, TreadleConfig
from treadle.engine import RateLimitDetector
from treadle.errors import AgentNotFoundError, CommandError
from treadle.process import CommandResult

if TYPE_CHECKING:
    from pytest_mock import MockerFixture

pytestmark = pytest.mark.unit


def _agent(agent_id: str, settings: AgentSettings | None = None) -> CliAgent:
    spec = get_builtin_agent(agent_id)
    assert spec is not None
    return CliAgent(spec, settings)


class TestBuiltinAgents:
    def test_priority_order(self) -> None:
        assert [spec.id for spec in list_builtin_agents()] == AGENT_PRIORITY

    def test_unknown_agent(self) -> None:
        assert get_builtin_agent("nobody") is None

    @pytest.mark.parametrize(
        ("agent_id", "stderr"),
        [
            ("claude", "Claude AI usage limit reached|1718000000"),
            ("codex", "stream error: exceeded retry limit, last status: 429 Too Many Requests"),
            ("gemini", "[API Error: RESOURCE_EXHAUSTED]"),
            ("opencode", "AI_RetryError: Failed after 3 attempts"),
            ("kimi", "error: engine_overloaded"),
        ],
    )
    def test_agent_specific_patterns(self, agent_id: str, stderr: str) -> None:
        result = RateLimitDetector().detect(_agent(agent_id), stderr=stderr, exit_code=1)
        assert result.is_rate_limit is True

    def test_cli_agents_satisfy_protocol(self) -> None:
        assert isinstance(_agent("claude"), AgentPlugin)


class TestCliAgentArgs:
    def test_stdin_prompt_stays_out_of_argv(self) -> None:
        args = _agent("claude").build_args("do it", ExecuteOptions())
        assert args == ["claude", "--print", "--dangerously-skip-permissions"]

    def test_prompt_flag_and_model(self) -> None:
        agent = _agent("gemini", AgentSettings(model="gemini-2.5-pro", args=["--debug"]))
        args = agent.build_args("do it", ExecuteOptions(extra_args=("--sandbox",)))
        assert args == [
            "gemini",
            "--yolo",
            "--model",
            "gemini-2.5-pro",
            "--debug",
            "--sandbox",
            "--prompt",
            "do it",
        ]

    def test_option_model_overrides_settings(self) -> None:
        agent = _agent("codex", AgentSettings(model="o3"))
        args = agent.build_args("task", ExecuteOptions(model="o4-mini"))
        assert args == ["codex", "exec", "--full-auto", "--model", "o4-mini", "task"]

    def test_command_override(self) -> None:
        agent = _agent("opencode", AgentSettings(command="/opt/oc/bin/opencode"))
        assert agent.build_args("x", ExecuteOptions())[0] == "/opt/oc/bin/opencode"


class TestCliAgentDetect:
    async def test_missing_binary(self, mocker: MockerFixture) -> None:
        mocker.patch("treadle.agents.cli_agent.shutil.which", return_value=None)

        result = await _agent("codex").detect()

        assert result.available is False
        assert "npm install -g @openai/codex" in (result.error or "")

    async def test_version_is_parsed(self, mocker: MockerFixture) -> None:
        mocker.patch("treadle.agents.cli_agent.shutil.which", return_value="/usr/bin/claude")
        mocker.patch(
            "treadle.agents.cli_agent.run_command",
            return_value=CommandResult(
                argv=("claude", "--version"), returncode=0, stdout="1.0.72\n", stderr=""
            ),
        )
        agent = _agent("claude")

        result = await agent.detect()

        assert result.available is True
        assert result.version == "1.0.72"
        assert agent.build_args("x", ExecuteOptions())[0] == "/usr/bin/claude"

    async def test_version_failure(self, mocker: MockerFixture) -> None:
        mocker.patch("treadle.agents.cli_agent.shutil.which", return_value="/usr/bin/kimi")
        mocker.patch(
            "treadle.agents.cli_agent.run_command",
            side_effect=CommandError(("kimi", "--version"), "exited with status 2", returncode=2),
        )

        result = await _agent("kimi").detect()

        assert result.available is False
        assert result.executable_path == "/usr/bin/kimi"


class TestStructuredErrors:
    @pytest.mark.parametrize(
        ("line", "expected"),
        [
            ({"error": {"type": "rate_limit_error"}}, "rate_limit_error"),
            ({"error": {"code": "insufficient_quota"}}, "insufficient_quota"),
            ({"error": {"status": "RESOURCE_EXHAUSTED"}}, "RESOURCE_EXHAUSTED"),
            ({"type": "error", "code": "too_many_requests"}, "too_many_requests"),
            ({"type": "message", "text": "hello"}, None),
        ],
    )
    def test_json_lines_error_code(self, line: dict[str, object], expected: str | None) -> None:
        stdout = "plain text\n" + json.dumps(line) + "\n{not json\n"
        assert json_lines_error_code(stdout) == expected


class TestKimiParser:
    def test_parse_line_fields(self) -> None:
        result = parse_jsonl_line(
            json.dumps(
                {
                    "type": "tool_use",
                    "sessionId": "s-1",
                    "tool": {"name": "edit", "input": {"path": "a.py"}},
                    "cost": {"inputTokens": 10, "outputTokens": 4.0, "totalUSD": 0.01},
                }
            )
        )

        assert result.success is True
        message = result.message
        assert message is not None
        assert message.type == "tool_use"
        assert message.session_id == "s-1"
        assert message.tool is not None
        assert message.tool.name == "edit"
        assert message.cost is not None
        assert (message.cost.input_tokens, message.cost.output_tokens) == (10, 4)

    @pytest.mark.parametrize("line", ["", "   ", "not json", "[1, 2]"])
    def test_unparseable_lines(self, line: str) -> None:
        assert parse_jsonl_line(line).success is False

    def test_output_keeps_plain_text_as_fallback(self) -> None:
        parsed = parse_jsonl_output('{"type": "message", "message": "hi"}\nWarning: slow\n')
        assert [m.message for m in parsed.messages] == ["hi"]
        assert parsed.fallback == ["Warning: slow"]

    def test_streaming_parser_joins_split_lines(self) -> None:
        parser = StreamingJsonlParser()

        assert parser.push('{"type": "mes') == []
        results = parser.push('sage", "message": "a"}\n{"type"')
        assert [r.success for r in results] == [True]
        assert parser.push(': "result", "result": 3}') == []
        flushed = parser.flush()

        assert [r.message.type for r in [*results, *flushed] if r.message] == ["message", "result"]
        assert parser.flush() == []

    def test_error_code(self) -> None:
        stdout = "\n".join(
            [
                json.dumps({"type": "message", "message": "working"}),
                json.dumps({"type": "error", "code": "engine_overloaded", "message": "busy"}),
            ]
        )
        assert kimi_error_code(stdout) == "engine_overloaded"
        assert kimi_error_code(json.dumps({"error": "plain failure"})) is None

    def test_error_message_variants(self) -> None:
        nested = parse_jsonl_line(json.dumps({"error": {"type": "x"}})).message
        flat = parse_jsonl_line(json.dumps({"type": "error"})).message
        assert nested is not None and nested.error_message == "Unknown error"
        assert flat is not None and flat.error_message == "Unknown error"


class TestKimiOutputFormatter:
    def test_renders_messages_tools_and_costs(self) -> None:
        formatter = KimiOutputFormatter()
        stdout = "\n".join(
            [
                json.dumps({"type": "message", "message": "Reading the tests"}),
                json.dumps({"type": "tool_use", "tool": {"name": "edit", "input": {"path": "a"}}}),
                "Warning: slow network",
                json.dumps({"type": "session", "sessionId": "s-1"}),
                json.dumps(
                    {
                        "type": "result",
                        "result": "done",
                        "cost": {"inputTokens": 12, "outputTokens": 3, "totalUSD": 0.5},
                    }
                ),
                json.dumps({"type": "error", "code": "engine_overloaded", "message": "busy"}),
            ]
        )

        lines = formatter.feed(stdout[:40]) + formatter.feed(stdout[40:]) + formatter.flush()

        assert lines == [
            "Reading the tests",
            "[tool] edit(path)",
            "Warning: slow network",
            "done (12 in / 3 out tokens, $0.5000)",
            "[error engine_overloaded] busy",
        ]

    @pytest.mark.parametrize(
        ("payload", "expected"),
        [
            ({"type": "result", "result": {"files": 2}}, '{"files": 2}'),
            ({"type": "usage", "cost": {"totalUSD": 0.25}}, "[cost] $0.2500"),
            ({"error": "plain failure"}, "[error] plain failure"),
            ({"type": "tool_use", "tool": {}}, "[tool] unknown()"),
        ],
    )
    def test_describe_message(self, payload: dict[str, object], expected: str) -> None:
        message = parse_jsonl_line(json.dumps(payload)).message
        assert message is not None
        assert describe_message(message) == expected

    def test_kimi_is_the_only_builtin_with_a_formatter(self) -> None:
        assert isinstance(create_output_formatter("kimi"), KimiOutputFormatter)
        assert create_output_formatter("claude") is None
        assert create_output_formatter("custom") is None


class TestRegistry:
    def test_default_registry_applies_settings(self) -> None:
        config = TreadleConfig(agents={"claude": AgentSettings(command="claude-beta")})
        registry = create_default_registry(config)

        assert registry.ids() == AGENT_PRIORITY
        claude = registry.get("claude")
        assert isinstance(claude, CliAgent)
        assert claude.build_args("x", ExecuteOptions())[0] == "claude-beta"

    def test_unknown_agent_raises(self) -> None:
        with pytest.raises(AgentNotFoundError):
            AgentRegistry().get("ghost")

    def test_register_replaces_same_id(self) -> None:
        registry = AgentRegistry()
        registry.register(_agent("codex"))
        replacement = _agent("codex", AgentSettings(command=str(Path("/x/codex"))))
        registry.register(replacement)

        assert registry.get("codex") is replacement
        assert "codex" in registry
