"""Built-in agent definitions."""

from __future__ import annotations

from typing import TYPE_CHECKING

from treadle.agents.cli_agent import CliAgentSpec
from treadle.agents.kimi import KimiOutputFormatter, kimi_error_code

if TYPE_CHECKING:
    from treadle.agents.base import OutputFormatter

# Patterns shared by every provider; agent-specific ones come first.
_COMMON_PATTERNS: tuple[str, ...] = (
    r"rate[ _-]?limit(ed)?",
    r"too many requests",
    r"\b429\b",
    r"quota (exceeded|exhausted)",
    r"retry[ -]after",
)

AGENT_PRIORITY = ["claude", "codex", "gemini", "opencode", "kimi"]

BUILTIN_AGENTS: dict[str, CliAgentSpec] = {
    "claude": CliAgentSpec(
        id="claude",
        name="Claude Code",
        command="claude",
        install_hint="curl -fsSL https://claude.ai/install.sh | bash",
        base_args=("--print", "--dangerously-skip-permissions"),
        prompt_mode="stdin",
        patterns=(
            r"usage limit reached",
            r"overloaded_error",
            r"rate_limit_error",
            *_COMMON_PATTERNS,
        ),
    ),
    "codex": CliAgentSpec(
        id="codex",
        name="Codex",
        command="codex",
        install_hint="npm install -g @openai/codex",
        base_args=("exec", "--full-auto"),
        prompt_mode="arg",
        patterns=(
            r"you've hit your usage limit",
            r"exceeded retry limit.*429",
            *_COMMON_PATTERNS,
        ),
    ),
    "gemini": CliAgentSpec(
        id="gemini",
        name="Gemini CLI",
        command="gemini",
        install_hint="npm install -g @google/gemini-cli",
        base_args=("--yolo",),
        prompt_mode="arg",
        prompt_flag="--prompt",
        patterns=(
            r"RESOURCE_EXHAUSTED",
            r"quota exceeded for quota metric",
            *_COMMON_PATTERNS,
        ),
    ),
    "opencode": CliAgentSpec(
        id="opencode",
        name="OpenCode",
        command="opencode",
        install_hint="npm i -g opencode-ai",
        base_args=("run",),
        prompt_mode="arg",
        patterns=(
            r"AI_RetryError",
            r"provider returned 429",
            *_COMMON_PATTERNS,
        ),
    ),
    "kimi": CliAgentSpec(
        id="kimi",
        name="Kimi CLI",
        command="kimi",
        install_hint="uv tool install kimi-cli",
        base_args=("--print", "--output-format", "stream-json"),
        prompt_mode="arg",
        prompt_flag="--prompt",
        patterns=(
            r"engine_overloaded",
            r"exceeded_current_quota",
            *_COMMON_PATTERNS,
        ),
        error_code_parser=kimi_error_code,
        output_formatter=KimiOutputFormatter,
    ),
}


def get_builtin_agent(agent_id: str) -> CliAgentSpec | None:
    """Get a built-in agent definition by id."""
    return BUILTIN_AGENTS.get(agent_id)


def list_builtin_agents() -> list[CliAgentSpec]:
    return [BUILTIN_AGENTS[agent_id] for agent_id in AGENT_PRIORITY]


def create_output_formatter(agent_id: str) -> OutputFormatter | None:
    """Formatter for a built-in agent's structured stdout, if it has one."""
    spec = BUILTIN_AGENTS.get(agent_id)
    if spec is None or spec.output_formatter is None:
        return None
    return spec.output_formatter()
