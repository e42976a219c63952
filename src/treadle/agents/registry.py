"""Registry of agent adapters keyed by id."""

from __future__ import annotations

from typing import TYPE_CHECKING

from treadle.agents.builtin import list_builtin_agents
from treadle.agents.cli_agent import CliAgent
from treadle.errors import AgentNotFoundError

if TYPE_CHECKING:
    from treadle.agents.base import AgentPlugin
    from treadle.config import TreadleConfig


class AgentRegistry:
    def __init__(self) -> None:
        self._agents: dict[str, AgentPlugin] = {}

    def register(self, agent: AgentPlugin) -> None:
        """Register an agent, replacing any previous one with the same id."""
        self._agents[agent.id] = agent

    def get(self, agent_id: str) -> AgentPlugin:
        try:
            return self._agents[agent_id]
        except KeyError:
            raise AgentNotFoundError(agent_id) from None

    def __contains__(self, agent_id: object) -> bool:
        return agent_id in self._agents

    def ids(self) -> list[str]:
        return list(self._agents)


def create_default_registry(config: TreadleConfig | None = None) -> AgentRegistry:
    """Registry holding every built-in agent with per-agent settings applied."""
    registry = AgentRegistry()
    for spec in list_builtin_agents():
        settings = config.get_agent_settings(spec.id) if config is not None else None
        registry.register(CliAgent(spec, settings))
    return registry


__all__ = ["AgentRegistry", "create_default_registry"]
