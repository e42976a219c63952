"""Configuration loader for treadle."""

from __future__ import annotations

import tomllib
from pathlib import Path
from typing import Literal

import tomlkit
from pydantic import BaseModel, Field, field_validator

from treadle.atomic import atomic_write_async
from treadle.limits import (
    DEFAULT_BACKOFF_MULTIPLIER,
    DEFAULT_BASE_BACKOFF_MS,
    DEFAULT_ERROR_RETRIES,
    DEFAULT_ERROR_RETRY_DELAY_MS,
    DEFAULT_MAX_BACKOFF_MS,
    DEFAULT_MAX_ITERATIONS,
    DEFAULT_RATE_LIMIT_RETRIES,
    DEFAULT_RECOVERY_PROBE_TIMEOUT_MS,
    OUTPUT_TAIL_CHARS,
    REMOTE_EVENT_QUEUE_SIZE,
)
from treadle.models import FailureStrategy
from treadle.paths import get_project_config_path, get_user_config_path

COMPLETION_MARKER = "<promise>COMPLETE</promise>"
DEFAULT_REMOTE_PORT = 7890

type TrackerPluginLiteral = Literal["json", "beads-rust"]
TRACKER_PLUGIN_VALUES = frozenset({"json", "beads-rust"})


class EngineConfig(BaseModel):
    """Iteration loop settings."""

    max_iterations: int = Field(
        default=DEFAULT_MAX_ITERATIONS, ge=0, description="Iteration slots (0 = unbounded)"
    )
    completion_marker: str = Field(
        default=COMPLETION_MARKER,
        description="Sentinel the agent prints on stdout when the task is done",
    )
    iteration_delay_ms: int = Field(
        default=0, ge=0, description="Pause between iterations in milliseconds"
    )
    output_tail_chars: int = Field(
        default=OUTPUT_TAIL_CHARS,
        ge=0,
        description="Characters of agent output kept for rate-limit classification",
    )

    @field_validator("completion_marker", mode="before")
    @classmethod
    def validate_completion_marker(cls, value: object) -> str:
        """Blank markers would match any output; fall back to the default."""
        match value:
            case str() as marker if marker.strip():
                return marker
            case _:
                pass
        return COMPLETION_MARKER


class ErrorHandlingConfig(BaseModel):
    """What to do when an agent fails without a rate-limit signal."""

    strategy: FailureStrategy = Field(default=FailureStrategy.SKIP)
    max_retries: int = Field(default=DEFAULT_ERROR_RETRIES, ge=0)
    retry_delay_ms: int = Field(default=DEFAULT_ERROR_RETRY_DELAY_MS, ge=0)

    @field_validator("strategy", mode="before")
    @classmethod
    def validate_strategy(cls, value: object) -> FailureStrategy:
        """Gracefully coerce unknown strategies to skip."""
        match value:
            case str() as strategy if strategy in {item.value for item in FailureStrategy}:
                return FailureStrategy(strategy)
            case _:
                pass
        return FailureStrategy.SKIP


class RateLimitConfig(BaseModel):
    """Retry, fallback and recovery settings for provider rate limits."""

    enabled: bool = Field(default=True, description="Detect rate limits and fail over")
    max_retries: int = Field(default=DEFAULT_RATE_LIMIT_RETRIES, ge=0)
    base_backoff_ms: int = Field(default=DEFAULT_BASE_BACKOFF_MS, ge=0)
    backoff_multiplier: float = Field(default=DEFAULT_BACKOFF_MULTIPLIER, ge=1.0)
    max_backoff_ms: int = Field(default=DEFAULT_MAX_BACKOFF_MS, ge=0)
    recover_primary_between_iterations: bool = Field(
        default=True, description="Probe the primary agent before each iteration on a fallback"
    )
    recovery_probe_timeout_ms: int = Field(default=DEFAULT_RECOVERY_PROBE_TIMEOUT_MS, gt=0)


class AgentSelectionConfig(BaseModel):
    """Which agent runs tasks and which ones back it up."""

    primary: str = Field(default="claude")
    fallback_agents: list[str] = Field(default_factory=list)

    @field_validator("fallback_agents", mode="before")
    @classmethod
    def validate_fallback_agents(cls, value: object) -> list[str]:
        """Accept a comma separated string and drop duplicates, keeping order."""
        match value:
            case str() as text:
                items = [item.strip() for item in text.split(",")]
            case list() | tuple() as seq:
                items = [str(item).strip() for item in seq]
            case _:
                items = []
        return list(dict.fromkeys(item for item in items if item))


class AgentSettings(BaseModel):
    """Per-agent overrides for the built-in CLI agent definitions."""

    command: str | None = Field(default=None, description="Executable override")
    args: list[str] = Field(default_factory=list, description="Extra arguments")
    model: str | None = Field(default=None, description="Model passed to the agent CLI")
    env: dict[str, str] = Field(default_factory=dict)
    timeout_seconds: float | None = Field(default=None, gt=0)


class TrackerConfig(BaseModel):
    plugin: TrackerPluginLiteral = Field(default="json")
    path: str = Field(default="tasks.json", description="Task file for the json tracker")
    working_dir: str | None = Field(default=None, description="Directory for the br CLI")

    @field_validator("plugin", mode="before")
    @classmethod
    def validate_plugin(cls, value: object) -> str:
        match value:
            case str() as plugin if plugin in TRACKER_PLUGIN_VALUES:
                return plugin
            case _:
                pass
        return "json"


class RemoteConfig(BaseModel):
    host: str = Field(default="127.0.0.1")
    port: int = Field(default=DEFAULT_REMOTE_PORT, ge=0, le=65535)
    event_queue_size: int = Field(default=REMOTE_EVENT_QUEUE_SIZE, ge=1)


class TreadleConfig(BaseModel):
    """Root configuration model."""

    engine: EngineConfig = Field(default_factory=EngineConfig)
    error_handling: ErrorHandlingConfig = Field(default_factory=ErrorHandlingConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    agent: AgentSelectionConfig = Field(default_factory=AgentSelectionConfig)
    agents: dict[str, AgentSettings] = Field(default_factory=dict)
    tracker: TrackerConfig = Field(default_factory=TrackerConfig)
    remote: RemoteConfig = Field(default_factory=RemoteConfig)

    @classmethod
    def load(
        cls,
        config_path: Path | None = None,
        *,
        project_root: Path | None = None,
    ) -> TreadleConfig:
        """Load configuration from TOML file or use defaults.

        Without an explicit path the project file wins over the user file.
        """
        if config_path is None:
            candidates = []
            if project_root is not None:
                candidates.append(get_project_config_path(project_root))
            candidates.append(get_user_config_path())
            config_path = next((path for path in candidates if path.exists()), None)

        if config_path is not None and config_path.exists():
            with open(config_path, "rb") as f:
                data = tomllib.load(f)
            return cls.model_validate(data)

        return cls()

    def get_agent_settings(self, agent_id: str) -> AgentSettings:
        return self.agents.get(agent_id) or AgentSettings()

    async def save(self, path: Path) -> None:
        """Serialize current config to TOML file.

        Args:
            path: Path to write config file (created if missing)
        """
        doc = tomlkit.document()
        for section in ("engine", "error_handling", "rate_limit", "agent", "tracker", "remote"):
            table = tomlkit.table()
            for key, value in getattr(self, section).model_dump(mode="json").items():
                if value is not None:
                    table[key] = value
            doc[section] = table

        if self.agents:
            agents_table = tomlkit.table()
            for agent_id, settings in self.agents.items():
                agent_table = tomlkit.table()
                for key, value in settings.model_dump(mode="json").items():
                    if value is not None and value != {} and value != []:
                        agent_table[key] = value
                agents_table[agent_id] = agent_table
            doc["agents"] = agents_table

        content = tomlkit.dumps(doc)
        await atomic_write_async(path, content)

    async def update_agent_selection(
        self,
        path: Path,
        *,
        primary: str | None = None,
        fallback_agents: list[str] | None = None,
    ) -> None:
        """Update the agent section in an existing TOML file (preserves comments).

        Args:
            path: Path to config file (created if missing)
            primary: New primary agent id (None = no change)
            fallback_agents: New ordered fallback list (None = no change)
        """
        import aiofiles

        if path.exists():
            async with aiofiles.open(path, encoding="utf-8") as f:
                content = await f.read()
            doc = tomlkit.parse(content)
        else:
            doc = tomlkit.document()

        if "agent" not in doc:
            doc["agent"] = tomlkit.table()

        selection = self.agent.model_dump()
        if primary is not None:
            doc["agent"]["primary"] = primary  # type: ignore[index]
            selection["primary"] = primary
        if fallback_agents is not None:
            doc["agent"]["fallback_agents"] = fallback_agents  # type: ignore[index]
            selection["fallback_agents"] = fallback_agents
        self.agent = AgentSelectionConfig.model_validate(selection)

        content = tomlkit.dumps(doc)
        await atomic_write_async(path, content)
