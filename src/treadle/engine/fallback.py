"""Pick the next agent once the active one exhausted its rate-limit retries."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from treadle.limits import AGENT_DETECT_TIMEOUT

if TYPE_CHECKING:
    from collections.abc import Collection, Mapping, Sequence

    from treadle.agents.registry import AgentRegistry

logger = logging.getLogger(__name__)


def select_fallback(
    current: str,
    fallbacks: Sequence[str],
    availability: Mapping[str, bool],
    tried: Collection[str],
) -> str | None:
    """First configured fallback that is not current, untried and available."""
    for agent_id in fallbacks:
        if agent_id == current or agent_id in tried:
            continue
        if availability.get(agent_id, False):
            return agent_id
    return None


class FallbackSelector:
    """Resolves availability through each candidate's ``detect()``."""

    def __init__(
        self,
        fallbacks: Sequence[str],
        registry: AgentRegistry,
        *,
        detect_timeout: float = AGENT_DETECT_TIMEOUT,
    ) -> None:
        self._fallbacks = list(dict.fromkeys(fallbacks))
        self._registry = registry
        self._detect_timeout = detect_timeout

    @property
    def fallbacks(self) -> list[str]:
        return list(self._fallbacks)

    async def _is_available(self, agent_id: str) -> bool:
        if agent_id not in self._registry:
            logger.warning("Fallback agent %s is not registered", agent_id)
            return False
        try:
            async with asyncio.timeout(self._detect_timeout):
                result = await self._registry.get(agent_id).detect()
        except TimeoutError:
            logger.warning("Fallback agent %s did not answer detect() in time", agent_id)
            return False
        if not result.available:
            logger.info("Fallback agent %s unavailable: %s", agent_id, result.error)
        return result.available

    async def select(self, current: str, tried: Collection[str]) -> str | None:
        """Return the next agent to switch to, or None when every candidate is spent."""
        availability: dict[str, bool] = {}
        for agent_id in self._fallbacks:
            if agent_id == current or agent_id in tried:
                continue
            availability[agent_id] = await self._is_available(agent_id)
            if availability[agent_id]:
                break
        return select_fallback(current, self._fallbacks, availability, tried)


__all__ = ["FallbackSelector", "select_fallback"]
