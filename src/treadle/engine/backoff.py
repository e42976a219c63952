"""Deterministic retry delays for rate-limited agents."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from treadle.limits import (
    DEFAULT_BACKOFF_MULTIPLIER,
    DEFAULT_BASE_BACKOFF_MS,
    DEFAULT_MAX_BACKOFF_MS,
    DEFAULT_RATE_LIMIT_RETRIES,
)

if TYPE_CHECKING:
    from treadle.config import RateLimitConfig


@dataclass(frozen=True, slots=True)
class BackoffPolicy:
    """``delay(k) = min(base * multiplier ** (k - 1), max)`` for attempts ``1..max_retries``.

    The defaults give 5s, 15s, 45s. A multiplier of 2 gives plain doubling.
    """

    base_ms: int = DEFAULT_BASE_BACKOFF_MS
    max_ms: int = DEFAULT_MAX_BACKOFF_MS
    multiplier: float = DEFAULT_BACKOFF_MULTIPLIER
    max_retries: int = DEFAULT_RATE_LIMIT_RETRIES

    def __post_init__(self) -> None:
        if self.base_ms < 0 or self.max_ms < 0:
            raise ValueError("Backoff delays must be non-negative")
        if self.multiplier < 1:
            raise ValueError("Backoff multiplier must be >= 1")
        if self.max_retries < 0:
            raise ValueError("max_retries must be non-negative")

    @classmethod
    def from_config(cls, config: RateLimitConfig) -> BackoffPolicy:
        return cls(
            base_ms=config.base_backoff_ms,
            max_ms=config.max_backoff_ms,
            multiplier=config.backoff_multiplier,
            max_retries=config.max_retries,
        )

    def delay_ms(self, attempt: int) -> int:
        if attempt < 1:
            raise ValueError("attempt numbers start at 1")
        try:
            raw = self.base_ms * self.multiplier ** (attempt - 1)
        except OverflowError:
            return self.max_ms
        return int(min(raw, self.max_ms))

    def delay_seconds(self, attempt: int, retry_after: float | None = None) -> float:
        """Seconds to wait before ``attempt``; an explicit retry-after always wins."""
        if retry_after is not None and retry_after >= 0:
            return retry_after
        return self.delay_ms(attempt) / 1000.0

    def sequence(self) -> list[int]:
        return [self.delay_ms(attempt) for attempt in range(1, self.max_retries + 1)]

    def allows_retry(self, detections: int) -> bool:
        """Whether the ``detections``-th rate limit is retried instead of failing over."""
        return detections <= self.max_retries


__all__ = ["BackoffPolicy"]
