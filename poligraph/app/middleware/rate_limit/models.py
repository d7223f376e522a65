"""Data models for tiered rate limiting."""

import math
from dataclasses import dataclass
from enum import Enum


class RateLimitTier(str, Enum):
    """Named traffic classes, each with its own quota policy."""
    GENERAL = "general"
    SEARCH = "search"
    EXPORT = "export"


@dataclass(frozen=True)
class TierPolicy:
    """Quota policy of one tier: `capacity` requests per `window_seconds`."""
    tier: RateLimitTier
    capacity: int
    window_seconds: int

    def __post_init__(self) -> None:
        if self.capacity < 1:
            raise ValueError(f"capacity must be positive, got {self.capacity}")
        if self.window_seconds < 1:
            raise ValueError(f"window_seconds must be positive, got {self.window_seconds}")

    @property
    def key_prefix(self) -> str:
        return f"rl:{self.tier.value}"


@dataclass(frozen=True)
class CounterState:
    """Counter value returned by a store after an atomic increment."""
    count: int
    ttl_seconds: float


@dataclass
class RateLimitResult:
    """Result of a rate limit check.

    `enforced` is False when the decision was not backed by the counter
    store (store unconfigured or unreachable) and the request was admitted
    by the fail-open policy.
    """
    admitted: bool
    limit: int
    remaining: int
    reset_at: float
    enforced: bool = True

    def retry_after(self, now: float) -> int:
        """Seconds until the window resets, at least one."""
        return max(1, math.ceil(self.reset_at - now))
