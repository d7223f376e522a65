"""Tiered rate limiter over a shared counter store.

Counting is a fixed window with a TTL equal to the window rather than a true
sliding log: one atomic increment per check and O(1) memory per client, at
the cost of allowing up to twice the capacity across a window boundary.

When the store is unconfigured or fails, checks admit the request
(fail-open): an outage of the counting infrastructure must never take the
public site down with it.
"""

import time
from typing import Callable, Dict, Optional

from poligraph.app.core.config import Settings
from poligraph.app.core.logging import get_log_context, get_logger
from poligraph.app.exceptions import CounterStoreError
from poligraph.app.middleware.rate_limit.backends import (
    CounterStore,
    InMemoryCounterStore,
    RedisCounterStore,
)
from poligraph.app.middleware.rate_limit.models import (
    RateLimitResult,
    RateLimitTier,
    TierPolicy,
)
from poligraph.app.middleware.rate_limit.tiers import default_policies

logger = get_logger(__name__)


class TieredRateLimiter:
    """Admit or deny requests per (tier, client identity).

    The limiter holds no authoritative count of its own: every check is one
    round-trip to the store.
    """

    def __init__(
        self,
        store: Optional[CounterStore],
        policies: Dict[RateLimitTier, TierPolicy],
        clock: Callable[[], float] = time.time,
    ):
        """Initialize the limiter.

        Args:
            store: Counter store, or None when no store is configured
            policies: Quota policy of every tier
            clock: Wall clock in epoch seconds
        """
        self._store = store
        self._policies = dict(policies)
        self._clock = clock

    @property
    def configured(self) -> bool:
        return self._store is not None

    @property
    def backend(self) -> str:
        return self._store.name if self._store is not None else "none"

    def policy(self, tier: RateLimitTier) -> TierPolicy:
        return self._policies[tier]

    def now(self) -> float:
        return self._clock()

    async def check(self, tier: RateLimitTier, identity: str) -> RateLimitResult:
        """Count one request for `identity` in `tier` and decide admission.

        Raises:
            KeyError: if `tier` has no configured policy
            ValueError: if `identity` is empty
        """
        policy = self._policies[tier]
        if not identity:
            raise ValueError("client identity must be a non-empty string")

        if self._store is None:
            return self._fail_open(policy)

        key = f"{policy.key_prefix}:{identity}"
        try:
            state = await self._store.incr(key, policy.window_seconds)
        except CounterStoreError as e:
            logger.warning(
                f"Counter store unavailable, admitting request: {e}",
                extra=get_log_context(client_ip=identity, tier=tier.value),
            )
            return self._fail_open(policy)
        except Exception as e:
            logger.exception(
                f"Unexpected rate limit error, admitting request: {e}",
                extra=get_log_context(client_ip=identity, tier=tier.value),
            )
            return self._fail_open(policy)

        reset_at = self._clock() + state.ttl_seconds
        if state.count > policy.capacity:
            return RateLimitResult(
                admitted=False,
                limit=policy.capacity,
                remaining=0,
                reset_at=reset_at,
            )
        return RateLimitResult(
            admitted=True,
            limit=policy.capacity,
            remaining=policy.capacity - state.count,
            reset_at=reset_at,
        )

    def _fail_open(self, policy: TierPolicy) -> RateLimitResult:
        return RateLimitResult(
            admitted=True,
            limit=policy.capacity,
            remaining=policy.capacity,
            reset_at=self._clock() + policy.window_seconds,
            enforced=False,
        )

    async def close(self) -> None:
        if self._store is not None:
            await self._store.close()


def build_rate_limiter(config: Settings) -> TieredRateLimiter:
    """Select the counter store once, at construction.

    A `redis` backend without a usable URL is a supported state: the limiter
    is built without a store and admits everything.
    """
    store: Optional[CounterStore]
    if config.rate_limit_backend == "memory":
        store = InMemoryCounterStore()
        logger.info("Using in-memory rate limiter backend (single instance only)")
    elif config.redis_url:
        try:
            store = RedisCounterStore(
                redis_url=config.redis_url,
                token=config.redis_token,
                timeout=config.redis_timeout_seconds,
            )
        except ValueError as e:
            store = None
            logger.warning(f"Invalid REDIS_URL, API rate limiting is disabled (fail-open): {e}")
        else:
            logger.info("Using Redis rate limiter backend")
    else:
        store = None
        logger.warning("REDIS_URL is not set, API rate limiting is disabled (fail-open)")

    return TieredRateLimiter(store, default_policies(config))
