"""Counter stores backing the tiered rate limiter.

A store exposes one operation: atomically increment a key, start its expiry
when the key is new, and report the new count with the time left in the
window. The limiter never reads and writes a counter in two steps.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import redis
import redis.asyncio as aioredis

from poligraph.app.core.logging import get_logger
from poligraph.app.exceptions import CounterStoreError
from poligraph.app.middleware.rate_limit.models import CounterState

logger = get_logger(__name__)

# Fixed-window counter: INCR, start the window on the first hit, report PTTL.
# A key that somehow lost its TTL is given one again so it cannot stick.
FIXED_WINDOW_SCRIPT = """
    local count = redis.call('INCR', KEYS[1])
    local window_ms = tonumber(ARGV[1])
    if count == 1 then
        redis.call('PEXPIRE', KEYS[1], window_ms)
        return {count, window_ms}
    end
    local ttl = redis.call('PTTL', KEYS[1])
    if ttl < 0 then
        redis.call('PEXPIRE', KEYS[1], window_ms)
        ttl = window_ms
    end
    return {count, ttl}
"""


class CounterStore(ABC):
    """Abstract base class for counter stores."""

    name: str = "abstract"

    @abstractmethod
    async def incr(self, key: str, window_seconds: int) -> CounterState:
        """Atomically increment `key` within its current window.

        Raises:
            CounterStoreError: if the store cannot answer
        """

    async def close(self) -> None:
        """Release store resources."""


class RedisCounterStore(CounterStore):
    """Shared counter store on Redis.

    Every instance of the service talks to the same Redis, so all of them
    observe one count per (tier, client). Atomicity comes from running the
    increment and the expiry in a single Lua script.
    """

    name = "redis"

    def __init__(
        self,
        redis_url: str,
        token: Optional[str] = None,
        timeout: float = 0.5,
        redis_client: Optional[Any] = None,
    ):
        """Initialize Redis counter store.

        Args:
            redis_url: Redis connection URL
            token: Optional credential, sent as the connection password
            timeout: Upper bound in seconds for one increment round-trip
            redis_client: Optional preconfigured client (used by tests)

        Raises:
            ValueError: if `redis_url` is not a Redis URL
        """
        self._redis_url = redis_url
        self._token = token or None
        self._timeout = timeout
        self._redis = redis_client if redis_client is not None else self._create_client()

    def _create_client(self) -> Any:
        # from_url validates the URL here; the connection itself is lazy
        options: Dict[str, Any] = {
            "socket_timeout": self._timeout,
            "socket_connect_timeout": self._timeout,
        }
        if self._token:
            options["password"] = self._token
        return aioredis.from_url(self._redis_url, **options)

    def _get_redis(self) -> Any:
        """Get the Redis client, recreating it after close()."""
        if self._redis is None:
            self._redis = self._create_client()
        return self._redis

    async def incr(self, key: str, window_seconds: int) -> CounterState:
        client = self._get_redis()
        try:
            reply = await asyncio.wait_for(
                client.eval(FIXED_WINDOW_SCRIPT, 1, key, window_seconds * 1000),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError as e:
            raise CounterStoreError(f"timeout after {self._timeout}s") from e
        except (redis.RedisError, OSError) as e:
            raise CounterStoreError(str(e) or type(e).__name__) from e

        try:
            count, ttl_ms = int(reply[0]), int(reply[1])
        except (TypeError, ValueError, IndexError) as e:
            raise CounterStoreError(f"unexpected reply: {reply!r}") from e
        return CounterState(count=count, ttl_seconds=ttl_ms / 1000)

    async def close(self) -> None:
        """Close the Redis connection."""
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None


@dataclass
class _Window:
    count: int
    expires_at: float


class InMemoryCounterStore(CounterStore):
    """Process-local fixed-window counters.

    Only correct for a single serving process. Suitable for development,
    single-instance deployments and tests driven by a fake clock.

    Memory is bounded by `max_entries`: when a new key would exceed it,
    expired windows are pruned first, then the least recently used live
    windows are evicted (OrderedDict for LRU).
    """

    name = "memory"
    DEFAULT_MAX_ENTRIES = 10000

    def __init__(
        self,
        clock: Callable[[], float] = time.time,
        max_entries: int = DEFAULT_MAX_ENTRIES,
    ):
        if max_entries < 1:
            raise ValueError("max_entries must be positive")
        self._clock = clock
        self._max_entries = max_entries
        self._windows: OrderedDict[str, _Window] = OrderedDict()
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._windows)

    async def incr(self, key: str, window_seconds: int) -> CounterState:
        async with self._lock:
            now = self._clock()
            window = self._windows.get(key)
            if window is None:
                if len(self._windows) >= self._max_entries:
                    self._make_room(now)
            else:
                self._windows.move_to_end(key)
            if window is None or now >= window.expires_at:
                window = _Window(count=0, expires_at=now + window_seconds)
                self._windows[key] = window
            window.count += 1
            return CounterState(count=window.count, ttl_seconds=window.expires_at - now)

    def _make_room(self, now: float) -> None:
        """Free at least one slot: expired windows first, then LRU eviction."""
        expired = [key for key, w in self._windows.items() if now >= w.expires_at]
        for key in expired:
            del self._windows[key]

        evicted = 0
        while len(self._windows) >= self._max_entries:
            self._windows.popitem(last=False)
            evicted += 1

        if expired or evicted:
            logger.debug(
                f"Rate limit table full: pruned {len(expired)} expired, "
                f"evicted {evicted} live windows"
            )

    async def close(self) -> None:
        async with self._lock:
            self._windows.clear()
