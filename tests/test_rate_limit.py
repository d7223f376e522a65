"""Tests for the tiered rate limiter, its counter stores and its middleware."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
import redis
from fastapi import FastAPI
from fastapi.testclient import TestClient

from poligraph.app.core.config import Settings
from poligraph.app.exceptions import CounterStoreError
from poligraph.app.middleware.rate_limit import (
    CounterState,
    InMemoryCounterStore,
    RateLimitMiddleware,
    RateLimitResult,
    RateLimitTier,
    RedisCounterStore,
    TierPolicy,
    TieredRateLimiter,
    build_rate_limiter,
    default_policies,
    quota_headers,
)
from poligraph.app.middleware.rate_limit import limiter as limiter_module


def make_policies(export=5, search=30, general=60, window=60):
    return {
        RateLimitTier.EXPORT: TierPolicy(RateLimitTier.EXPORT, export, window),
        RateLimitTier.SEARCH: TierPolicy(RateLimitTier.SEARCH, search, window),
        RateLimitTier.GENERAL: TierPolicy(RateLimitTier.GENERAL, general, window),
    }


class FakeRedis:
    """Minimal async Redis double that evaluates the fixed-window script."""

    def __init__(self, clock):
        self.clock = clock
        self.counts = {}
        self.expires_ms = {}
        self.eval_calls = []
        self.closed = False

    async def eval(self, script, num_keys, key, window_ms):
        self.eval_calls.append((num_keys, key, window_ms))
        now_ms = self.clock() * 1000
        if key in self.expires_ms and self.expires_ms[key] <= now_ms:
            self.counts.pop(key, None)
            self.expires_ms.pop(key, None)
        self.counts[key] = self.counts.get(key, 0) + 1
        if self.counts[key] == 1:
            self.expires_ms[key] = now_ms + window_ms
            return [1, window_ms]
        return [self.counts[key], int(self.expires_ms[key] - now_ms)]

    async def aclose(self):
        self.closed = True


class FailingStore(InMemoryCounterStore):
    def __init__(self, exc):
        super().__init__()
        self.exc = exc
        self.calls = 0

    async def incr(self, key, window_seconds):
        self.calls += 1
        raise self.exc


class TestRateLimitResult:
    """Tests for RateLimitResult."""

    def test_retry_after_rounds_up(self):
        result = RateLimitResult(admitted=False, limit=5, remaining=0, reset_at=100.2)
        assert result.retry_after(now=40.0) == 61

    def test_retry_after_is_at_least_one_second(self):
        result = RateLimitResult(admitted=False, limit=5, remaining=0, reset_at=100.0)
        assert result.retry_after(now=100.5) == 1

    def test_quota_headers(self):
        result = RateLimitResult(admitted=True, limit=60, remaining=59, reset_at=1234.9)
        assert quota_headers(result) == {
            "X-RateLimit-Limit": "60",
            "X-RateLimit-Remaining": "59",
            "X-RateLimit-Reset": "1234",
        }


class TestTieredRateLimiter:
    """Tests for TieredRateLimiter over the in-memory store."""

    @pytest.fixture
    def limiter(self, clock):
        return TieredRateLimiter(InMemoryCounterStore(clock=clock), make_policies(), clock=clock)

    @pytest.mark.asyncio
    async def test_remaining_decreases_by_one_per_call(self, limiter):
        for n in range(1, 31):
            result = await limiter.check(RateLimitTier.SEARCH, "1.2.3.4")
            assert result.admitted is True
            assert result.limit == 30
            assert result.remaining == 30 - n

    @pytest.mark.asyncio
    async def test_call_after_capacity_is_denied(self, limiter):
        for _ in range(30):
            await limiter.check(RateLimitTier.SEARCH, "1.2.3.4")

        result = await limiter.check(RateLimitTier.SEARCH, "1.2.3.4")
        assert result.admitted is False
        assert result.remaining == 0
        assert result.enforced is True

        # Stays denied for the rest of the window
        result = await limiter.check(RateLimitTier.SEARCH, "1.2.3.4")
        assert result.admitted is False

    @pytest.mark.asyncio
    async def test_window_reset_readmits(self, limiter, clock):
        for _ in range(6):
            await limiter.check(RateLimitTier.EXPORT, "1.2.3.4")

        clock.advance(60)
        result = await limiter.check(RateLimitTier.EXPORT, "1.2.3.4")

        assert result.admitted is True
        assert result.remaining == 4

    @pytest.mark.asyncio
    async def test_export_scenario(self, limiter, clock):
        """Five admitted exports, a denied sixth, readmission after the window."""
        remaining = []
        for _ in range(5):
            result = await limiter.check(RateLimitTier.EXPORT, "1.2.3.4")
            assert result.admitted is True
            remaining.append(result.remaining)
        assert remaining == [4, 3, 2, 1, 0]

        denied = await limiter.check(RateLimitTier.EXPORT, "1.2.3.4")
        assert denied.admitted is False
        assert denied.remaining == 0
        assert denied.retry_after(limiter.now()) == 60

        clock.advance(61)
        result = await limiter.check(RateLimitTier.EXPORT, "1.2.3.4")
        assert result.admitted is True
        assert result.remaining == 4

    @pytest.mark.asyncio
    async def test_reset_at_tracks_window_start(self, limiter, clock):
        start = clock.now
        first = await limiter.check(RateLimitTier.GENERAL, "1.2.3.4")
        clock.advance(20)
        second = await limiter.check(RateLimitTier.GENERAL, "1.2.3.4")

        assert first.reset_at == start + 60
        assert second.reset_at == start + 60

    @pytest.mark.asyncio
    async def test_identities_are_independent(self, limiter):
        for _ in range(6):
            await limiter.check(RateLimitTier.EXPORT, "1.2.3.4")

        result = await limiter.check(RateLimitTier.EXPORT, "5.6.7.8")
        assert result.admitted is True
        assert result.remaining == 4

    @pytest.mark.asyncio
    async def test_tiers_are_independent(self, limiter):
        for _ in range(6):
            await limiter.check(RateLimitTier.EXPORT, "1.2.3.4")

        result = await limiter.check(RateLimitTier.GENERAL, "1.2.3.4")
        assert result.admitted is True
        assert result.remaining == 59

    @pytest.mark.asyncio
    async def test_concurrent_checks_count_every_request(self, limiter):
        results = await asyncio.gather(
            *(limiter.check(RateLimitTier.SEARCH, "1.2.3.4") for _ in range(40))
        )

        assert sum(r.admitted for r in results) == 30
        assert sorted(r.remaining for r in results if r.admitted) == list(range(30))

    @pytest.mark.asyncio
    async def test_empty_identity_is_rejected(self, limiter):
        with pytest.raises(ValueError):
            await limiter.check(RateLimitTier.GENERAL, "")

    @pytest.mark.asyncio
    async def test_unknown_tier_is_rejected(self, clock):
        limiter = TieredRateLimiter(
            InMemoryCounterStore(clock=clock),
            {RateLimitTier.GENERAL: TierPolicy(RateLimitTier.GENERAL, 60, 60)},
            clock=clock,
        )
        with pytest.raises(KeyError):
            await limiter.check(RateLimitTier.EXPORT, "1.2.3.4")


class TestFailOpen:
    """The limiter admits everything when its store is missing or failing."""

    @pytest.mark.asyncio
    async def test_unconfigured_store_admits(self, clock):
        limiter = TieredRateLimiter(None, make_policies(), clock=clock)

        for _ in range(20):
            result = await limiter.check(RateLimitTier.EXPORT, "1.2.3.4")
            assert result.admitted is True
            assert result.enforced is False
            assert result.remaining == 5
            assert result.reset_at == clock.now + 60

        assert limiter.configured is False
        assert limiter.backend == "none"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "exc",
        [
            CounterStoreError("connection refused"),
            RuntimeError("boom"),
            ValueError("bad reply"),
        ],
    )
    async def test_store_failure_admits(self, clock, exc):
        store = FailingStore(exc)
        limiter = TieredRateLimiter(store, make_policies(), clock=clock)

        for _ in range(10):
            result = await limiter.check(RateLimitTier.EXPORT, "1.2.3.4")
            assert result.admitted is True
            assert result.enforced is False

        assert store.calls == 10

    @pytest.mark.asyncio
    async def test_redis_connection_error_admits(self, clock):
        client = MagicMock()
        client.eval = AsyncMock(side_effect=redis.ConnectionError("refused"))
        store = RedisCounterStore("redis://localhost:6379/0", redis_client=client)
        limiter = TieredRateLimiter(store, make_policies(), clock=clock)

        result = await limiter.check(RateLimitTier.GENERAL, "1.2.3.4")

        assert result.admitted is True
        assert result.enforced is False


class TestRedisCounterStore:
    """Tests for RedisCounterStore against a fake client."""

    @pytest.mark.asyncio
    async def test_incr_runs_script_with_window_in_ms(self, clock):
        fake = FakeRedis(clock)
        store = RedisCounterStore("redis://localhost:6379/0", redis_client=fake)

        state = await store.incr("rl:export:1.2.3.4", 60)

        assert state == CounterState(count=1, ttl_seconds=60.0)
        assert fake.eval_calls == [(1, "rl:export:1.2.3.4", 60000)]

    @pytest.mark.asyncio
    async def test_limiter_over_redis_store(self, clock):
        fake = FakeRedis(clock)
        store = RedisCounterStore("redis://localhost:6379/0", redis_client=fake)
        limiter = TieredRateLimiter(store, make_policies(), clock=clock)

        results = [await limiter.check(RateLimitTier.EXPORT, "1.2.3.4") for _ in range(6)]

        assert [r.remaining for r in results] == [4, 3, 2, 1, 0, 0]
        assert results[-1].admitted is False
        assert fake.counts["rl:export:1.2.3.4"] == 6

        clock.advance(61)
        result = await limiter.check(RateLimitTier.EXPORT, "1.2.3.4")
        assert result.admitted is True
        assert result.remaining == 4

    @pytest.mark.asyncio
    async def test_redis_error_becomes_store_error(self):
        client = MagicMock()
        client.eval = AsyncMock(side_effect=redis.TimeoutError("slow"))
        store = RedisCounterStore("redis://localhost:6379/0", redis_client=client)

        with pytest.raises(CounterStoreError):
            await store.incr("rl:general:1.2.3.4", 60)

    @pytest.mark.asyncio
    async def test_slow_store_times_out(self):
        async def hang(*args):
            await asyncio.sleep(5)

        client = MagicMock()
        client.eval = AsyncMock(side_effect=hang)
        store = RedisCounterStore("redis://localhost:6379/0", timeout=0.05, redis_client=client)

        with pytest.raises(CounterStoreError, match="timeout"):
            await store.incr("rl:general:1.2.3.4", 60)

    @pytest.mark.asyncio
    async def test_malformed_reply_becomes_store_error(self):
        client = MagicMock()
        client.eval = AsyncMock(return_value=None)
        store = RedisCounterStore("redis://localhost:6379/0", redis_client=client)

        with pytest.raises(CounterStoreError):
            await store.incr("rl:general:1.2.3.4", 60)

    @pytest.mark.asyncio
    async def test_close_releases_client(self, clock):
        fake = FakeRedis(clock)
        store = RedisCounterStore("redis://localhost:6379/0", redis_client=fake)

        await store.close()
        await store.close()

        assert fake.closed is True


class TestInMemoryCounterStore:
    """Tests for InMemoryCounterStore."""

    @pytest.mark.asyncio
    async def test_expired_windows_are_pruned_when_full(self, clock):
        store = InMemoryCounterStore(clock=clock, max_entries=3)
        for i in range(3):
            await store.incr(f"rl:general:10.0.0.{i}", 60)

        clock.advance(61)
        await store.incr("rl:general:10.0.0.9", 60)

        assert len(store) == 1

    @pytest.mark.asyncio
    async def test_live_windows_survive_pruning(self, clock):
        store = InMemoryCounterStore(clock=clock, max_entries=2)
        await store.incr("a", 60)
        await store.incr("b", 60)
        state = await store.incr("a", 60)

        assert state.count == 2
        assert len(store) == 2

    @pytest.mark.asyncio
    async def test_live_windows_are_evicted_least_recently_used(self, clock):
        store = InMemoryCounterStore(clock=clock, max_entries=3)
        for i in range(100):
            await store.incr(f"rl:general:10.0.{i // 256}.{i % 256}", 60)

        assert len(store) <= 3

    @pytest.mark.asyncio
    async def test_recently_used_window_outlives_eviction(self, clock):
        store = InMemoryCounterStore(clock=clock, max_entries=2)
        await store.incr("a", 60)
        await store.incr("b", 60)
        await store.incr("a", 60)
        await store.incr("c", 60)

        state = await store.incr("a", 60)
        assert state.count == 3
        assert (await store.incr("b", 60)).count == 1


class TestBuildRateLimiter:
    """Tests for store selection at construction."""

    def test_memory_backend(self):
        limiter = build_rate_limiter(Settings(_env_file=None, rate_limit_backend="memory"))
        assert limiter.configured is True
        assert limiter.backend == "memory"

    def test_redis_backend_with_url(self):
        limiter = build_rate_limiter(
            Settings(_env_file=None, redis_url="redis://localhost:6379/0", redis_token="secret")
        )
        assert limiter.configured is True
        assert limiter.backend == "redis"

    def test_redis_backend_without_url_is_unconfigured(self):
        limiter = build_rate_limiter(Settings(_env_file=None, redis_url=""))
        assert limiter.configured is False

    def test_store_rejects_non_redis_url(self):
        with pytest.raises(ValueError):
            RedisCounterStore("https://eu1-example.upstash.io")

    @pytest.mark.asyncio
    async def test_invalid_url_is_unconfigured_without_per_request_errors(self, monkeypatch):
        logged = []
        for level in ("warning", "error", "exception"):
            monkeypatch.setattr(
                limiter_module.logger,
                level,
                lambda msg, *args, _level=level, **kwargs: logged.append((_level, msg)),
            )

        limiter = build_rate_limiter(
            Settings(_env_file=None, redis_url="https://eu1-example.upstash.io")
        )
        assert limiter.configured is False
        assert len(logged) == 1
        assert "Invalid REDIS_URL" in logged[0][1]

        results = [await limiter.check(RateLimitTier.GENERAL, "1.2.3.4") for _ in range(3)]

        assert all(r.admitted and not r.enforced for r in results)
        assert len(logged) == 1

    def test_policies_follow_settings(self):
        config = Settings(_env_file=None, rate_limit_export_requests=2)
        limiter = build_rate_limiter(config)
        assert limiter.policy(RateLimitTier.EXPORT).capacity == 2
        assert limiter.policy(RateLimitTier.GENERAL) == default_policies(config)[RateLimitTier.GENERAL]


class TestRateLimitMiddleware:
    """Tests for the HTTP behaviour of RateLimitMiddleware."""

    @pytest.fixture
    def make_client(self, clock):
        def _make(limiter=None):
            limiter = limiter or TieredRateLimiter(
                InMemoryCounterStore(clock=clock), make_policies(export=2), clock=clock
            )
            app = FastAPI()
            app.add_middleware(RateLimitMiddleware, limiter=limiter)

            @app.get("/api/export/politiques.csv")
            async def export():
                return {"ok": True}

            @app.get("/api/politiques")
            async def politiques():
                return {"ok": True}

            @app.get("/api/admin/stats")
            async def admin_stats():
                return {"ok": True}

            @app.get("/about")
            async def about():
                return {"ok": True}

            return TestClient(app)
        return _make

    def test_admitted_response_carries_quota_headers(self, make_client, clock):
        client = make_client()

        response = client.get("/api/export/politiques.csv")

        assert response.status_code == 200
        assert response.headers["X-RateLimit-Limit"] == "2"
        assert response.headers["X-RateLimit-Remaining"] == "1"
        assert response.headers["X-RateLimit-Reset"] == str(int(clock.now + 60))

    def test_denied_request_gets_429(self, make_client, clock):
        client = make_client()
        client.get("/api/export/politiques.csv")
        client.get("/api/export/politiques.csv")

        clock.advance(15)
        response = client.get("/api/export/politiques.csv")

        assert response.status_code == 429
        assert response.json() == {"error": "Trop de requêtes. Réessayez plus tard."}
        assert response.headers["Retry-After"] == "45"
        assert response.headers["X-RateLimit-Limit"] == "2"
        assert response.headers["X-RateLimit-Remaining"] == "0"

    def test_clients_are_identified_by_forwarded_for(self, make_client):
        client = make_client()
        headers = {"X-Forwarded-For": "203.0.113.7, 10.0.0.1"}
        client.get("/api/export/politiques.csv", headers=headers)
        client.get("/api/export/politiques.csv", headers=headers)

        assert client.get("/api/export/politiques.csv", headers=headers).status_code == 429
        other = client.get(
            "/api/export/politiques.csv", headers={"X-Forwarded-For": "198.51.100.2"}
        )
        assert other.status_code == 200

    def test_unguarded_paths_pass_through(self, make_client):
        client = make_client()

        for path in ("/api/admin/stats", "/about"):
            for _ in range(5):
                response = client.get(path)
                assert response.status_code == 200
                assert "X-RateLimit-Limit" not in response.headers

    def test_fail_open_adds_no_quota_headers(self, make_client, clock):
        client = make_client(TieredRateLimiter(None, make_policies(export=2), clock=clock))

        for _ in range(5):
            response = client.get("/api/export/politiques.csv")
            assert response.status_code == 200
            assert "X-RateLimit-Limit" not in response.headers
