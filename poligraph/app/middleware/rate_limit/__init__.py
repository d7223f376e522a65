"""Tiered rate limiting middleware for the public API.

Every /api path is classified into a tier; guarded requests are counted per
client IP in a shared store. Denied requests get a 429 with Retry-After, and
admitted ones carry X-RateLimit-* headers so clients can back off.
"""

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from poligraph.app.core.logging import get_log_context, get_logger
from poligraph.app.exceptions import RateLimitExceededError
from poligraph.app.middleware.client_ip import client_ip_from_request

# Re-export models
from poligraph.app.middleware.rate_limit.models import (
    CounterState,
    RateLimitResult,
    RateLimitTier,
    TierPolicy,
)

# Re-export backends
from poligraph.app.middleware.rate_limit.backends import (
    CounterStore,
    InMemoryCounterStore,
    RedisCounterStore,
)

from poligraph.app.middleware.rate_limit.limiter import (
    TieredRateLimiter,
    build_rate_limiter,
)
from poligraph.app.middleware.rate_limit.tiers import (
    ROUTE_RULES,
    classify,
    default_policies,
)

logger = get_logger(__name__)

__all__ = [
    # Models
    "CounterState",
    "RateLimitResult",
    "RateLimitTier",
    "TierPolicy",
    # Backends
    "CounterStore",
    "InMemoryCounterStore",
    "RedisCounterStore",
    # Classification
    "ROUTE_RULES",
    "classify",
    "default_policies",
    # Main classes
    "TieredRateLimiter",
    "build_rate_limiter",
    "RateLimitMiddleware",
    "quota_headers",
]


def quota_headers(result: RateLimitResult) -> dict[str, str]:
    """Informational quota headers attached to admitted responses."""
    return {
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": str(int(result.reset_at)),
    }


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Middleware to enforce tiered rate limits on API requests.

    Paths without a tier (non-API paths and excluded namespaces) pass
    through untouched.
    """

    def __init__(self, app, limiter: TieredRateLimiter):
        super().__init__(app)
        self.limiter = limiter

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint
    ) -> Response:
        """Process request with rate limiting."""
        path = request.url.path
        tier = classify(path)
        if tier is None:
            return await call_next(request)

        client_ip = client_ip_from_request(request)
        result = await self.limiter.check(tier, client_ip)

        if not result.admitted:
            error = RateLimitExceededError(
                retry_after=result.retry_after(self.limiter.now()),
                limit=result.limit,
                reset_at=result.reset_at,
            )
            logger.info(
                "Rate limit exceeded",
                extra=get_log_context(
                    client_ip=client_ip,
                    tier=tier.value,
                    path=path,
                    method=request.method,
                    retry_after=error.retry_after,
                ),
            )
            return JSONResponse(
                status_code=error.status_code,
                content={"error": error.message},
                headers=error.headers,
            )

        response = await call_next(request)

        # Fail-open admissions carry no quota information worth reporting
        if result.enforced:
            response.headers.update(quota_headers(result))

        return response
