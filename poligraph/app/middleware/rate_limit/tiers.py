"""Route classification into rate limit tiers.

The table is static: it is read at import time and never edited at runtime.
Rules are ordered most specific first and the first matching prefix wins.
"""

from typing import Dict, Optional, Tuple

from poligraph.app.core.config import Settings
from poligraph.app.middleware.rate_limit.models import RateLimitTier, TierPolicy

# (path prefix, tier); a None tier means the subtree is not rate limited here.
ROUTE_RULES: Tuple[Tuple[str, Optional[RateLimitTier]], ...] = (
    # Handled by their own limiting or internal only
    ("/api/chat", None),
    ("/api/admin", None),
    ("/api/cron", None),
    ("/api/export", RateLimitTier.EXPORT),
    ("/api/search", RateLimitTier.SEARCH),
    ("/api/", RateLimitTier.GENERAL),
)


def classify(path: str) -> Optional[RateLimitTier]:
    """Map a request path to its tier, or None when it is unguarded."""
    for prefix, tier in ROUTE_RULES:
        if path.startswith(prefix):
            return tier
    return None


def default_policies(config: Settings) -> Dict[RateLimitTier, TierPolicy]:
    """Build the tier table from settings.

    Every tier appears exactly once; all tiers share the configured window.
    """
    window = config.rate_limit_window_seconds
    capacities = {
        RateLimitTier.GENERAL: config.rate_limit_general_requests,
        RateLimitTier.SEARCH: config.rate_limit_search_requests,
        RateLimitTier.EXPORT: config.rate_limit_export_requests,
    }
    return {
        tier: TierPolicy(tier=tier, capacity=capacity, window_seconds=window)
        for tier, capacity in capacities.items()
    }
