"""Middleware package for the Poligraph API."""

from poligraph.app.middleware.client_ip import client_ip_from_request, get_client_ip
from poligraph.app.middleware.rate_limit import RateLimitMiddleware

__all__ = [
    "client_ip_from_request",
    "get_client_ip",
    "RateLimitMiddleware",
]
