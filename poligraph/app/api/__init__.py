"""API endpoints package for the Poligraph API."""

from poligraph.app.api.admin_auth import router as admin_auth_router

__all__ = [
    "admin_auth_router",
]
