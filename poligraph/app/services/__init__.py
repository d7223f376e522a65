"""Services package for the Poligraph API.

This package provides:
- Admin login brute-force protection (in-process, with background sweep)
"""

from poligraph.app.services.login_guard import (
    LoginAttempt,
    LoginCheck,
    LoginGuard,
    build_login_guard,
)

__all__ = [
    "LoginAttempt",
    "LoginCheck",
    "LoginGuard",
    "build_login_guard",
]
