"""Admin authentication endpoint guarded by the login brute-force guard."""

import hmac

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from poligraph.app.core.config import Settings
from poligraph.app.core.logging import get_log_context, get_logger
from poligraph.app.exceptions import InvalidCredentialsError, LoginBlockedError
from poligraph.app.middleware.client_ip import client_ip_from_request
from poligraph.app.services.login_guard import LoginGuard

logger = get_logger(__name__)

router = APIRouter(prefix="/api/admin", tags=["admin-auth"])


class AdminLoginRequest(BaseModel):
    password: str


def get_login_guard(request: Request) -> LoginGuard:
    return request.app.state.login_guard


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def verify_admin_password(candidate: str, expected: str) -> bool:
    """Constant-time password comparison; an unset password never matches."""
    if not expected:
        return False
    return hmac.compare_digest(candidate.encode("utf-8"), expected.encode("utf-8"))


@router.post("/auth")
async def admin_login(
    payload: AdminLoginRequest,
    request: Request,
    guard: LoginGuard = Depends(get_login_guard),
    config: Settings = Depends(get_app_settings),
) -> dict[str, bool]:
    """Check the admin password.

    Blocked clients get a 429 before the password is even looked at.
    """
    client_ip = client_ip_from_request(request)

    check = guard.check_rate_limit(client_ip)
    if check.limited:
        raise LoginBlockedError(retry_after=check.retry_after or 1)

    if verify_admin_password(payload.password, config.admin_password):
        guard.clear_attempts(client_ip)
        logger.info("Admin login succeeded", extra=get_log_context(client_ip=client_ip))
        return {"success": True}

    after = guard.record_failed_attempt(client_ip)
    logger.warning(
        "Admin login failed",
        extra=get_log_context(client_ip=client_ip, remaining=after.remaining),
    )
    if after.limited:
        raise LoginBlockedError(retry_after=after.retry_after or 1)
    raise InvalidCredentialsError(remaining=after.remaining)
