from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from poligraph.app.api.admin_auth import router as admin_auth_router
from poligraph.app.core.config import Settings, settings as default_settings
from poligraph.app.core.logging import get_log_context, get_logger, setup_logging
from poligraph.app.exceptions import AdmissionError
from poligraph.app.middleware.rate_limit import (
    RateLimitMiddleware,
    TieredRateLimiter,
    build_rate_limiter,
)
from poligraph.app.middleware.client_ip import client_ip_from_request
from poligraph.app.services.login_guard import LoginGuard, build_login_guard


def create_app(
    settings: Optional[Settings] = None,
    rate_limiter: Optional[TieredRateLimiter] = None,
    login_guard: Optional[LoginGuard] = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    The limiter and the guard are built once here and live on app.state for
    the lifetime of the process. Tests pass their own instances.

    Returns:
        Configured FastAPI application instance
    """
    settings = settings or default_settings

    setup_logging(settings)
    logger = get_logger(__name__)

    rate_limiter = rate_limiter or build_rate_limiter(settings)
    login_guard = login_guard or build_login_guard(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Start the guard's sweep on startup; stop it and close the store on shutdown."""
        await login_guard.start()
        logger.info(
            "Application startup complete",
            extra={
                "rate_limit_backend": rate_limiter.backend,
                "rate_limit_enabled": settings.rate_limit_enabled,
                "debug_mode": settings.debug,
            }
        )

        yield

        await login_guard.stop()
        await rate_limiter.close()
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="Poligraph API",
        description="Public API with tiered rate limiting and admin login protection",
        version="1.0.0",
        lifespan=lifespan
    )
    app.state.settings = settings
    app.state.rate_limiter = rate_limiter
    app.state.login_guard = login_guard

    # Add middleware (order matters: last added = first executed)
    if settings.rate_limit_enabled:
        app.add_middleware(RateLimitMiddleware, limiter=rate_limiter)

    # CORS middleware (outermost - handles preflight requests first)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["Retry-After", "X-RateLimit-Limit", "X-RateLimit-Remaining", "X-RateLimit-Reset"],
        max_age=600,
    )

    app.include_router(admin_auth_router)

    @app.get("/health")
    async def health() -> dict[str, Any]:
        """Report the state of both admission layers."""
        return {
            "status": "ok",
            "components": {
                "rate_limiter": {
                    "enabled": settings.rate_limit_enabled,
                    "configured": rate_limiter.configured,
                    "backend": rate_limiter.backend,
                },
                "login_guard": {
                    "tracked": len(login_guard),
                    "sweeping": login_guard.sweeping,
                },
            },
        }

    @app.exception_handler(AdmissionError)
    async def admission_error_handler(request: Request, exc: AdmissionError) -> JSONResponse:
        """Render quota, lockout and credential errors as JSON."""
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.message},
            headers=exc.headers,
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Global exception handler for unhandled exceptions.

        The traceback is logged server-side and never returned to the client.
        """
        logger.exception(
            "Unhandled exception",
            extra=get_log_context(
                client_ip=client_ip_from_request(request),
                path=request.url.path,
                method=request.method,
                exception_type=type(exc).__name__,
            ),
        )

        content = {"error": "internal_error", "message": "Internal server error"}
        if settings.debug:
            content["message"] = str(exc)
            content["exception_type"] = type(exc).__name__
        return JSONResponse(status_code=500, content=content)

    return app


# Create the application instance
app = create_app()
