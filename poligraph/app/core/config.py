import json
import re
from typing import Annotated, Any

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


def _parse_cors_origins(raw: Any) -> list[str]:
    if raw is None:
        return []
    if isinstance(raw, list):
        return [str(v).strip() for v in raw if str(v).strip()]

    raw = str(raw).strip()
    if not raw or raw == "[]":
        return []
    if raw == "*":
        return ["*"]

    # JSON is the documented format, plain host lists are tolerated.
    if raw.startswith("["):
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, list):
            return [str(v).strip() for v in parsed if str(v).strip()]

    origins: list[str] = []
    for part in re.split(r"[,\s]+", raw):
        if not part:
            continue
        if part == "*":
            return ["*"]
        if "://" in part:
            candidates = [part]
        else:
            candidates = [f"http://{part}", f"https://{part}"]
        for origin in candidates:
            if origin not in origins:
                origins.append(origin)
    return origins


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    All settings can be configured via environment variables or .env file.
    Values are read once at process start.
    """

    # Debug mode - enables detailed error responses
    debug: bool = False

    # Logging settings
    log_level: str = "INFO"
    log_format: str = "text"  # text | structured | json

    # CORS settings
    cors_origins: Annotated[list[str], NoDecode] = ["*"]

    # Tiered API rate limiting
    rate_limit_enabled: bool = True
    rate_limit_backend: str = "redis"  # redis | memory
    rate_limit_window_seconds: int = 60
    rate_limit_general_requests: int = 60
    rate_limit_search_requests: int = 30
    rate_limit_export_requests: int = 5

    # Shared counter store (empty URL = unconfigured, limiter fails open)
    redis_url: str = ""
    redis_token: str = ""
    redis_timeout_seconds: float = 0.5

    # Admin login brute-force protection
    admin_password: str = ""
    login_max_attempts: int = 5
    login_window_seconds: int = 15 * 60
    login_block_seconds: int = 30 * 60
    login_sweep_interval_seconds: int = 10 * 60

    @field_validator("cors_origins", mode="before")
    @classmethod
    def decode_cors_origins(cls, v: Any) -> list[str]:
        return _parse_cors_origins(v)

    @field_validator("log_format")
    @classmethod
    def normalize_log_format(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in ("text", "structured", "json"):
            raise ValueError("log_format must be one of: text, structured, json")
        return v

    @field_validator("rate_limit_backend")
    @classmethod
    def validate_backend(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in ("redis", "memory"):
            raise ValueError("rate_limit_backend must be 'redis' or 'memory'")
        return v

    @field_validator(
        "rate_limit_window_seconds",
        "rate_limit_general_requests",
        "rate_limit_search_requests",
        "rate_limit_export_requests",
    )
    @classmethod
    def validate_rate_limit_positive(cls, v: int) -> int:
        """Validate rate limit values are positive."""
        if v < 1:
            raise ValueError("Rate limit values must be at least 1")
        return v

    @field_validator(
        "login_max_attempts",
        "login_window_seconds",
        "login_block_seconds",
        "login_sweep_interval_seconds",
    )
    @classmethod
    def validate_login_guard_positive(cls, v: int) -> int:
        """Validate login guard values are positive."""
        if v < 1:
            raise ValueError("Login guard values must be at least 1")
        return v

    @field_validator("redis_timeout_seconds")
    @classmethod
    def validate_timeout_positive(cls, v: float) -> float:
        """Validate the store timeout is positive."""
        if v <= 0:
            raise ValueError("redis_timeout_seconds must be positive")
        return v

    @field_validator("redis_url", "redis_token", "admin_password")
    @classmethod
    def strip_secrets(cls, v: str) -> str:
        # Normalize accidental whitespace/newline from env/secret stores.
        return v.strip()

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


# Global settings instance
settings = Settings()
