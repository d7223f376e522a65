"""Custom exceptions for the admission layer."""

from typing import Optional


class AdmissionError(Exception):
    """Base class for client-facing admission errors with HTTP status code.

    These are expected, recoverable outcomes (quota exceeded, lockout, bad
    password), not system failures.
    """
    status_code: int = 400

    def __init__(self, message: str = "Request refused"):
        self.message = message
        super().__init__(message)

    @property
    def headers(self) -> dict[str, str]:
        return {}


class RateLimitExceededError(AdmissionError):
    """Raised when a client has exhausted its tier quota.

    Maps to HTTP 429 Too Many Requests.
    """
    status_code = 429

    def __init__(self, retry_after: int, limit: int, reset_at: float):
        self.retry_after = retry_after
        self.limit = limit
        self.reset_at = reset_at
        super().__init__("Trop de requêtes. Réessayez plus tard.")

    @property
    def headers(self) -> dict[str, str]:
        return {
            "Retry-After": str(self.retry_after),
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": "0",
            "X-RateLimit-Reset": str(int(self.reset_at)),
        }


class LoginBlockedError(AdmissionError):
    """Raised when a client is locked out of the admin login.

    Maps to HTTP 429 Too Many Requests.
    """
    status_code = 429

    def __init__(self, retry_after: int):
        self.retry_after = retry_after
        super().__init__(
            f"Trop de tentatives. Réessayez dans {retry_after} secondes."
        )

    @property
    def headers(self) -> dict[str, str]:
        return {"Retry-After": str(self.retry_after)}


class InvalidCredentialsError(AdmissionError):
    """Raised when the admin password does not match.

    Maps to HTTP 401 Unauthorized.
    """
    status_code = 401

    def __init__(self, remaining: Optional[int] = None):
        self.remaining = remaining
        message = "Mot de passe incorrect"
        if remaining is not None:
            message += f" ({remaining} tentative(s) restante(s))"
        super().__init__(message)


class CounterStoreError(Exception):
    """Raised by a counter store when the shared store cannot answer.

    Never surfaced to clients: the rate limiter converts it into a
    fail-open admission.
    """
