"""Error taxonomy shared by the auth pipeline. Every HTTP-facing error renders the same envelope."""

from __future__ import annotations

from typing import Any


class AppError(Exception):
    """Base for errors that map to a `{success, error, message, ...}` response."""

    status_code = 500
    error = "Internal server error"

    def __init__(
        self,
        message: str,
        *,
        error: str | None = None,
        status_code: int | None = None,
        extra: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error is not None:
            self.error = error
        if status_code is not None:
            self.status_code = status_code
        self.extra = extra or {}
        self.headers = headers

    def to_body(self) -> dict[str, Any]:
        return {"success": False, "error": self.error, "message": self.message, **self.extra}


class ValidationError(AppError):
    status_code = 400
    error = "Validation error"


class ConflictError(AppError):
    status_code = 409
    error = "Conflict"


class NotFoundError(AppError):
    status_code = 404
    error = "Not found"


class AuthenticationError(AppError):
    """Missing, invalid, expired or revoked credential. 401 unless told otherwise (403 for forged tokens / CSRF)."""

    status_code = 401
    error = "Authentication failed"


class AccountLocked(AppError):
    status_code = 429
    error = "Account locked"


class RateLimitError(AppError):
    status_code = 429
    error = "Too many requests"

    def __init__(
        self,
        *,
        tier: str,
        limit: int,
        retry_after: int,
        reset_time_iso: str,
        message: str = "You have exceeded the rate limit. Please try again later.",
    ) -> None:
        super().__init__(
            message,
            extra={
                "retryAfter": retry_after,
                "resetTime": reset_time_iso,
                "limit": limit,
                "remaining": 0,
            },
            headers={"Retry-After": str(retry_after)},
        )
        self.tier = tier
        self.limit = limit
        self.retry_after = retry_after


class DependencyDegraded(Exception):
    """A best-effort dependency (revocation cache) failed. Logged, never surfaced to the client."""

    def __init__(self, dependency: str, cause: BaseException | None = None) -> None:
        detail = f"{type(cause).__name__}: {cause}" if cause is not None else "unavailable"
        super().__init__(f"{dependency} degraded ({detail})")
        self.dependency = dependency
        self.cause = cause
