"""Cookie contract for the browser client."""

from starlette.responses import Response

from sessionguard.config import Settings
from sessionguard.core.csrf import CSRF_COOKIE_NAME

ACCESS_COOKIE_NAME = "accessToken"
REFRESH_COOKIE_NAME = "refreshToken"


def set_auth_cookies(response: Response, access_token: str, refresh_token: str, settings: Settings) -> None:
    """Both tokens httpOnly, SameSite=Lax (allows top-level navigation from other sites)."""
    response.set_cookie(
        ACCESS_COOKIE_NAME,
        access_token,
        max_age=settings.access_token_expire_minutes * 60,
        path="/",
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
    )
    response.set_cookie(
        REFRESH_COOKIE_NAME,
        refresh_token,
        max_age=settings.refresh_token_expire_days * 24 * 60 * 60,
        path="/",
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
    )


def clear_auth_cookies(response: Response, settings: Settings) -> None:
    for name in (ACCESS_COOKIE_NAME, REFRESH_COOKIE_NAME):
        response.delete_cookie(name, path="/", httponly=True, secure=settings.cookie_secure, samesite="lax")


def set_csrf_cookie(response: Response, secret: str, settings: Settings) -> None:
    # Must stay readable by JavaScript so the client can mirror it into X-CSRF-Token
    response.set_cookie(
        CSRF_COOKIE_NAME,
        secret,
        max_age=settings.csrf_cookie_max_age_seconds,
        path="/",
        httponly=False,
        secure=settings.cookie_secure,
        samesite="strict",
    )
