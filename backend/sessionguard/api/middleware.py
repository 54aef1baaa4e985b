"""
Request pipeline middlewares. The rate limiter runs ahead of the CSRF guard.

Starlette runs the last-added middleware first, so `create_app` adds CSRF
before the rate limiter.
"""

from __future__ import annotations

import logging
from dataclasses import replace

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from sessionguard.api.errors import error_response
from sessionguard.config import Settings
from sessionguard.core.cookies import ACCESS_COOKIE_NAME, set_csrf_cookie
from sessionguard.core.csrf import CSRF_COOKIE_NAME, CsrfError, CsrfGuard, generate_secret, is_well_formed
from sessionguard.core.errors import RateLimitError
from sessionguard.core.metrics import CSRF_REJECTIONS
from sessionguard.core.rate_limit import RateLimiter, RequestInfo
from sessionguard.core.tokens import TokenCodec, TokenError

logger = logging.getLogger(__name__)


def client_ip(request: Request, trust_proxy_headers: bool = False) -> str | None:
    if trust_proxy_headers:
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            first = forwarded.split(",")[0].strip()
            if first:
                return first
    return request.client.host if request.client else None


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    IP-keyed tiers run before any token is touched. Only if they pass is the
    access cookie verified to key the per-user, write and read tiers.
    """

    def __init__(self, app, limiter: RateLimiter, codec: TokenCodec, trust_proxy_headers: bool = False):
        super().__init__(app)
        self.limiter = limiter
        self.codec = codec
        self.trust_proxy_headers = trust_proxy_headers

    def _resolve_subject(self, request: Request) -> int | None:
        token = request.cookies.get(ACCESS_COOKIE_NAME)
        if not token:
            return None
        try:
            return self.codec.verify_access(token).subject_id
        except TokenError:
            return None

    async def dispatch(self, request, call_next):
        info = RequestInfo(
            path=request.url.path,
            method=request.method,
            client_ip=client_ip(request, self.trust_proxy_headers),
        )
        try:
            pending = await self.limiter.check(info)
            subject_id = self._resolve_subject(request)
            if subject_id is not None:
                info = replace(info, subject_id=subject_id)
            pending += await self.limiter.check(info, identity_phase=True)
        except RateLimitError as e:
            return error_response(e)

        response = await call_next(request)
        await self.limiter.settle(pending, response.status_code)
        return response


class CsrfMiddleware(BaseHTTPMiddleware):
    """Verifies the double-submit secret on state-changing requests and hands one out on GET."""

    def __init__(self, app, guard: CsrfGuard, settings: Settings):
        super().__init__(app)
        self.guard = guard
        self.settings = settings

    async def dispatch(self, request, call_next):
        cookie_value = request.cookies.get(CSRF_COOKIE_NAME)
        if self.guard.requires_check(request.method, request.url.path):
            try:
                self.guard.verify(
                    cookie_value,
                    self.guard.header_value(request.headers),
                    path=request.url.path,
                    ip=client_ip(request, self.settings.trust_proxy_headers) or "unknown",
                )
            except CsrfError as e:
                CSRF_REJECTIONS.labels(error=e.error).inc()
                return error_response(e)

        response = await call_next(request)

        if request.method in ("GET", "HEAD") and not is_well_formed(cookie_value):
            already_set = any(
                value.startswith(f"{CSRF_COOKIE_NAME}=") for value in response.headers.getlist("set-cookie")
            )
            if not already_set:
                set_csrf_cookie(response, generate_secret(), self.settings)
                logger.debug("CSRF token generated and set")
        return response


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, enable_hsts: bool = False):
        super().__init__(app)
        self.enable_hsts = enable_hsts

    async def dispatch(self, request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        if self.enable_hsts:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        return response
