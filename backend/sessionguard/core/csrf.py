"""
CSRF protection via the double-submit cookie pattern.

The secret lives in a script-readable cookie and must be echoed in a request
header. Only a same-origin script can read the cookie, so possession of both
is the whole check; no server-side state is consulted.
"""

from __future__ import annotations

import hmac
import logging
import re
import secrets
from collections.abc import Iterable

from sessionguard.core.errors import AuthenticationError

logger = logging.getLogger(__name__)

CSRF_COOKIE_NAME = "csrfToken"
# X-CSRF-Token is canonical; X-XSRF-Token is still accepted for older clients.
CSRF_HEADER_NAME = "X-CSRF-Token"
LEGACY_CSRF_HEADER_NAME = "X-XSRF-Token"

STATE_CHANGING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})
SECRET_BYTES = 32
_SECRET_RE = re.compile(r"^[a-f0-9]{64}$")


class CsrfError(AuthenticationError):
    status_code = 403
    error = "CSRF token invalid"


def generate_secret() -> str:
    """Return a new 256-bit secret as 64 lowercase hex characters."""
    return secrets.token_hex(SECRET_BYTES)


def is_well_formed(value: str | None) -> bool:
    return isinstance(value, str) and _SECRET_RE.fullmatch(value) is not None


def tokens_match(cookie_value: str, header_value: str) -> bool:
    """Constant-time comparison; a length mismatch is a plain mismatch, never an exception."""
    return hmac.compare_digest(cookie_value.encode("utf-8"), header_value.encode("utf-8"))


class CsrfGuard:
    """Decides whether a request needs the check and performs it."""

    def __init__(self, *, webhook_prefixes: Iterable[str], exempt_paths: Iterable[str]) -> None:
        self.webhook_prefixes = tuple(webhook_prefixes)
        self.exempt_paths = frozenset(exempt_paths)

    def requires_check(self, method: str, path: str) -> bool:
        if method.upper() not in STATE_CHANGING_METHODS:
            return False
        if any(path.startswith(prefix) for prefix in self.webhook_prefixes):
            return False
        if path in self.exempt_paths:
            logger.debug("Skipping CSRF verification for pre-auth endpoint path=%s", path)
            return False
        return True

    @staticmethod
    def header_value(headers) -> str | None:
        value = headers.get(CSRF_HEADER_NAME)
        if value is None:
            value = headers.get(LEGACY_CSRF_HEADER_NAME)
            if value is not None:
                logger.debug("CSRF token read from legacy header %s", LEGACY_CSRF_HEADER_NAME)
        return value

    def verify(self, cookie_value: str | None, header_value: str | None, *, path: str = "", ip: str = "") -> None:
        """Raise CsrfError unless cookie and header carry the same well-formed secret."""
        if not is_well_formed(cookie_value):
            logger.warning("CSRF verification failed: no token in cookie ip=%s path=%s", ip, path)
            raise CsrfError("CSRF token not found in cookies", error="CSRF token missing")
        if not is_well_formed(header_value):
            logger.warning("CSRF verification failed: no token in header or invalid format ip=%s path=%s", ip, path)
            raise CsrfError(f"CSRF token required in {CSRF_HEADER_NAME} header", error="CSRF token missing")
        if not tokens_match(cookie_value, header_value):
            logger.warning("CSRF verification failed: token mismatch ip=%s path=%s", ip, path)
            raise CsrfError("CSRF token verification failed")
