"""FastAPI dependencies: components held on app.state and the caller's identity."""

import hmac
import logging
from dataclasses import dataclass
from typing import Annotated

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from sessionguard.api.middleware import client_ip
from sessionguard.config import Settings
from sessionguard.core.cookies import ACCESS_COOKIE_NAME
from sessionguard.core.errors import AuthenticationError, NotFoundError
from sessionguard.core.metrics import AUTH_FAILURES
from sessionguard.core.revocation import RevocationCache
from sessionguard.core.tokens import AccessClaims, TokenCodec, TokenError, TokenExpired
from sessionguard.db.session import get_db
from sessionguard.models.user import User
from sessionguard.services.credentials import CredentialStore

logger = logging.getLogger(__name__)

API_KEY_HEADER = "X-API-Key"


@dataclass(frozen=True)
class Identity:
    """Decoded caller identity handed to route handlers. Handlers must not re-verify it."""

    subject_id: int
    email: str
    role: str
    token: str
    claims: AccessClaims


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_codec(request: Request) -> TokenCodec:
    return request.app.state.codec


def get_revocation_cache(request: Request) -> RevocationCache:
    return request.app.state.revocation


def get_credential_store(session: Annotated[AsyncSession, Depends(get_db)]) -> CredentialStore:
    return CredentialStore(session)


def _reject(reason: str, exc: AuthenticationError) -> AuthenticationError:
    AUTH_FAILURES.labels(reason=reason).inc()
    return exc


async def get_current_identity(
    request: Request,
    codec: Annotated[TokenCodec, Depends(get_codec)],
    revocation: Annotated[RevocationCache, Depends(get_revocation_cache)],
) -> Identity:
    """
    Admit, or reject with the exact failure:
    no cookie -> 401 `No token provided`; expired -> 401 `Token expired`;
    any other verification failure -> 403 `Invalid token`;
    blacklisted (only consulted when the cache is up) -> 401 `Token invalidated`.
    """
    token = request.cookies.get(ACCESS_COOKIE_NAME)
    if not token:
        raise _reject("missing", AuthenticationError("Access token cookie required", error="No token provided"))
    try:
        claims = codec.verify_access(token)
    except TokenExpired:
        raise _reject(
            "expired",
            AuthenticationError("Access token has expired. Please refresh.", error="Token expired"),
        )
    except TokenError as e:
        logger.warning("Invalid JWT token: %s: %s", type(e).__name__, e)
        raise _reject(
            "invalid",
            AuthenticationError("The provided token is invalid", error="Invalid token", status_code=403),
        )
    if revocation.is_available() and await revocation.is_blacklisted(token):
        logger.warning("Blacklisted token attempted token=%s...", token[:20])
        raise _reject(
            "blacklisted",
            AuthenticationError("This token has been invalidated. Please login again.", error="Token invalidated"),
        )
    identity = Identity(
        subject_id=claims.subject_id,
        email=claims.email,
        role=claims.role,
        token=token,
        claims=claims,
    )
    request.state.identity = identity
    return identity


async def get_optional_identity(
    request: Request,
    codec: Annotated[TokenCodec, Depends(get_codec)],
    revocation: Annotated[RevocationCache, Depends(get_revocation_cache)],
) -> Identity | None:
    """Identity for a valid access cookie, else None. Never rejects the request."""
    token = request.cookies.get(ACCESS_COOKIE_NAME)
    if not token:
        return None
    try:
        claims = codec.verify_access(token)
    except TokenError as e:
        logger.debug("Optional auth ignored token: %s", type(e).__name__)
        return None
    if revocation.is_available() and await revocation.is_blacklisted(token):
        return None
    identity = Identity(
        subject_id=claims.subject_id,
        email=claims.email,
        role=claims.role,
        token=token,
        claims=claims,
    )
    request.state.identity = identity
    return identity


def require_api_key(
    request: Request,
    settings: Annotated[Settings, Depends(get_settings)],
) -> None:
    """Service-to-service key from `X-API-Key` or the `api_key` query parameter. Webhook paths are exempt."""
    path = request.url.path
    ip = client_ip(request, settings.trust_proxy_headers)
    if any(path.startswith(prefix) for prefix in settings.webhook_prefixes):
        logger.debug("Skipping API key auth for webhook endpoint path=%s", path)
        return
    presented = request.headers.get(API_KEY_HEADER) or request.query_params.get("api_key")
    if not presented:
        logger.warning("API request without API key ip=%s path=%s", ip, path)
        raise _reject(
            "api_key_missing",
            AuthenticationError(
                "Please provide an API key in X-API-Key header or api_key query parameter",
                error="API key required",
            ),
        )
    if not settings.api_key or not hmac.compare_digest(
        presented.encode("utf-8"), settings.api_key.encode("utf-8")
    ):
        logger.warning("Invalid API key attempted ip=%s path=%s", ip, path)
        raise _reject(
            "api_key_invalid",
            AuthenticationError("The provided API key is not valid", error="Invalid API key", status_code=403),
        )
    logger.debug("API key authenticated path=%s", path)


async def get_current_user(
    identity: Annotated[Identity, Depends(get_current_identity)],
    credentials: Annotated[CredentialStore, Depends(get_credential_store)],
) -> User:
    user = await credentials.get_by_id(identity.subject_id)
    if not user:
        raise NotFoundError("User not found")
    return user
