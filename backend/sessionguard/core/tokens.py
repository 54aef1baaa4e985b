"""
Token codec: stateless signing and verification of access and refresh JWTs.

Access and refresh tokens use two different HMAC secrets; a codec cannot be
constructed unless both are present, long enough and distinct. Verification
checks the header algorithm, signature, expiry, issuer and audience before any
claim is read, then validates the payload into a typed claims model.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Literal

from jose import jwt
from jose.exceptions import ExpiredSignatureError, JWTClaimsError, JWTError
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from sessionguard.config import Settings

logger = logging.getLogger(__name__)

MIN_SECRET_BYTES = 32  # 256 bits
ALLOWED_ALGORITHMS = ("HS256", "HS384", "HS512")


class InsecureSecretError(RuntimeError):
    """Raised at startup when the signing secrets are missing, short or shared."""


class TokenError(Exception):
    """Base for verification failures. Carries no claim data."""


class TokenExpired(TokenError):
    pass


class TokenMalformed(TokenError):
    pass


class InvalidSignature(TokenMalformed):
    pass


class AlgorithmMismatch(TokenError):
    pass


class IssuerMismatch(TokenError):
    """Issuer or audience differs from the expected value."""


class _Claims(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="ignore")

    subject_id: int = Field(alias="sub")
    issued_at: int = Field(alias="iat")
    expires_at: int = Field(alias="exp")
    issuer: str = Field(alias="iss")
    audience: str = Field(alias="aud")
    token_id: str = Field(alias="jti")


class AccessClaims(_Claims):
    email: str
    role: str
    token_type: Literal["access"] = Field(alias="typ")


class RefreshClaims(_Claims):
    token_type: Literal["refresh"] = Field(alias="typ")


def validate_secrets(access_secret: str, refresh_secret: str) -> None:
    """Startup invariant: each secret is at least 256 bits and the two differ."""
    for name, secret in (("JWT_ACCESS_SECRET", access_secret), ("JWT_REFRESH_SECRET", refresh_secret)):
        if not secret:
            raise InsecureSecretError(f"{name} must be set")
        if len(secret.encode("utf-8")) < MIN_SECRET_BYTES:
            raise InsecureSecretError(f"{name} must be at least {MIN_SECRET_BYTES} bytes")
    if access_secret == refresh_secret:
        raise InsecureSecretError("JWT_ACCESS_SECRET and JWT_REFRESH_SECRET must be different")


def verify_token(
    token: str,
    secret: str,
    *,
    algorithm: str,
    issuer: str,
    audience: str,
) -> dict[str, Any]:
    """Verify signature and registered claims; return the raw payload. Raises a TokenError subclass."""
    if not token or not isinstance(token, str):
        raise TokenMalformed("empty token")
    try:
        header = jwt.get_unverified_header(token)
    except JWTError as e:
        raise TokenMalformed(str(e)) from e
    if header.get("alg") != algorithm:
        raise AlgorithmMismatch(f"expected {algorithm}, got {header.get('alg')!r}")
    try:
        return jwt.decode(
            token,
            secret,
            algorithms=[algorithm],
            issuer=issuer,
            audience=audience,
            options={"require_exp": True, "require_iat": True, "require_sub": True},
        )
    except ExpiredSignatureError as e:
        raise TokenExpired(str(e)) from e
    except JWTClaimsError as e:
        msg = str(e).lower()
        if "issuer" in msg or "audience" in msg:
            raise IssuerMismatch(str(e)) from e
        raise TokenMalformed(str(e)) from e
    except JWTError as e:
        if "signature verification failed" in str(e).lower():
            raise InvalidSignature(str(e)) from e
        raise TokenMalformed(str(e)) from e


class TokenCodec:
    """Issues and verifies access/refresh tokens for one issuer/audience pair."""

    def __init__(
        self,
        access_secret: str,
        refresh_secret: str,
        *,
        algorithm: str = "HS256",
        issuer: str,
        audience: str,
        access_ttl: timedelta = timedelta(minutes=15),
        refresh_ttl: timedelta = timedelta(days=7),
    ) -> None:
        validate_secrets(access_secret, refresh_secret)
        if algorithm not in ALLOWED_ALGORITHMS:
            raise InsecureSecretError(f"JWT algorithm must be one of {ALLOWED_ALGORITHMS}, got {algorithm!r}")
        self._access_secret = access_secret
        self._refresh_secret = refresh_secret
        self.algorithm = algorithm
        self.issuer = issuer
        self.audience = audience
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenCodec":
        return cls(
            settings.jwt_access_secret,
            settings.jwt_refresh_secret,
            algorithm=settings.jwt_algorithm,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            access_ttl=timedelta(minutes=settings.access_token_expire_minutes),
            refresh_ttl=timedelta(days=settings.refresh_token_expire_days),
        )

    def _sign(self, claims: dict[str, Any], secret: str, ttl: timedelta, now: datetime | None) -> str:
        issued = now or datetime.now(timezone.utc)
        payload = {
            **claims,
            "iat": issued,
            "exp": issued + ttl,
            "iss": self.issuer,
            "aud": self.audience,
            "jti": uuid.uuid4().hex,
        }
        result = jwt.encode(payload, secret, algorithm=self.algorithm)
        return result if isinstance(result, str) else result.decode("utf-8")

    def issue_access_token(self, subject_id: int, email: str, role: str, *, now: datetime | None = None) -> str:
        claims = {"sub": str(subject_id), "email": email, "role": role, "typ": "access"}
        return self._sign(claims, self._access_secret, self.access_ttl, now)

    def issue_refresh_token(self, subject_id: int, *, now: datetime | None = None) -> str:
        claims = {"sub": str(subject_id), "typ": "refresh"}
        return self._sign(claims, self._refresh_secret, self.refresh_ttl, now)

    def _verify(self, token: str, secret: str) -> dict[str, Any]:
        return verify_token(
            token,
            secret,
            algorithm=self.algorithm,
            issuer=self.issuer,
            audience=self.audience,
        )

    def verify_access(self, token: str) -> AccessClaims:
        payload = self._verify(token, self._access_secret)
        try:
            return AccessClaims.model_validate(payload)
        except PydanticValidationError as e:
            raise TokenMalformed("access token claims invalid") from e

    def verify_refresh(self, token: str) -> RefreshClaims:
        payload = self._verify(token, self._refresh_secret)
        try:
            return RefreshClaims.model_validate(payload)
        except PydanticValidationError as e:
            raise TokenMalformed("refresh token claims invalid") from e


def seconds_until_expiry(claims: _Claims, now: datetime | None = None) -> int:
    current = now or datetime.now(timezone.utc)
    return claims.expires_at - int(current.timestamp())
