"""Auth: register, login, refresh (with rotation), logout, me, status."""

import logging
from datetime import datetime, timezone
from typing import Annotated

from fastapi import APIRouter, Depends, Request, Response
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from sessionguard.api.deps import (
    Identity,
    get_codec,
    get_current_identity,
    get_current_user,
    get_optional_identity,
    get_revocation_cache,
    get_settings,
)
from sessionguard.api.middleware import client_ip
from sessionguard.config import Settings
from sessionguard.core.auth import is_valid_email, password_policy_violation, verify_password
from sessionguard.core.cookies import REFRESH_COOKIE_NAME, clear_auth_cookies, set_auth_cookies
from sessionguard.core.errors import AccountLocked, AuthenticationError, ConflictError, ValidationError
from sessionguard.core.metrics import SESSION_ROTATIONS
from sessionguard.core.revocation import RevocationCache
from sessionguard.core.tokens import TokenCodec, TokenError, seconds_until_expiry
from sessionguard.db.session import get_db
from sessionguard.models.user import User
from sessionguard.services.credentials import CredentialStore
from sessionguard.services.session_ledger import SessionLedger

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/auth", tags=["auth"])


class RegisterBody(BaseModel):
    email: str | None = None
    password: str | None = None
    full_name: str | None = None


class LoginBody(BaseModel):
    email: str | None = None
    password: str | None = None


class UserOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: int
    email: str
    full_name: str | None = Field(default=None, serialization_alias="fullName")
    role: str


class MeOut(UserOut):
    created_at: datetime | None = Field(default=None, serialization_alias="createdAt")
    last_login: datetime | None = Field(default=None, serialization_alias="lastLogin")


class AuthData(BaseModel):
    user: UserOut


class AuthResponse(BaseModel):
    success: bool = True
    message: str
    data: AuthData | None = None


class MeResponse(BaseModel):
    success: bool = True
    data: MeOut


class StatusOut(BaseModel):
    authenticated: bool
    user: UserOut | None = None


class StatusResponse(BaseModel):
    success: bool = True
    data: StatusOut


def _user_out(user: User) -> UserOut:
    return UserOut(id=user.id, email=user.email, full_name=user.full_name, role=user.role)


async def _issue_session(
    request: Request,
    response: Response,
    ledger: SessionLedger,
    codec: TokenCodec,
    settings: Settings,
    user: User,
) -> None:
    """Sign both tokens, record the refresh token in the ledger, set the cookies."""
    now = datetime.now(timezone.utc)
    access = codec.issue_access_token(user.id, user.email, user.role, now=now)
    refresh = codec.issue_refresh_token(user.id, now=now)
    await ledger.create_session(
        user.id,
        refresh,
        now + codec.refresh_ttl,
        client_ip(request, settings.trust_proxy_headers),
        request.headers.get("user-agent"),
    )
    await ledger.session.commit()
    set_auth_cookies(response, access, refresh, settings)


@router.post(
    "/register",
    response_model=AuthResponse,
    status_code=201,
    summary="Register a new user",
    responses={
        400: {"description": "Missing fields, bad email or weak password"},
        409: {"description": "Email already registered"},
    },
)
async def register(
    request: Request,
    response: Response,
    session: Annotated[AsyncSession, Depends(get_db)],
    codec: Annotated[TokenCodec, Depends(get_codec)],
    settings: Annotated[Settings, Depends(get_settings)],
    body: RegisterBody,
) -> AuthResponse:
    email = (body.email or "").strip().lower()
    password = body.password or ""
    if not email or not password:
        raise ValidationError("Email and password are required")
    if not is_valid_email(email):
        raise ValidationError("Invalid email format")
    violation = password_policy_violation(password, settings.password_min_length)
    if violation:
        raise ValidationError(violation)

    credentials = CredentialStore(session)
    if await credentials.get_by_email(email) is not None:
        raise ConflictError("User with this email already exists")
    try:
        user = await credentials.create_user(email, password, full_name=(body.full_name or "").strip() or None)
    except IntegrityError as e:
        logger.warning("Register IntegrityError: %s", e)
        raise ConflictError("User with this email already exists") from e

    await _issue_session(request, response, SessionLedger(session), codec, settings, user)
    logger.info("User registered successfully user_id=%s", user.id)
    return AuthResponse(message="User registered successfully", data=AuthData(user=_user_out(user)))


@router.post(
    "/login",
    response_model=AuthResponse,
    summary="Login with email and password",
    responses={
        401: {"description": "Invalid email or password"},
        403: {"description": "Account disabled"},
        429: {"description": "Account locked or too many attempts"},
    },
)
async def login(
    request: Request,
    response: Response,
    session: Annotated[AsyncSession, Depends(get_db)],
    codec: Annotated[TokenCodec, Depends(get_codec)],
    settings: Annotated[Settings, Depends(get_settings)],
    body: LoginBody,
) -> AuthResponse:
    email = (body.email or "").strip().lower()
    password = body.password or ""
    if not email or not password:
        raise ValidationError("Email and password are required")

    credentials = CredentialStore(session)
    user = await credentials.get_by_email(email)
    if not user:
        raise AuthenticationError("Invalid email or password")
    if not user.is_active:
        raise AuthenticationError(
            "Your account has been disabled. Please contact support.",
            error="Account disabled",
            status_code=403,
        )
    if user.failed_login_attempts >= settings.max_failed_login_attempts:
        raise AccountLocked("Account locked due to too many failed login attempts.")
    if not verify_password(password, user.password_hash):
        await credentials.record_failed_login(user.id)
        await session.commit()
        raise AuthenticationError("Invalid email or password")

    await credentials.record_successful_login(user)
    # Session fixation: a fresh credential check leaves exactly one refresh lineage
    ledger = SessionLedger(session)
    await ledger.invalidate_all_for_subject(user.id)
    await _issue_session(request, response, ledger, codec, settings, user)
    logger.info(
        "User logged in successfully user_id=%s ip=%s",
        user.id,
        client_ip(request, settings.trust_proxy_headers),
    )
    return AuthResponse(message="Login successful", data=AuthData(user=_user_out(user)))


@router.post(
    "/refresh",
    response_model=AuthResponse,
    summary="Exchange the refresh cookie for new access and refresh tokens",
    responses={
        400: {"description": "Refresh token cookie missing"},
        401: {"description": "Refresh token invalid, session gone, or user inactive"},
    },
)
async def refresh_tokens(
    request: Request,
    response: Response,
    session: Annotated[AsyncSession, Depends(get_db)],
    codec: Annotated[TokenCodec, Depends(get_codec)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> AuthResponse:
    """Verify the refresh token, then atomically rotate its session record before answering."""
    refresh_token = request.cookies.get(REFRESH_COOKIE_NAME)
    if not refresh_token:
        raise ValidationError("Refresh token is required")
    try:
        claims = codec.verify_refresh(refresh_token)
    except TokenError as e:
        logger.warning("Refresh token rejected: %s", type(e).__name__)
        raise AuthenticationError("Refresh token is invalid or expired", error="Invalid token") from e

    ledger = SessionLedger(session)
    record = await ledger.find_by_session_token(refresh_token)
    if record is None or record.subject_id != claims.subject_id:
        raise AuthenticationError("Refresh token not found or expired", error="Invalid session")

    user = await CredentialStore(session).get_active(claims.subject_id)
    if not user:
        raise AuthenticationError("User account not found or inactive", error="User not found")

    now = datetime.now(timezone.utc)
    access = codec.issue_access_token(user.id, user.email, user.role, now=now)
    new_refresh = codec.issue_refresh_token(user.id, now=now)
    rotated = await ledger.rotate(
        refresh_token,
        new_refresh,
        now + codec.refresh_ttl,
        client_ip(request, settings.trust_proxy_headers),
        request.headers.get("user-agent"),
        subject_id=user.id,
        now=now,
    )
    if rotated is None:
        SESSION_ROTATIONS.labels(outcome="lost").inc()
        raise AuthenticationError("Refresh token not found or expired", error="Invalid session")
    await session.commit()
    SESSION_ROTATIONS.labels(outcome="ok").inc()

    set_auth_cookies(response, access, new_refresh, settings)
    logger.info("Token refreshed with rotation user_id=%s", user.id)
    return AuthResponse(message="Token refreshed successfully")


@router.post(
    "/logout",
    response_model=AuthResponse,
    summary="Logout: revoke the access token and drop the session",
    responses={401: {"description": "Not authenticated"}, 403: {"description": "Invalid token or CSRF"}},
)
async def logout(
    request: Request,
    response: Response,
    identity: Annotated[Identity, Depends(get_current_identity)],
    session: Annotated[AsyncSession, Depends(get_db)],
    revocation: Annotated[RevocationCache, Depends(get_revocation_cache)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> AuthResponse:
    if revocation.is_available():
        await revocation.blacklist(identity.token, seconds_until_expiry(identity.claims))

    ledger = SessionLedger(session)
    refresh_token = request.cookies.get(REFRESH_COOKIE_NAME)
    if refresh_token:
        await ledger.delete_by_session_token(refresh_token)
    else:
        await ledger.delete_all_for_subject(identity.subject_id)
    await session.commit()

    clear_auth_cookies(response, settings)
    logger.info("User logged out user_id=%s", identity.subject_id)
    return AuthResponse(message="Logged out successfully")


@router.get(
    "/me",
    response_model=MeResponse,
    summary="Get current authenticated user",
    responses={401: {"description": "Not authenticated"}, 403: {"description": "Invalid token"}},
)
async def me(user: Annotated[User, Depends(get_current_user)]) -> MeResponse:
    return MeResponse(
        data=MeOut(
            id=user.id,
            email=user.email,
            full_name=user.full_name,
            role=user.role,
            created_at=user.created_at,
            last_login=user.last_login,
        )
    )


@router.get("/status", response_model=StatusResponse, summary="Whether the caller holds a valid session")
async def auth_status(identity: Annotated[Identity | None, Depends(get_optional_identity)]) -> StatusResponse:
    if identity is None:
        return StatusResponse(data=StatusOut(authenticated=False))
    return StatusResponse(
        data=StatusOut(
            authenticated=True,
            user=UserOut(id=identity.subject_id, email=identity.email, role=identity.role),
        )
    )
