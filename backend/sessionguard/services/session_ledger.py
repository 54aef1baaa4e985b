"""
Session ledger: durable record of outstanding refresh tokens.

Bound to one request's AsyncSession; the caller owns the transaction. Refresh
tokens are looked up by their SHA-256 digest. Rotation consumes the old record
with a single conditional DELETE and checks the affected-row count, so of two
concurrent refreshes presenting the same token only one can win.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from sessionguard.models.session import UserSession

logger = logging.getLogger(__name__)


def hash_session_token(token: str) -> str:
    """SHA256 hash of refresh token for storage."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything stored here is UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class SessionRecord:
    token_hash: str
    subject_id: int
    expires_at: datetime
    created_at: datetime
    source_ip: str | None
    user_agent: str | None

    @classmethod
    def from_row(cls, row: UserSession) -> "SessionRecord":
        return cls(
            token_hash=row.token_hash,
            subject_id=row.user_id,
            expires_at=_as_utc(row.expires_at),
            created_at=_as_utc(row.created_at),
            source_ip=row.ip_address,
            user_agent=row.user_agent,
        )


class SessionLedger:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def create_session(
        self,
        subject_id: int,
        refresh_token: str,
        expires_at: datetime,
        source_ip: str | None = None,
        user_agent: str | None = None,
    ) -> SessionRecord:
        row = UserSession(
            user_id=subject_id,
            token_hash=hash_session_token(refresh_token),
            expires_at=expires_at,
            created_at=_now(),
            ip_address=source_ip,
            user_agent=(user_agent or "unknown")[:512],
        )
        self.session.add(row)
        await self.session.flush()
        return SessionRecord.from_row(row)

    async def find_by_session_token(self, refresh_token: str, *, now: datetime | None = None) -> SessionRecord | None:
        r = await self.session.execute(
            select(UserSession).where(
                UserSession.token_hash == hash_session_token(refresh_token),
                UserSession.expires_at > (now or _now()),
            )
        )
        row = r.scalar_one_or_none()
        return SessionRecord.from_row(row) if row is not None else None

    async def rotate(
        self,
        old_refresh_token: str,
        new_refresh_token: str,
        new_expires_at: datetime,
        source_ip: str | None = None,
        user_agent: str | None = None,
        *,
        subject_id: int | None = None,
        now: datetime | None = None,
    ) -> SessionRecord | None:
        """
        Consume the live record for `old_refresh_token` and insert one for `new_refresh_token`.

        Returns the new record, or None when the old token was already rotated
        away, deleted, expired, or (if `subject_id` is given) owned by someone else.
        """
        stmt = delete(UserSession).where(
            UserSession.token_hash == hash_session_token(old_refresh_token),
            UserSession.expires_at > (now or _now()),
        )
        if subject_id is not None:
            stmt = stmt.where(UserSession.user_id == subject_id)
        # The owner lookup is advisory; only the DELETE's rowcount decides who wins.
        owner = subject_id
        if owner is None:
            r = await self.session.execute(
                select(UserSession.user_id).where(UserSession.token_hash == hash_session_token(old_refresh_token))
            )
            owner = r.scalar_one_or_none()
            if owner is None:
                return None
        result = await self.session.execute(stmt.execution_options(synchronize_session=False))
        if result.rowcount != 1:
            logger.warning("Session rotation lost: refresh token already consumed or expired")
            return None
        return await self.create_session(owner, new_refresh_token, new_expires_at, source_ip, user_agent)

    async def invalidate_all_for_subject(self, subject_id: int) -> int:
        """Drop every session of a subject before a fresh login issues new tokens."""
        count = await self.delete_all_for_subject(subject_id)
        if count:
            logger.info("Invalidated %s prior session(s) user_id=%s", count, subject_id)
        return count

    async def delete_by_session_token(self, refresh_token: str) -> int:
        result = await self.session.execute(
            delete(UserSession)
            .where(UserSession.token_hash == hash_session_token(refresh_token))
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    async def delete_all_for_subject(self, subject_id: int) -> int:
        result = await self.session.execute(
            delete(UserSession)
            .where(UserSession.user_id == subject_id)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    async def count_for_subject(self, subject_id: int, *, now: datetime | None = None) -> int:
        r = await self.session.execute(
            select(func.count(UserSession.id)).where(
                UserSession.user_id == subject_id,
                UserSession.expires_at > (now or _now()),
            )
        )
        return int(r.scalar_one())

    async def purge_expired(self, *, now: datetime | None = None) -> int:
        """Expiry sweep: delete records with expires_at <= now."""
        result = await self.session.execute(
            delete(UserSession)
            .where(UserSession.expires_at <= (now or _now()))
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0
