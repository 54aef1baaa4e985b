"""Credential store: user rows, password hashes and the failed-login counter."""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from sessionguard.core.auth import hash_password
from sessionguard.models.user import User


class CredentialStore:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_by_email(self, email: str) -> User | None:
        r = await self.session.execute(select(User).where(User.email == email))
        return r.scalar_one_or_none()

    async def get_by_id(self, user_id: int) -> User | None:
        r = await self.session.execute(select(User).where(User.id == user_id))
        return r.scalar_one_or_none()

    async def get_active(self, user_id: int) -> User | None:
        r = await self.session.execute(select(User).where(User.id == user_id, User.is_active.is_(True)))
        return r.scalar_one_or_none()

    async def create_user(
        self,
        email: str,
        password: str,
        full_name: str | None = None,
        role: str = "user",
    ) -> User:
        user = User(
            email=email,
            password_hash=hash_password(password),
            full_name=full_name,
            role=role,
            is_active=True,
            failed_login_attempts=0,
            created_at=datetime.now(timezone.utc),
        )
        self.session.add(user)
        await self.session.flush()
        await self.session.refresh(user)
        return user

    async def record_failed_login(self, user_id: int) -> None:
        await self.session.execute(
            update(User)
            .where(User.id == user_id)
            .values(failed_login_attempts=User.failed_login_attempts + 1)
            .execution_options(synchronize_session=False)
        )

    async def record_successful_login(self, user: User) -> None:
        user.failed_login_attempts = 0
        user.last_login = datetime.now(timezone.utc)
        await self.session.flush()
