"""Pytest configuration and shared fixtures for API tests."""

import os

import pytest
import pytest_asyncio
from fakeredis import FakeAsyncRedis, FakeServer
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

# Set env before app imports so config/engine/module-level app use it
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./sessionguard-test.db")
os.environ.setdefault("JWT_ACCESS_SECRET", "test-access-secret-0123456789abcdef0123456789")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret-fedcba9876543210fedcba98")
os.environ.setdefault("CACHE_ENABLED", "false")
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("BCRYPT_ROUNDS", "4")

from sessionguard.config import Settings
from sessionguard.db.base import Base
from sessionguard.db.session import get_db
from sessionguard.main import create_app
from sessionguard.services.credentials import CredentialStore

TEST_PASSWORD = "Str0ng!Secret#42"


def make_settings(**overrides) -> Settings:
    values = {
        "app_env": "test",
        "cache_enabled": True,
        "bcrypt_rounds": 4,
        "webhook_signing_secret": "whsec-test-signing-secret",
    }
    values.update(overrides)
    return Settings(**values)


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    """Fresh SQLite database per test; tables created from the models."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest_asyncio.fixture
async def fake_redis():
    client = FakeAsyncRedis(server=FakeServer(), decode_responses=True)
    yield client
    await client.aclose()


@pytest.fixture
def build_app(session_maker, fake_redis):
    """Return an async factory: build_app(**settings_overrides) -> FastAPI bound to the test DB and fake Redis."""

    async def override_get_db():
        async with session_maker() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def _build(redis_client=None, **overrides):
        app = create_app(make_settings(**overrides), redis_client=redis_client or fake_redis)
        app.dependency_overrides[get_db] = override_get_db
        await app.state.revocation.connect()
        return app

    return _build


@pytest_asyncio.fixture
async def app(build_app):
    return await build_app()


@pytest_asyncio.fixture
async def client(app):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest_asyncio.fixture
async def test_user(session_maker):
    """Create a user via DB (committed) and return (user_id, email, password)."""
    async with session_maker() as session:
        user = await CredentialStore(session).create_user("test@test.com", TEST_PASSWORD, full_name="Test User")
        await session.commit()
        return user.id, user.email, TEST_PASSWORD


async def fetch_csrf_headers(client: AsyncClient) -> dict:
    """Obtain a CSRF cookie and return the matching header."""
    resp = await client.get("/api/v1/csrf-token")
    assert resp.status_code == 200
    return {"X-CSRF-Token": resp.json()["data"]["csrfToken"]}


async def login(client: AsyncClient, email: str = "test@test.com", password: str = TEST_PASSWORD):
    return await client.post("/api/v1/auth/login", json={"email": email, "password": password})
