from collections.abc import AsyncGenerator
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sessionguard.config import settings
from sessionguard.db.base import Base


def _engine_kwargs(database_url: str, timeout: float) -> dict:
    # asyncpg: bound every statement so a degraded database cannot stall the request pipeline
    if "+asyncpg" in database_url:
        return {"connect_args": {"command_timeout": timeout, "timeout": timeout}, "pool_timeout": timeout}
    return {}


engine = create_async_engine(
    settings.database_url,
    echo=settings.debug,
    **_engine_kwargs(settings.database_url, settings.store_timeout_seconds),
)
async_session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_db() -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async with async_session_maker() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()
