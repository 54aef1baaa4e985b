import logging
import sys
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import make_asgi_app

from sessionguard.api.errors import register_exception_handlers
from sessionguard.api.middleware import CsrfMiddleware, RateLimitMiddleware, SecurityHeadersMiddleware
from sessionguard.api.v1 import auth, csrf, internal, webhooks
from sessionguard.config import Settings, settings as default_settings
from sessionguard.core.csrf import CsrfGuard
from sessionguard.core.rate_limit import RateLimiter, build_default_tiers, build_storage
from sessionguard.core.revocation import RevocationCache
from sessionguard.core.tokens import TokenCodec
from sessionguard.db.session import async_session_maker, init_db
from sessionguard.services.session_ledger import SessionLedger

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    stream=sys.stdout,
)
logger = logging.getLogger(__name__)

API_VERSION = "0.1.0"


async def sweep_expired_sessions() -> None:
    """Delete session records past expires_at."""
    async with async_session_maker() as session:
        removed = await SessionLedger(session).purge_expired()
        await session.commit()
    if removed:
        logger.info("Session sweep removed %s expired record(s)", removed)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: Settings = app.state.settings
    revocation: RevocationCache = app.state.revocation
    if not await revocation.connect() and settings.cache_enabled:
        logger.warning("Revocation cache unreachable at startup; logout blacklisting disabled until it recovers")
    await init_db()

    scheduler = AsyncIOScheduler()
    scheduler.add_job(sweep_expired_sessions, "interval", minutes=settings.session_sweep_interval_minutes)
    if settings.cache_enabled:
        scheduler.add_job(revocation.check_health, "interval", seconds=settings.revocation_health_interval_seconds)
    scheduler.start()
    app.state.scheduler = scheduler
    yield
    scheduler.shutdown()
    await revocation.close()


def create_app(settings: Settings | None = None, *, redis_client=None) -> FastAPI:
    """
    Build the API with its request pipeline:
    CORS -> security headers -> rate limiting -> CSRF -> route dependencies.

    Token secrets are validated here, so a misconfigured deployment fails at startup.
    """
    settings = settings or default_settings
    codec = TokenCodec.from_settings(settings)

    if redis_client is None and settings.cache_enabled:
        redis_client = aioredis.from_url(
            settings.redis_url,
            decode_responses=True,
            socket_timeout=settings.store_timeout_seconds,
            socket_connect_timeout=settings.store_timeout_seconds,
        )
    revocation = RevocationCache(
        redis_client if settings.cache_enabled else None,
        timeout=settings.store_timeout_seconds,
    )
    limiter = RateLimiter(
        build_default_tiers(settings),
        build_storage(settings.rate_limit_storage_uri),
        timeout=settings.store_timeout_seconds,
    )
    guard = CsrfGuard(webhook_prefixes=settings.webhook_prefixes, exempt_paths=settings.csrf_exempt)

    app = FastAPI(
        title="SessionGuard API",
        description="Cookie-based JWT sessions with refresh rotation, CSRF protection and tiered rate limiting",
        version=API_VERSION,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.codec = codec
    app.state.revocation = revocation
    app.state.limiter = limiter
    app.state.csrf_guard = guard

    register_exception_handlers(app, settings)

    # Last added runs first
    app.add_middleware(CsrfMiddleware, guard=guard, settings=settings)
    if settings.rate_limit_enabled:
        app.add_middleware(
            RateLimitMiddleware,
            limiter=limiter,
            codec=codec,
            trust_proxy_headers=settings.trust_proxy_headers,
        )
    app.add_middleware(SecurityHeadersMiddleware, enable_hsts=settings.enable_hsts)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(auth.router, prefix="/api/v1")
    app.include_router(csrf.router, prefix="/api/v1")
    app.include_router(webhooks.router, prefix="/api/v1")
    app.include_router(internal.router, prefix="/api/v1")
    app.mount("/metrics", make_asgi_app())

    @app.get("/health")
    def health():
        return {"status": "ok"}

    @app.get("/api/v1")
    def api_info():
        return {
            "name": app.title,
            "version": API_VERSION,
            "endpoints": {
                "auth": "/api/v1/auth",
                "csrf": "/api/v1/csrf-token",
                "webhooks": "/api/v1/webhooks/{provider}",
                "internal": "/api/v1/internal",
                "health": "/health",
            },
        }

    return app


app = create_app()
