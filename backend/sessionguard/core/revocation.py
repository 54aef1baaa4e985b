"""
Revocation cache: best-effort, TTL-bounded denylist of access tokens, backed by Redis.

Optional dependency. Every failure is logged as a warning and treated as
"not blacklisted" (fail open); callers never see a Redis error.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from typing import Any, Awaitable

from redis.exceptions import RedisError

from sessionguard.core.errors import DependencyDegraded

logger = logging.getLogger(__name__)

BLACKLIST_KEY_PREFIX = "blacklist:"


def _blacklist_key(token: str) -> str:
    return BLACKLIST_KEY_PREFIX + hashlib.sha256(token.encode("utf-8")).hexdigest()


class RevocationCache:
    """Access-token denylist. `client` is a redis.asyncio client (or None when caching is disabled)."""

    def __init__(self, client: Any | None, *, timeout: float = 2.0) -> None:
        self._client = client
        self._timeout = timeout
        self._available = False

    def is_available(self) -> bool:
        """Live connectivity as of the last round-trip, not configuration intent."""
        return self._client is not None and self._available

    async def _call(self, op: str, awaitable: Awaitable[Any]) -> Any:
        try:
            result = await asyncio.wait_for(awaitable, timeout=self._timeout)
        except (RedisError, OSError, asyncio.TimeoutError) as e:
            self._available = False
            raise DependencyDegraded(f"revocation cache {op}", e) from e
        self._available = True
        return result

    async def connect(self) -> bool:
        """Ping once at startup. Returns the resulting availability."""
        return await self.check_health()

    async def check_health(self) -> bool:
        if self._client is None:
            return False
        was_available = self._available
        try:
            await self._call("ping", self._client.ping())
        except DependencyDegraded as e:
            if was_available:
                logger.warning("Revocation cache unavailable: %s", e)
            return False
        if not was_available:
            logger.info("Revocation cache connected")
        return True

    async def blacklist(self, token: str, ttl_seconds: int) -> bool:
        """Deny `token` for `ttl_seconds`. No-op when the token is already past expiry or the cache is down."""
        if ttl_seconds <= 0:
            return False
        if not self.is_available():
            logger.warning("Revocation cache unavailable; access token not blacklisted")
            return False
        try:
            await self._call("setex", self._client.setex(_blacklist_key(token), int(ttl_seconds), "1"))
        except DependencyDegraded as e:
            logger.warning("Failed to blacklist token: %s", e)
            return False
        logger.info("Access token blacklisted ttl=%s", ttl_seconds)
        return True

    async def is_blacklisted(self, token: str) -> bool:
        if not self.is_available():
            return False
        try:
            value = await self._call("get", self._client.get(_blacklist_key(token)))
        except DependencyDegraded as e:
            logger.warning("Failed to check token blacklist, allowing request: %s", e)
            return False
        return value is not None

    async def close(self) -> None:
        """Close the Redis connection (e.g. on app shutdown)."""
        if self._client is None:
            return
        try:
            await self._client.aclose()
        except (RedisError, OSError) as e:
            logger.warning("Revocation cache: error closing Redis: %s", e)
        self._available = False
