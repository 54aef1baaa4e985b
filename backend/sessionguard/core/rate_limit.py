"""
Tiered request rate limiting.

Each tier is a fixed window `(limit, window, key, skip)` evaluated in a fixed
order. Counting is done by a `limits` FixedWindowRateLimiter over async storage
built from a URI: `async+memory://` for a single instance, `async+redis://...`
when several instances share budgets. A storage failure skips the tier with a
warning rather than rejecting traffic.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import limits
from limits.aio.storage import Storage
from limits.aio.strategies import FixedWindowRateLimiter
from limits.errors import StorageError
from limits.storage import storage_from_string
from redis.exceptions import RedisError

from sessionguard.config import Settings
from sessionguard.core.errors import RateLimitError
from sessionguard.core.metrics import RATE_LIMIT_REJECTIONS

logger = logging.getLogger(__name__)

WRITE_METHODS = frozenset({"POST", "PUT", "DELETE", "PATCH"})
STORAGE_ERRORS = (StorageError, RedisError, OSError, asyncio.TimeoutError)


@dataclass(frozen=True)
class RequestInfo:
    """The parts of a request the limiter looks at. `subject_id` is set only for a verified access token."""

    path: str
    method: str
    client_ip: str | None
    subject_id: int | None = None


def derive_key(info: RequestInfo) -> str:
    """`user:{id}:{ip}` for authenticated requests, else the bare IP, else `unknown`."""
    ip = info.client_ip or "unknown"
    if info.subject_id is not None:
        return f"user:{info.subject_id}:{ip}"
    return ip


def ip_key(info: RequestInfo) -> str:
    return info.client_ip or "unknown"


def user_key(info: RequestInfo) -> str:
    return f"user:{info.subject_id}"


def build_storage(uri: str) -> Storage:
    """Async `limits` storage for the URI. Redis goes through redis-py, the client the cache already uses."""
    options: dict[str, Any] = {"wrap_exceptions": True}
    if "redis" in uri.split("://", 1)[0]:
        options["implementation"] = "redispy"
    return storage_from_string(uri, **options)


@dataclass(frozen=True)
class RateLimitTier:
    name: str
    item: limits.RateLimitItem
    key_func: Callable[[RequestInfo], str]
    skip: Callable[[RequestInfo], bool]
    needs_identity: bool = False
    # Only responses with status >= 400 are counted
    skip_successful: bool = False

    @classmethod
    def from_expression(cls, name: str, expression: str, **kwargs: Any) -> "RateLimitTier":
        """Build a tier from a limits expression such as "100/15 minutes"."""
        return cls(name=name, item=limits.parse(expression), **kwargs)

    @property
    def limit(self) -> int:
        return self.item.amount

    @property
    def window_seconds(self) -> int:
        return self.item.get_expiry()


@dataclass(frozen=True)
class PendingHit:
    """A hit on a skip_successful tier, counted only once the response status is known."""

    tier: RateLimitTier
    key: str


def _has_prefix(path: str, prefixes: Sequence[str]) -> bool:
    return any(path.startswith(prefix) for prefix in prefixes)


def build_default_tiers(settings: Settings) -> list[RateLimitTier]:
    """Webhook, auth, general, per-user, write, read: strictest and most specific first."""
    webhook_prefixes = settings.webhook_prefixes
    auth_prefixes = settings.auth_prefixes
    exempt = frozenset(settings.rate_limit_exempt)
    return [
        RateLimitTier.from_expression(
            "webhook",
            settings.rate_limit_webhook,
            key_func=ip_key,
            skip=lambda info: not _has_prefix(info.path, webhook_prefixes),
        ),
        RateLimitTier.from_expression(
            "auth",
            settings.rate_limit_auth,
            key_func=ip_key,
            skip=lambda info: not _has_prefix(info.path, auth_prefixes),
            skip_successful=True,
        ),
        RateLimitTier.from_expression(
            "general",
            settings.rate_limit_general,
            key_func=ip_key,
            skip=lambda info: info.path in exempt,
        ),
        RateLimitTier.from_expression(
            "per_user",
            settings.rate_limit_per_user,
            key_func=user_key,
            skip=lambda info: info.subject_id is None,
            needs_identity=True,
        ),
        RateLimitTier.from_expression(
            "write",
            settings.rate_limit_write,
            key_func=derive_key,
            skip=lambda info: info.method.upper() not in WRITE_METHODS,
            needs_identity=True,
        ),
        RateLimitTier.from_expression(
            "read",
            settings.rate_limit_read,
            key_func=derive_key,
            skip=lambda info: info.method.upper() != "GET",
            needs_identity=True,
        ),
    ]


class RateLimiter:
    """Runs the tiers in order; the first exceeded tier raises RateLimitError."""

    def __init__(
        self,
        tiers: Sequence[RateLimitTier],
        storage: Storage,
        *,
        timeout: float = 2.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.tiers = list(tiers)
        self.storage = storage
        self.strategy = FixedWindowRateLimiter(storage)
        self._timeout = timeout
        self._clock = clock

    async def check(self, info: RequestInfo, *, identity_phase: bool = False) -> list[PendingHit]:
        """
        Count this request against every applicable tier of the given phase.

        The first phase (identity_phase=False) runs the IP-keyed tiers before any
        token is verified; the second runs the tiers keyed by the resolved identity.
        Tiers that skip successful responses are only tested here; the returned
        pending hits are counted by `settle` if the response turns out to be a failure.
        """
        pending: list[PendingHit] = []
        for tier in self.tiers:
            if tier.needs_identity != identity_phase or tier.skip(info):
                continue
            key = tier.key_func(info)
            try:
                if tier.skip_successful:
                    allowed = await self._bounded(self.strategy.test(tier.item, tier.name, key))
                else:
                    allowed = await self._bounded(self.strategy.hit(tier.item, tier.name, key))
            except STORAGE_ERRORS as e:
                logger.warning("Rate limit storage unavailable (%s), skipping tier %s", e, tier.name)
                continue
            if not allowed:
                await self._reject(tier, info, key)
            if tier.skip_successful:
                pending.append(PendingHit(tier=tier, key=key))
        return pending

    async def settle(self, pending: Sequence[PendingHit], status_code: int) -> None:
        """Count the pending hits of a failed request."""
        if status_code < 400:
            return
        for hit in pending:
            try:
                await self._bounded(self.strategy.hit(hit.tier.item, hit.tier.name, hit.key))
            except STORAGE_ERRORS as e:
                logger.warning("Rate limit: could not count %s hit for %s: %s", hit.tier.name, hit.key, e)

    async def _bounded(self, awaitable):
        return await asyncio.wait_for(awaitable, timeout=self._timeout)

    async def _reject(self, tier: RateLimitTier, info: RequestInfo, key: str) -> None:
        now = self._clock()
        try:
            stats = await self._bounded(self.strategy.get_window_stats(tier.item, tier.name, key))
            reset_at = stats.reset_time
        except STORAGE_ERRORS:
            reset_at = now + tier.window_seconds
        retry_after = max(1, math.ceil(reset_at - now))
        reset_time = datetime.fromtimestamp(now + retry_after, tz=timezone.utc)
        logger.warning(
            "Rate limit exceeded tier=%s path=%s method=%s identity=%s limit=%s",
            tier.name,
            info.path,
            info.method,
            derive_key(info),
            tier.limit,
        )
        RATE_LIMIT_REJECTIONS.labels(tier=tier.name).inc()
        raise RateLimitError(
            tier=tier.name,
            limit=tier.limit,
            retry_after=retry_after,
            reset_time_iso=reset_time.isoformat().replace("+00:00", "Z"),
        )
