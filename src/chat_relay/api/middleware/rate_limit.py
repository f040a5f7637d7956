"""Coarse per-client flood control in front of the quota check.

Fixed-window counter per identifier, kept in a ``limits`` storage: the first request
opens a window, later ones increment it until the window's reset time passes. Bursts
straddling a window boundary can reach twice the nominal rate.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from fastapi import Request
from limits import RateLimitItemPerSecond
from limits.aio.storage import MemoryStorage, Storage
from limits.aio.strategies import FixedWindowRateLimiter
from limits.storage import storage_from_string
from slowapi.util import get_remote_address

from ...billing.quota import QuotaDecision
from ...logging import get_logger

logger = get_logger(__name__)

CLIENT_IP_HEADERS = ("x-real-ip", "cf-connecting-ip", "true-client-ip")
KEY_NAMESPACE = "ip"


@dataclass
class RateWindow:
    allowed: bool
    remaining: int
    reset_at: float


class RateLimitStore:
    """Fixed-window counters held in a ``limits`` async storage."""

    def __init__(self, storage: Storage):
        self.storage = storage
        self.limiter = FixedWindowRateLimiter(storage)

    async def acquire(self, key: str, limit: int, window_seconds: float) -> RateWindow:
        item = RateLimitItemPerSecond(limit, int(window_seconds))

        # Denied requests must not count, so only hit once the window has room
        allowed = await self.limiter.test(item, KEY_NAMESPACE, key)
        if allowed:
            allowed = await self.limiter.hit(item, KEY_NAMESPACE, key)

        stats = await self.limiter.get_window_stats(item, KEY_NAMESPACE, key)
        return RateWindow(allowed=allowed, remaining=stats.remaining, reset_at=stats.reset_time)

    async def sweep(self) -> int:
        """Expired windows are dropped by the storage itself."""
        return 0

    async def ping(self) -> bool:
        return await self.storage.check()


class InMemoryRateLimitStore(RateLimitStore):
    """Process-local counters. Correct for a single instance only."""

    def __init__(self):
        super().__init__(MemoryStorage())


class RedisRateLimitStore(RateLimitStore):
    """Counters shared by every instance through Redis; keys expire on their own."""

    def __init__(self, redis_url: str, key_prefix: str = "chat-relay"):
        self.redis_url = redis_url
        super().__init__(
            storage_from_string(f"async+{redis_url}", implementation="redispy", key_prefix=key_prefix)
        )


class IPRateGuard:
    """Identity-independent request limiter keyed by client identifier."""

    def __init__(self, store: RateLimitStore, limit: int = 100, window_seconds: float = 15 * 60):
        self.store = store
        self.limit = limit
        self.window_seconds = window_seconds
        self._sweeper: Optional[asyncio.Task] = None

    async def check(self, identifier: str) -> QuotaDecision:
        """Count one request from ``identifier`` and decide whether it may proceed."""
        window = await self.store.acquire(identifier, self.limit, self.window_seconds)
        reset_at = datetime.fromtimestamp(window.reset_at)

        if not window.allowed:
            return QuotaDecision(
                allowed=False,
                remaining=0,
                limit=self.limit,
                reset_at=reset_at,
                reason="Too many requests. Please try again later.",
            )

        return QuotaDecision(
            allowed=True,
            remaining=window.remaining,
            limit=self.limit,
            reset_at=reset_at,
        )

    async def sweep(self) -> int:
        """Drop counters whose window has already expired."""
        removed = await self.store.sweep()
        if removed:
            logger.debug("rate_limit_swept", removed=removed)
        return removed

    def start_sweeper(self, interval_seconds: float) -> None:
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._sweep_forever(interval_seconds))

    async def stop_sweeper(self) -> None:
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        try:
            await self._sweeper
        except asyncio.CancelledError:
            pass
        self._sweeper = None

    async def _sweep_forever(self, interval_seconds: float) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                await self.sweep()
            except Exception as e:
                logger.exception("rate_limit_sweep_failed", error=str(e))


def client_identifier(request: Request) -> str:
    """Best-effort client address, honouring common proxy headers."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first

    for header in CLIENT_IP_HEADERS:
        value = request.headers.get(header)
        if value:
            return value.strip()

    return get_remote_address(request)
