"""Abuse protection: Cloudflare Turnstile verification and sliding-window rate limits."""

from __future__ import annotations

import logging
import time
import uuid
from abc import ABC, abstractmethod

import httpx
import redis.asyncio as aioredis

from .config import RateLimitConfig

logger = logging.getLogger(__name__)

TURNSTILE_VERIFY_URL = "https://challenges.cloudflare.com/turnstile/v0/siteverify"


class TurnstileVerifier:
    """Server-side check of a Turnstile token.

    Fails closed: a network or API error counts as a failed check.
    """

    def __init__(self, secret_key: str, client: httpx.AsyncClient | None = None, timeout: float = 10.0):
        self.secret_key = secret_key
        self._client = client
        self.timeout = timeout

    async def verify(self, token: str, ip: str | None = None) -> bool:
        data = {"secret": self.secret_key, "response": token}
        if ip:
            data["remoteip"] = ip
        try:
            if self._client is not None:
                response = await self._client.post(TURNSTILE_VERIFY_URL, data=data, timeout=self.timeout)
            else:
                async with httpx.AsyncClient() as client:
                    response = await client.post(TURNSTILE_VERIFY_URL, data=data, timeout=self.timeout)
            result = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error("Turnstile API error: %s", e)
            return False

        if not result.get("success"):
            logger.warning("Turnstile verification failed: %s", result.get("error-codes", []))
            return False
        return True


class RateLimiter(ABC):
    """Allows at most ``limit`` hits per key within a sliding ``window_seconds``."""

    def __init__(self, limit: int, window_seconds: int, prefix: str = "ratelimit:"):
        self.limit = limit
        self.window_seconds = window_seconds
        self.prefix = prefix

    @abstractmethod
    async def check_and_consume(self, key: str) -> bool:
        """Record a hit for ``key``. Returns False if the limit was already reached."""
        ...


class InMemoryRateLimiter(RateLimiter):
    """Per-process limiter. Suitable for a single instance or for tests."""

    MAX_KEYS = 10000

    def __init__(self, limit: int, window_seconds: int, prefix: str = "ratelimit:", clock=time.time):
        super().__init__(limit, window_seconds, prefix)
        self._clock = clock
        self._history: dict[str, list[float]] = {}
        self._cleanup_counter = 0

    async def check_and_consume(self, key: str) -> bool:
        now = self._clock()
        full_key = self.prefix + key
        history = [t for t in self._history.get(full_key, []) if now - t < self.window_seconds]
        if len(history) >= self.limit:
            self._history[full_key] = history
            return False
        history.append(now)
        self._history[full_key] = history

        # Periodic cleanup: evict stale entries to prevent memory leak
        self._cleanup_counter += 1
        if self._cleanup_counter >= 100:
            self._cleanup_counter = 0
            stale = [k for k, v in self._history.items() if not v or now - v[-1] >= self.window_seconds]
            for k in stale:
                del self._history[k]
            if len(self._history) > self.MAX_KEYS:
                excess = len(self._history) - self.MAX_KEYS
                for k in list(self._history)[:excess]:
                    del self._history[k]
        return True


class RedisRateLimiter(RateLimiter):
    """Limiter shared across instances, one sorted set of hit timestamps per key.

    The hit is recorded and counted in one MULTI. A hit that lands over the
    limit is removed again, so concurrent callers cannot all pass.
    """

    def __init__(
        self, client: aioredis.Redis, limit: int, window_seconds: int, prefix: str = "ratelimit:",
        clock=time.time,
    ):
        super().__init__(limit, window_seconds, prefix)
        self.client = client
        self._clock = clock

    async def check_and_consume(self, key: str) -> bool:
        full_key = self.prefix + key
        now = self._clock()
        member = f"{now}:{uuid.uuid4().hex}"
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.zremrangebyscore(full_key, 0, now - self.window_seconds)
            pipe.zadd(full_key, {member: now})
            pipe.zcard(full_key)
            pipe.expire(full_key, self.window_seconds)
            _, _, count, _ = await pipe.execute()
        if count > self.limit:
            await self.client.zrem(full_key, member)
            return False
        return True


def build_rate_limiters(config: RateLimitConfig) -> tuple[RateLimiter, RateLimiter]:
    """Return the (per-IP, per-email) limiters, backed by Redis when configured."""
    if config.redis_url:
        client = aioredis.from_url(config.redis_url, decode_responses=True)
        logger.info("Rate limiting backed by Redis")
        return (
            RedisRateLimiter(client, config.ip_limit, config.ip_window_seconds, prefix="ratelimit:ip:"),
            RedisRateLimiter(client, config.email_limit, config.email_window_seconds, prefix="ratelimit:email:"),
        )
    logger.info("Rate limiting in memory (set rate_limit.redis_url to share across instances)")
    return (
        InMemoryRateLimiter(config.ip_limit, config.ip_window_seconds, prefix="ratelimit:ip:"),
        InMemoryRateLimiter(config.email_limit, config.email_window_seconds, prefix="ratelimit:email:"),
    )
