"""Redis-backed sliding-window rate limiter.

Implements the sliding window with one Redis sorted set per identifier
(ZREMRANGEBYSCORE / ZCARD / ZADD / EXPIRE). Every ``check`` runs as a single
MULTI/EXEC pipeline so that all limiter instances sharing the same Redis
agree on one counter per identifier.

The pipeline adds the current attempt unconditionally and decides from the
count taken *before* the add. Rejected attempts are therefore recorded too:
a client that keeps retrying while blocked stays blocked until it pauses for
a full window. This keeps the decision to one atomic round trip.

Backend failures never reach the caller; they are logged and resolved with
the configured ``fail_open`` policy.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
import uuid
from typing import Any, Awaitable, Callable

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from admission_gate.adapters.rate_limit.base import (
    AbstractRateLimiter,
    RateLimitConfig,
    RateLimitStatus,
    validate_identifier,
)
from admission_gate.core.errors import RateLimitBackendError
from admission_gate.core.logging import hash_identifier

logger = logging.getLogger(__name__)

DEFAULT_KEY_PREFIX = "rate-limit:"
DEFAULT_OPERATION_TIMEOUT_MS = 1000
SCAN_BATCH_SIZE = 500

# Errors raised by redis-py for network, timeout and protocol problems.
BACKEND_ERRORS: tuple[type[BaseException], ...] = (RedisError, OSError, asyncio.TimeoutError)


def _wall_clock_ms() -> float:
    return time.time() * 1000


class RedisSlidingWindowRateLimiter(AbstractRateLimiter):
    """Sliding-window limiter whose state lives in Redis.

    Uses sorted sets keyed as ``{key_prefix}{identifier}``; members are
    ``"{now}-{uuid}"`` scored by the attempt time in milliseconds, so
    attempts in the same millisecond never collide.

    Attributes:
        redis_client: An initialised ``redis.asyncio.Redis`` connection.
    """

    backend_name = "redis"

    def __init__(
        self,
        redis_client: aioredis.Redis,
        config: RateLimitConfig | None = None,
        *,
        key_prefix: str = DEFAULT_KEY_PREFIX,
        operation_timeout_ms: int | None = DEFAULT_OPERATION_TIMEOUT_MS,
        clock: Callable[[], float] = _wall_clock_ms,
    ) -> None:
        super().__init__(config or RateLimitConfig())
        self.redis_client = redis_client
        self._key_prefix = key_prefix
        self._operation_timeout_s = (
            operation_timeout_ms / 1000 if operation_timeout_ms else None
        )
        self._clock = clock
        self._closed = False

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _key(self, identifier: str) -> str:
        return f"{self._key_prefix}{identifier}"

    @property
    def _ttl_seconds(self) -> int:
        return max(1, math.ceil(self._config.window_ms / 1000))

    async def _execute(self, operation: str, awaitable: Awaitable[Any]) -> Any:
        """Await a Redis call under the operation timeout.

        Raises:
            RateLimitBackendError: On any network, timeout or protocol error.
        """
        try:
            if self._operation_timeout_s is None:
                return await awaitable
            return await asyncio.wait_for(awaitable, timeout=self._operation_timeout_s)
        except BACKEND_ERRORS as exc:
            raise RateLimitBackendError(
                code="rate_limit_backend_unavailable",
                message=f"Redis {operation} failed: {exc}",
                details={"backend": self.backend_name, "error_type": type(exc).__name__},
            ) from exc

    def _log_backend_error(self, operation: str, identifier: str | None, exc: RateLimitBackendError) -> None:
        logger.error(
            "rate_limit.backend_error",
            extra={
                "operation": operation,
                "key_hash": hash_identifier(identifier) if identifier else None,
                "error_type": (exc.details or {}).get("error_type"),
                "error_msg": exc.message,
                "fail_open": self._config.fail_open,
            },
        )

    async def _count_pipeline(self, key: str, cutoff: float) -> list[Any]:
        """Expire old members, then count and fetch the blocking member.

        The member at rank ``-max_requests`` is the one whose expiry brings the
        count back under the limit.
        """
        rank = -self._config.max_requests
        async with self.redis_client.pipeline(transaction=True) as pipe:
            pipe.zremrangebyscore(key, "-inf", cutoff)
            pipe.zcard(key)
            pipe.zrange(key, rank, rank, withscores=True)
            return await pipe.execute()

    async def _check_pipeline(self, key: str, now: float) -> list[Any]:
        member = f"{int(now)}-{uuid.uuid4().hex}"
        rank = -self._config.max_requests
        async with self.redis_client.pipeline(transaction=True) as pipe:
            pipe.zremrangebyscore(key, "-inf", now - self._config.window_ms)
            pipe.zcard(key)
            pipe.zadd(key, {member: now})
            pipe.expire(key, self._ttl_seconds)
            pipe.zrange(key, rank, rank, withscores=True)
            return await pipe.execute()

    def _retry_after(self, count: int, blocking: list[Any], now: float) -> int:
        if count < self._config.max_requests or not blocking:
            return 0
        _, blocking_score = blocking[0]
        wait_ms = float(blocking_score) + self._config.window_ms - now
        return max(0, math.ceil(wait_ms / 1000))

    def _failure_status(self) -> RateLimitStatus:
        fail_open = self._config.fail_open
        return RateLimitStatus(
            allowed=fail_open,
            remaining=self._config.max_requests if fail_open else 0,
            retry_after=0,
        )

    async def _read_status(self, operation: str, identifier: str) -> RateLimitStatus:
        validate_identifier(identifier)
        now = self._clock()
        try:
            results = await self._execute(
                operation,
                self._count_pipeline(self._key(identifier), now - self._config.window_ms),
            )
        except RateLimitBackendError as exc:
            self._log_backend_error(operation, identifier, exc)
            return self._failure_status()

        count = int(results[1] or 0)
        remaining = max(0, self._config.max_requests - count)
        return RateLimitStatus(
            allowed=remaining > 0,
            remaining=remaining,
            retry_after=self._retry_after(count, results[2], now),
        )

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def check_with_status(self, identifier: str) -> RateLimitStatus:
        """Record an attempt and decide from the count before it.

        The same round trip returns the quota left after this attempt and the
        member that blocks the next one. On backend failure, ``allowed``
        follows ``fail_open`` and no further call is made.
        """
        validate_identifier(identifier)
        now = self._clock()
        try:
            results = await self._execute("check", self._check_pipeline(self._key(identifier), now))
        except RateLimitBackendError as exc:
            self._log_backend_error("check", identifier, exc)
            return self._failure_status()

        count_before = int(results[1] or 0)
        count_after = count_before + 1
        return RateLimitStatus(
            allowed=count_before < self._config.max_requests,
            remaining=max(0, self._config.max_requests - count_after),
            retry_after=self._retry_after(count_after, results[4], now),
        )

    async def check(self, identifier: str) -> bool:
        """Record an attempt and decide from the count before it.

        Returns:
            True if fewer than ``max_requests`` attempts were already in the
            window. On backend failure, the ``fail_open`` setting.
        """
        return (await self.check_with_status(identifier)).allowed

    async def get_status(self, identifier: str) -> RateLimitStatus:
        return await self._read_status("get_status", identifier)

    async def get_remaining(self, identifier: str) -> int:
        return (await self._read_status("get_remaining", identifier)).remaining

    async def get_retry_after(self, identifier: str) -> int:
        return (await self._read_status("get_retry_after", identifier)).retry_after

    async def reset(self, identifier: str) -> None:
        validate_identifier(identifier)
        try:
            await self._execute("reset", self.redis_client.delete(self._key(identifier)))
        except RateLimitBackendError as exc:
            self._log_backend_error("reset", identifier, exc)

    async def _delete_all(self) -> int:
        """Delete prefixed keys one SCAN page at a time.

        Every SCAN step and every DEL is its own round trip under the
        operation timeout, so a large keyspace does not exhaust one budget.
        """
        match = f"{self._key_prefix}*"
        deleted = 0
        cursor = 0
        while True:
            cursor, keys = await self._execute(
                "clear",
                self.redis_client.scan(cursor=cursor, match=match, count=SCAN_BATCH_SIZE),
            )
            if keys:
                deleted += await self._execute("clear", self.redis_client.delete(*keys))
            if not cursor:
                return deleted

    async def clear(self) -> None:
        """Delete every key under this limiter's prefix.

        Uses SCAN rather than KEYS so a large keyspace does not block Redis.
        """
        try:
            deleted = await self._delete_all()
        except RateLimitBackendError as exc:
            self._log_backend_error("clear", None, exc)
            return
        logger.info("rate_limit.cleared", extra={"backend": self.backend_name, "deleted": deleted})

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self.redis_client.aclose()
        except BACKEND_ERRORS as exc:
            logger.warning(
                "rate_limit.close_failed",
                extra={"backend": self.backend_name, "error_type": type(exc).__name__},
            )
