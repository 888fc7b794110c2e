"""Factory for choosing the rate limiter backend at startup."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable

import redis.asyncio as aioredis

from admission_gate.adapters.rate_limit.base import AbstractRateLimiter, RateLimitConfig
from admission_gate.adapters.rate_limit.in_memory import InMemorySlidingWindowRateLimiter
from admission_gate.adapters.rate_limit.redis_backend import (
    BACKEND_ERRORS,
    DEFAULT_KEY_PREFIX,
    DEFAULT_OPERATION_TIMEOUT_MS,
    RedisSlidingWindowRateLimiter,
)
from admission_gate.core.config import Settings, settings as default_settings
from admission_gate.core.logging import mask_url

logger = logging.getLogger(__name__)

DEFAULT_CONNECT_TIMEOUT_MS = 2000

RedisClientFactory = Callable[..., aioredis.Redis]


def build_redis_client(url: str, *, connect_timeout_ms: int, operation_timeout_ms: int) -> aioredis.Redis:
    """Create an async Redis client. No connection is opened until first use."""
    return aioredis.from_url(
        url,
        socket_connect_timeout=connect_timeout_ms / 1000,
        socket_timeout=operation_timeout_ms / 1000,
    )


def _fallback(config: RateLimitConfig, *, reason: str, **extra: object) -> AbstractRateLimiter:
    logger.warning(
        "rate_limit.backend_fallback",
        extra={"backend": "memory", "reason": reason, **extra},
    )
    return InMemorySlidingWindowRateLimiter(config)


async def create_rate_limiter(
    config: RateLimitConfig,
    *,
    redis_url: str | None = None,
    key_prefix: str = DEFAULT_KEY_PREFIX,
    connect_timeout_ms: int = DEFAULT_CONNECT_TIMEOUT_MS,
    operation_timeout_ms: int = DEFAULT_OPERATION_TIMEOUT_MS,
    client_factory: RedisClientFactory = build_redis_client,
) -> AbstractRateLimiter:
    """Build the limiter once at process start.

    Uses Redis when ``redis_url`` is set and the server answers PING within
    ``connect_timeout_ms``. Otherwise logs a warning and returns the
    in-memory limiter. Never raises for an absent or broken backend.

    Args:
        config: Quota configuration shared by both backends.
        redis_url: Redis location, or None for in-memory limiting.
        key_prefix: Namespace for Redis keys.
        connect_timeout_ms: Bound for the startup PING.
        operation_timeout_ms: Bound for each rate limit round trip.
        client_factory: Builds the Redis client (overridable in tests).

    Returns:
        AbstractRateLimiter: Redis or in-memory limiter.
    """
    if not redis_url:
        return _fallback(config, reason="redis_url_not_configured")

    safe_url = mask_url(redis_url)
    try:
        client = client_factory(
            redis_url,
            connect_timeout_ms=connect_timeout_ms,
            operation_timeout_ms=operation_timeout_ms,
        )
    except (ValueError, *BACKEND_ERRORS) as exc:
        return _fallback(
            config,
            reason="redis_client_invalid",
            redis_location=safe_url,
            error_type=type(exc).__name__,
        )

    try:
        await asyncio.wait_for(client.ping(), timeout=connect_timeout_ms / 1000)
    except BACKEND_ERRORS as exc:
        try:
            await client.aclose()
        except BACKEND_ERRORS as close_exc:
            logger.debug(
                "rate_limit.client_close_failed",
                extra={"error_type": type(close_exc).__name__},
            )
        return _fallback(
            config,
            reason="redis_unreachable",
            redis_location=safe_url,
            error_type=type(exc).__name__,
        )

    logger.info(
        "rate_limit.backend_selected",
        extra={
            "backend": "redis",
            "redis_location": safe_url,
            "max_requests": config.max_requests,
            "window_ms": config.window_ms,
            "fail_open": config.fail_open,
        },
    )
    return RedisSlidingWindowRateLimiter(
        client,
        config,
        key_prefix=key_prefix,
        operation_timeout_ms=operation_timeout_ms,
    )


async def create_rate_limiter_from_settings(
    app_settings: Settings | None = None,
    *,
    client_factory: RedisClientFactory = build_redis_client,
) -> AbstractRateLimiter:
    """Build the limiter from ``RATE_LIMIT_*`` and ``REDIS_*`` settings."""
    cfg = app_settings or default_settings
    return await create_rate_limiter(
        cfg.rate_limit.to_config(),
        redis_url=cfg.redis.url,
        key_prefix=cfg.rate_limit.key_prefix,
        connect_timeout_ms=cfg.redis.connect_timeout_ms,
        operation_timeout_ms=cfg.redis.operation_timeout_ms,
        client_factory=client_factory,
    )
