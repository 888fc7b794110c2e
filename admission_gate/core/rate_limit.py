"""Rate limiting dependency for FastAPI routes.

This module wires the rate limiting adapter into the HTTP layer.

Design goals:
- Minimal coupling: routes depend on a dependency function only.
- One limiter per process: built in the app lifespan, stored on
  ``app.state`` and injected here, never held in a module global.
- Rejection is a normal outcome: the limiter returns False and this layer
  turns it into HTTP 429 with a retry hint.

Identifier strategy: the first hop of X-Forwarded-For, then X-Real-IP, then
the socket peer address.
"""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import Depends, HTTPException, Request, status

from admission_gate.adapters.rate_limit.base import AbstractRateLimiter
from admission_gate.core.config import settings
from admission_gate.core.logging import hash_identifier

logger = logging.getLogger(__name__)

UNKNOWN_CLIENT = "unknown"


def get_rate_limiter(request: Request) -> AbstractRateLimiter:
    """Return the limiter created at application startup.

    Raises:
        RuntimeError: If the app was started without its lifespan.
    """
    limiter: AbstractRateLimiter | None = getattr(request.app.state, "rate_limiter", None)
    if limiter is None:
        raise RuntimeError("rate limiter not initialised; was the app lifespan run?")
    return limiter


def client_identifier(request: Request) -> str:
    """Derive the rate limit identifier for the current request.

    Args:
        request: FastAPI request.

    Returns:
        str: Client address, or ``"unknown"`` when none can be determined.
    """
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        first_hop = forwarded_for.split(",")[0].strip()
        if first_hop:
            return first_hop

    real_ip = request.headers.get("X-Real-IP")
    if real_ip and real_ip.strip():
        return real_ip.strip()

    if request.client and request.client.host:
        return request.client.host

    return UNKNOWN_CLIENT


async def enforce_rate_limit(
    request: Request,
    limiter: Annotated[AbstractRateLimiter, Depends(get_rate_limiter)],
) -> None:
    """FastAPI dependency enforcing admission control.

    When enabled, records one attempt for the caller with a single limiter
    call and keeps the resulting status on ``request.state.rate_limit_status``.
    If the caller's window is full, raises HTTP 429.

    Args:
        request: FastAPI request.
        limiter: Limiter injected from application state.

    Raises:
        HTTPException: 429 Too Many Requests when the quota is exhausted.
    """

    rate_settings = getattr(request.app.state, "settings", settings).rate_limit
    if not rate_settings.enabled:
        return

    identifier = client_identifier(request)
    key_hash = hash_identifier(identifier)

    decision = await limiter.check_with_status(identifier)
    request.state.rate_limit_status = decision
    if decision.allowed:
        logger.info(
            "rate_limit.allowed",
            extra={
                "backend": limiter.backend_name,
                "key_hash": key_hash,
                "limit": limiter.config.max_requests,
                "window_ms": limiter.config.window_ms,
            },
        )
        return

    logger.warning(
        "rate_limit.exceeded",
        extra={
            "backend": limiter.backend_name,
            "key_hash": key_hash,
            "limit": limiter.config.max_requests,
            "remaining": decision.remaining,
            "window_ms": limiter.config.window_ms,
            "retry_after_s": decision.retry_after,
        },
    )

    headers: dict[str, str] = {}
    if rate_settings.include_headers:
        headers["Retry-After"] = str(decision.retry_after)
        headers["X-RateLimit-Limit"] = str(limiter.config.max_requests)
        headers["X-RateLimit-Remaining"] = str(decision.remaining)

    raise HTTPException(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        detail="Rate limit exceeded. Try again later.",
        headers=headers or None,
    )
