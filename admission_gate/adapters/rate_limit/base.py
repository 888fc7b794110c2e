"""Rate limiter interfaces.

The HTTP layer depends on this abstraction (not the concrete implementation)
so the storage backend (process memory or Redis) is chosen once at startup
without changing any caller.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass

from admission_gate.core.errors import ValidationAppError

DEFAULT_MAX_REQUESTS = 10
DEFAULT_WINDOW_MS = 10_000
CLEANUP_INTERVAL_WINDOWS = 5


@dataclass(frozen=True)
class RateLimitConfig:
    """Sliding-window quota configuration.

    Attributes:
        max_requests: Quota per window.
        window_ms: Window length in milliseconds.
        cleanup_interval_ms: Period of the in-memory cleanup sweep. Defaults
            to five windows when omitted.
        fail_open: Admit requests when the shared backend is unreachable.
    """

    max_requests: int = DEFAULT_MAX_REQUESTS
    window_ms: int = DEFAULT_WINDOW_MS
    cleanup_interval_ms: int | None = None
    fail_open: bool = False

    def __post_init__(self) -> None:
        if self.max_requests < 1:
            raise ValidationAppError(
                code="rate_limit_invalid_config",
                message="max_requests must be >= 1",
                details={"actual_value": self.max_requests, "min_value": 1},
            )
        if self.window_ms < 1:
            raise ValidationAppError(
                code="rate_limit_invalid_config",
                message="window_ms must be >= 1",
                details={"actual_value": self.window_ms, "min_value": 1},
            )
        if self.cleanup_interval_ms is not None and self.cleanup_interval_ms < 1:
            raise ValidationAppError(
                code="rate_limit_invalid_config",
                message="cleanup_interval_ms must be >= 1 when set",
                details={"actual_value": self.cleanup_interval_ms, "min_value": 1},
            )

    @property
    def effective_cleanup_interval_ms(self) -> int:
        """Cleanup period, falling back to five windows."""
        if self.cleanup_interval_ms is not None:
            return self.cleanup_interval_ms
        return self.window_ms * CLEANUP_INTERVAL_WINDOWS


@dataclass(frozen=True)
class RateLimitStatus:
    """Quota snapshot for one identifier.

    Attributes:
        allowed: Whether the attempt was (or would be) admitted.
        remaining: Quota left in the current window.
        retry_after: Whole seconds until a slot frees up (0 if quota is left).
    """

    allowed: bool
    remaining: int
    retry_after: int


def validate_identifier(identifier: str) -> None:
    """Reject empty identifiers before they reach any storage."""
    if not identifier:
        raise ValidationAppError(
            code="rate_limit_invalid_identifier",
            message="identifier must be a non-empty string",
        )


class AbstractRateLimiter(ABC):
    """Interface for sliding-window admission control.

    Every operation is a coroutine so request handlers use one calling
    convention regardless of the backend. Rejection is a normal return value
    of ``check``; implementations never raise for it.
    """

    backend_name: str = "abstract"

    def __init__(self, config: RateLimitConfig) -> None:
        self._config = config

    @property
    def config(self) -> RateLimitConfig:
        return self._config

    @abstractmethod
    async def check(self, identifier: str) -> bool:
        """Decide whether a new request for ``identifier`` may proceed.

        Args:
            identifier: Opaque key isolating one caller's quota (e.g. client IP).

        Returns:
            True if admitted under the current quota, False otherwise.
        """
        raise NotImplementedError

    @abstractmethod
    async def get_remaining(self, identifier: str) -> int:
        """Return the quota left in the current window, floored at 0."""
        raise NotImplementedError

    @abstractmethod
    async def get_retry_after(self, identifier: str) -> int:
        """Return whole seconds until a slot frees up (0 if quota is left)."""
        raise NotImplementedError

    async def check_with_status(self, identifier: str) -> RateLimitStatus:
        """Run ``check`` and report the resulting quota.

        Engines override this to answer in a single round trip; the default
        composes the primitive operations.
        """
        allowed = await self.check(identifier)
        return RateLimitStatus(
            allowed=allowed,
            remaining=await self.get_remaining(identifier),
            retry_after=await self.get_retry_after(identifier),
        )

    async def get_status(self, identifier: str) -> RateLimitStatus:
        """Report the quota without recording an attempt."""
        remaining = await self.get_remaining(identifier)
        return RateLimitStatus(
            allowed=remaining > 0,
            remaining=remaining,
            retry_after=await self.get_retry_after(identifier),
        )

    @abstractmethod
    async def reset(self, identifier: str) -> None:
        """Forget all history for one identifier."""
        raise NotImplementedError

    @abstractmethod
    async def clear(self) -> None:
        """Forget every identifier."""
        raise NotImplementedError

    async def close(self) -> None:
        """Release background resources. Safe to call more than once."""
        return None
