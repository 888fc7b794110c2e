"""In-memory sliding-window rate limiter.

Notes:
- Per-process only: running multiple workers multiplies the effective limit.
  Use the Redis limiter when several instances must share one counter.
- Thread-safe: the filter-count-append sequence runs under a lock owned by the
  identifier's entry, so different identifiers never contend.
- A daemon thread sweeps idle identifiers so memory stays bounded under churn.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Sequence

from admission_gate.adapters.rate_limit.base import (
    AbstractRateLimiter,
    RateLimitConfig,
    RateLimitStatus,
    validate_identifier,
)

logger = logging.getLogger(__name__)

# Idle entries are kept for this many windows before the sweep drops them.
RETENTION_WINDOWS = 2


def _monotonic_ms() -> float:
    return time.monotonic() * 1000


@dataclass
class _WindowEntry:
    timestamps: deque[float] = field(default_factory=deque)
    last_touched: float = 0.0
    lock: threading.Lock = field(default_factory=threading.Lock)
    detached: bool = False

    def expire(self, cutoff: float) -> None:
        """Drop timestamps at or before ``cutoff`` (oldest first)."""
        while self.timestamps and self.timestamps[0] <= cutoff:
            self.timestamps.popleft()


class InMemorySlidingWindowRateLimiter(AbstractRateLimiter):
    """Rate limiter keeping a sliding window of admitted timestamps per key.

    Only admitted attempts are recorded: a rejected call leaves the window
    unchanged, so a client regains quota exactly ``window_ms`` after its
    oldest admitted request.

    Important:
        This limiter is per-process only. If the API runs with multiple workers
        (e.g., multiple Uvicorn/Gunicorn workers), each worker enforces its own
        independent limits.
    """

    backend_name = "memory"

    def __init__(
        self,
        config: RateLimitConfig | None = None,
        *,
        clock: Callable[[], float] = _monotonic_ms,
        start_cleanup: bool = True,
    ) -> None:
        """Initialize the limiter and start the cleanup thread.

        Args:
            config: Quota configuration; defaults to ``RateLimitConfig()``.
            clock: Time source returning milliseconds.
            start_cleanup: Start the periodic cleanup thread. Tests disable it
                and call ``cleanup()`` directly.
        """
        super().__init__(config or RateLimitConfig())
        self._clock = clock
        self._registry_lock = threading.Lock()
        self._entries: dict[str, _WindowEntry] = {}
        self._stop_event = threading.Event()
        self._cleanup_thread: threading.Thread | None = None

        if start_cleanup:
            self._start_cleanup()

    # ------------------------------------------------------------------
    # Entry registry
    # ------------------------------------------------------------------

    def _get_or_create_entry(self, identifier: str) -> _WindowEntry:
        with self._registry_lock:
            entry = self._entries.get(identifier)
            if entry is None:
                entry = _WindowEntry(last_touched=self._clock())
                self._entries[identifier] = entry
            return entry

    def _detach_locked(self, identifier: str, entry: _WindowEntry) -> None:
        """Remove ``entry`` from the registry. Caller holds ``entry.lock``."""
        entry.detached = True
        with self._registry_lock:
            if self._entries.get(identifier) is entry:
                del self._entries[identifier]

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def _retry_after(self, valid: Sequence[float], now: float) -> int:
        if len(valid) < self._config.max_requests:
            return 0
        # the slot frees when the oldest of the counted timestamps expires
        oldest = valid[len(valid) - self._config.max_requests]
        wait_ms = oldest + self._config.window_ms - now
        return max(0, math.ceil(wait_ms / 1000))

    def _check(self, identifier: str) -> RateLimitStatus:
        while True:
            entry = self._get_or_create_entry(identifier)
            with entry.lock:
                if entry.detached:
                    # reset/clear/cleanup removed it after lookup; look again
                    continue

                now = self._clock()
                entry.expire(now - self._config.window_ms)
                entry.last_touched = now

                allowed = len(entry.timestamps) < self._config.max_requests
                if allowed:
                    entry.timestamps.append(now)
                return RateLimitStatus(
                    allowed=allowed,
                    remaining=max(0, self._config.max_requests - len(entry.timestamps)),
                    retry_after=self._retry_after(entry.timestamps, now),
                )

    async def check(self, identifier: str) -> bool:
        """Admit or reject one attempt for ``identifier``.

        Args:
            identifier: Unique identifier for rate limiting (e.g., client IP).

        Returns:
            True if admitted, False if the window is full.

        Raises:
            ValidationAppError: If identifier is empty.
        """
        validate_identifier(identifier)
        return self._check(identifier).allowed

    async def check_with_status(self, identifier: str) -> RateLimitStatus:
        validate_identifier(identifier)
        return self._check(identifier)

    def _valid_timestamps(self, identifier: str) -> tuple[list[float], float]:
        with self._registry_lock:
            entry = self._entries.get(identifier)
        if entry is None:
            return [], self._clock()
        with entry.lock:
            now = self._clock()
            cutoff = now - self._config.window_ms
            return [ts for ts in entry.timestamps if ts > cutoff], now

    async def get_remaining(self, identifier: str) -> int:
        validate_identifier(identifier)
        valid, _ = self._valid_timestamps(identifier)
        return max(0, self._config.max_requests - len(valid))

    async def get_retry_after(self, identifier: str) -> int:
        validate_identifier(identifier)
        valid, now = self._valid_timestamps(identifier)
        return self._retry_after(valid, now)

    async def get_status(self, identifier: str) -> RateLimitStatus:
        validate_identifier(identifier)
        valid, now = self._valid_timestamps(identifier)
        remaining = max(0, self._config.max_requests - len(valid))
        return RateLimitStatus(
            allowed=remaining > 0,
            remaining=remaining,
            retry_after=self._retry_after(valid, now),
        )

    async def reset(self, identifier: str) -> None:
        validate_identifier(identifier)
        with self._registry_lock:
            entry = self._entries.get(identifier)
        if entry is None:
            return
        with entry.lock:
            self._detach_locked(identifier, entry)

    async def clear(self) -> None:
        with self._registry_lock:
            entries = list(self._entries.items())
        for identifier, entry in entries:
            with entry.lock:
                self._detach_locked(identifier, entry)

    @property
    def tracked_identifiers(self) -> int:
        """Number of identifiers currently held in memory."""
        with self._registry_lock:
            return len(self._entries)

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------

    def cleanup(self) -> int:
        """Sweep idle identifiers.

        Timestamps older than two windows are dropped; an identifier whose
        list is then empty and that has not been touched for two windows is
        removed entirely.

        Returns:
            Number of identifiers removed.
        """
        retention_ms = self._config.window_ms * RETENTION_WINDOWS
        with self._registry_lock:
            entries = list(self._entries.items())

        removed = 0
        for identifier, entry in entries:
            with entry.lock:
                if entry.detached:
                    continue
                now = self._clock()
                entry.expire(now - retention_ms)
                if not entry.timestamps and now - entry.last_touched > retention_ms:
                    self._detach_locked(identifier, entry)
                    removed += 1

        if removed:
            logger.debug(
                "rate_limit.cleanup",
                extra={
                    "removed": removed,
                    "remaining_identifiers": self.tracked_identifiers,
                },
            )
        return removed

    def _start_cleanup(self) -> None:
        interval_s = self._config.effective_cleanup_interval_ms / 1000
        self._cleanup_thread = threading.Thread(
            target=self._run_cleanup,
            args=(interval_s,),
            name="rate-limit-cleanup",
            daemon=True,
        )
        self._cleanup_thread.start()

    def _run_cleanup(self, interval_s: float) -> None:
        while not self._stop_event.wait(interval_s):
            self.cleanup()

    @property
    def cleanup_running(self) -> bool:
        return self._cleanup_thread is not None and self._cleanup_thread.is_alive()

    def stop(self) -> None:
        """Cancel the cleanup thread. Idempotent.

        Only future sweeps are cancelled; a sweep already in progress finishes
        under the per-entry locks.
        """
        self._stop_event.set()
        self._cleanup_thread = None

    async def close(self) -> None:
        self.stop()
