"""Pytest configuration and fixtures shared across all test modules.

Sets TESTING before any settings import so no .env file is loaded, and
provides a deterministic clock plus an in-process stand-in for the async
Redis client so no live Redis is needed.
"""

from __future__ import annotations

import asyncio
import fnmatch
import os
from typing import Any

import pytest

# CRITICAL: Set this before any imports that might load settings
os.environ["TESTING"] = "true"
os.environ.pop("REDIS_URL", None)
os.environ.setdefault("LOG_LEVEL", "WARNING")


class FakeClock:
    """Deterministic millisecond clock used to drive sliding windows."""

    def __init__(self, start: float = 1_000_000.0) -> None:
        self.current = start

    def __call__(self) -> float:
        return self.current

    def advance(self, ms: float) -> None:
        self.current += ms


class FakePipeline:
    """Buffers sorted-set commands and applies them in one step on execute()."""

    def __init__(self, redis: "FakeRedis") -> None:
        self._redis = redis
        self._commands: list[tuple[str, tuple[Any, ...], dict[str, Any]]] = []

    async def __aenter__(self) -> "FakePipeline":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self._commands = []

    def _queue(self, name: str, *args: Any, **kwargs: Any) -> "FakePipeline":
        self._commands.append((name, args, kwargs))
        return self

    def zremrangebyscore(self, key: str, min: Any, max: Any) -> "FakePipeline":
        return self._queue("zremrangebyscore", key, min, max)

    def zcard(self, key: str) -> "FakePipeline":
        return self._queue("zcard", key)

    def zadd(self, key: str, mapping: dict[str, float]) -> "FakePipeline":
        return self._queue("zadd", key, mapping)

    def expire(self, key: str, seconds: int) -> "FakePipeline":
        return self._queue("expire", key, seconds)

    def zrange(self, key: str, start: int, end: int, withscores: bool = False) -> "FakePipeline":
        return self._queue("zrange", key, start, end, withscores=withscores)

    async def execute(self) -> list[Any]:
        await self._redis._before_call()
        # no await between commands: the batch is atomic for concurrent callers
        results = [self._redis._apply(name, *args, **kwargs) for name, args, kwargs in self._commands]
        self._commands = []
        return results


class FakeRedis:
    """Minimal async Redis double covering the sorted-set commands the limiter uses.

    Attributes:
        fail_with: Exception raised by every call when set.
        delay_s: Seconds each call sleeps before running (to trigger timeouts).
        round_trips: Number of calls (pipelines count once) that reached the server.
    """

    def __init__(self) -> None:
        self.sets: dict[str, dict[str, float]] = {}
        self.ttls: dict[str, int] = {}
        self.fail_with: BaseException | None = None
        self.delay_s: float = 0.0
        self.closed = False
        self.pings = 0
        self.round_trips = 0
        self._scan_positions: dict[int, str] = {}
        self._scan_cursor = 0

    async def _before_call(self) -> None:
        self.round_trips += 1
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        if self.fail_with is not None:
            raise self.fail_with

    def _apply(self, name: str, *args: Any, **kwargs: Any) -> Any:
        if name == "zremrangebyscore":
            key, low, high = args
            members = self.sets.get(key, {})
            doomed = [m for m, s in members.items() if float(low) <= s <= float(high)]
            for member in doomed:
                del members[member]
            return len(doomed)
        if name == "zcard":
            return len(self.sets.get(args[0], {}))
        if name == "zadd":
            key, mapping = args
            members = self.sets.setdefault(key, {})
            added = sum(1 for m in mapping if m not in members)
            members.update(mapping)
            return added
        if name == "expire":
            key, seconds = args
            if key not in self.sets:
                return False
            self.ttls[key] = seconds
            return True
        if name == "zrange":
            key, start, end = args
            ordered = sorted(self.sets.get(key, {}).items(), key=lambda item: (item[1], item[0]))
            size = len(ordered)
            start = start + size if start < 0 else start
            end = end + size if end < 0 else end
            start = max(start, 0)
            end = min(end, size - 1)
            if start > end or start >= size:
                return []
            picked = ordered[start : end + 1]
            if kwargs.get("withscores"):
                return [(m.encode(), s) for m, s in picked]
            return [m.encode() for m, _ in picked]
        raise AssertionError(f"unexpected command {name}")

    def pipeline(self, transaction: bool = True) -> FakePipeline:
        return FakePipeline(self)

    async def delete(self, *keys: str) -> int:
        await self._before_call()
        removed = 0
        for key in keys:
            if self.sets.pop(key, None) is not None:
                removed += 1
            self.ttls.pop(key, None)
        return removed

    async def scan(self, cursor: int = 0, match: str | None = None, count: int | None = None) -> tuple[int, list[str]]:
        """Page through keys in name order; the cursor remembers the last key seen."""
        await self._before_call()
        after = self._scan_positions.pop(cursor, None) if cursor else None
        ordered = sorted(key for key in self.sets if after is None or key > after)
        size = count or 10
        page, rest = ordered[:size], ordered[size:]
        matched = [key for key in page if match is None or fnmatch.fnmatchcase(key, match)]
        if not rest:
            return 0, matched
        self._scan_cursor += 1
        self._scan_positions[self._scan_cursor] = page[-1]
        return self._scan_cursor, matched

    async def ping(self) -> bool:
        await self._before_call()
        self.pings += 1
        return True

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()
