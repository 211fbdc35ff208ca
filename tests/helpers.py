"""Shared helpers for async tests."""

import asyncio
from typing import Any, Dict, List

from services.realtime.retry import RetryPolicy

FAST_RETRY = RetryPolicy(attempts=2, base_delay=0.01)


async def settle(rounds: int = 10) -> None:
    """Let queued store notifications, and the handlers they trigger, run."""
    for _ in range(rounds):
        await asyncio.sleep(0.005)


class RecordingStore:
    """Wrap a store adapter and record the calls made through it."""

    def __init__(self, inner, stale_query: Dict[str, Any] = None, query_delay: float = 0.0) -> None:
        self._inner = inner
        self.calls: List[tuple] = []
        self.stale_query = stale_query
        self.query_delay = query_delay

    def __getattr__(self, name):
        return getattr(self._inner, name)

    async def query(self, path, field, equals, limit=None):
        self.calls.append(("query", path))
        if self.query_delay:
            await asyncio.sleep(self.query_delay)
        if self.stale_query is not None:
            return self.stale_query
        return await self._inner.query(path, field, equals, limit)

    async def conditional_update(self, path, expected, fields):
        applied = await self._inner.conditional_update(path, expected, fields)
        self.calls.append(("conditional_update", path, applied))
        return applied

    async def arm_on_disconnect(self, path, action):
        self.calls.append(("arm", path))
        await self._inner.arm_on_disconnect(path, action)

    async def disarm(self, path):
        self.calls.append(("disarm", path))
        await self._inner.disarm(path)
