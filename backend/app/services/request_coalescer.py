from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

LOGGER = logging.getLogger("shortless.coalescer")


class RequestCoalescer:
    """Shares one in-flight task between concurrent callers using the same key."""

    def __init__(self) -> None:
        self._in_flight: dict[str, asyncio.Task[Any]] = {}

    @property
    def in_flight_count(self) -> int:
        return len(self._in_flight)

    async def coalesce(self, key: str, work: Callable[[], Awaitable[Any]]) -> Any:
        task = self._in_flight.get(key)
        if task is None:
            task = asyncio.ensure_future(work())
            self._in_flight[key] = task
            task.add_done_callback(lambda finished: self._release(key, finished))
        else:
            LOGGER.debug("coalesced request key=%s", key)
        return await asyncio.shield(task)

    def _release(self, key: str, finished: asyncio.Task[Any]) -> None:
        if self._in_flight.get(key) is finished:
            del self._in_flight[key]
        if not finished.cancelled():
            # Mark the exception retrieved; every waiter still receives it.
            finished.exception()
