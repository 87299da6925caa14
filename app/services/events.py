"""
app/services/events.py
Queue of hunt progress events drained by a single observer (e.g. an SSE
stream). Publishing is safe from the event loop and from worker threads.
"""

import asyncio
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

logger = logging.getLogger(__name__)

_CLOSED = object()


@dataclass(frozen=True)
class HuntEvent:
    kind: str
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


class HuntEvents:
    """Unbounded queue; every published event is delivered to the observer."""

    def __init__(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._queue: asyncio.Queue = asyncio.Queue()

    def publish(self, kind: str, data: dict[str, Any] | None = None) -> None:
        self._loop.call_soon_threadsafe(self._queue.put_nowait, HuntEvent(kind, data or {}))

    def close(self) -> None:
        """Signal the observer that no more events will follow."""
        self._loop.call_soon_threadsafe(self._queue.put_nowait, _CLOSED)

    async def __aiter__(self) -> AsyncIterator[HuntEvent]:
        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                return
            yield item
