"""Async event bus bridging worker reader tasks to the registry.

Every binding's reader task emits onto one queue; the registry drains
it from a single consumer task, so events are applied one at a time
and in arrival order.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from typing import Any

from mensa.adapters.events import WorkerEvent, dict_to_event

logger = logging.getLogger(__name__)


class EventBus:
    """Async FIFO queue of worker events."""

    def __init__(self, maxsize: int = 5000, put_timeout: float = 30.0) -> None:
        self._queue: asyncio.Queue[WorkerEvent] = asyncio.Queue(maxsize=maxsize)
        self._put_timeout = put_timeout
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def qsize(self) -> int:
        return self._queue.qsize()

    async def emit(self, event: WorkerEvent) -> None:
        """Queue an event. Blocks (with a timeout) when the queue is full."""
        if self._closed:
            return
        try:
            await asyncio.wait_for(self._queue.put(event), timeout=self._put_timeout)
        except asyncio.TimeoutError:
            logger.error(
                "EventBus queue blocked for %.0fs, dropping: %s for thread %s (queue size: %d)",
                self._put_timeout,
                event.event_type,
                event.thread_id[:8],
                self._queue.qsize(),
            )

    async def emit_dict(self, data: dict[str, Any]) -> None:
        await self.emit(dict_to_event(data))

    async def consume(self) -> AsyncIterator[WorkerEvent]:
        """Yield events as they arrive. Stops on close()."""
        while not self._closed:
            try:
                event = await asyncio.wait_for(self._queue.get(), timeout=0.5)
            except asyncio.TimeoutError:
                continue
            yield event

    def close(self) -> None:
        """Stop the consumer loop permanently."""
        self._closed = True

    def drain(self) -> list[WorkerEvent]:
        """Remove and return all queued events without blocking."""
        events: list[WorkerEvent] = []
        while True:
            try:
                events.append(self._queue.get_nowait())
            except asyncio.QueueEmpty:
                return events
