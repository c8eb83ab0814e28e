"""
SSE bridge for the in-process event emitter.

Each stream subscriber gets its own bounded asyncio queue. Emitter callbacks
may fire on any thread (the batching timer runs on its own), so events are
handed to the event loop with ``call_soon_threadsafe``.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from typing import Any

from ..events import EventEmitter


class StreamEventBridge:
    """Fans emitter events out to bounded per-subscriber queues."""

    def __init__(self, emitter: EventEmitter, maxsize: int = 1000):
        self.emitter = emitter
        self.maxsize = maxsize
        self._queues: set[asyncio.Queue[dict[str, Any]]] = set()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._unsubscribe = emitter.subscribe(self._on_event)

    @property
    def subscriber_count(self) -> int:
        return len(self._queues)

    def _on_event(self, event_type: str, payload: Any) -> None:
        # Avoid queue buildup when nobody is listening.
        if not self._queues or self._loop is None:
            return
        event = {"type": event_type, "payload": payload}
        try:
            self._loop.call_soon_threadsafe(self._enqueue_all, event)
        except RuntimeError:
            # Loop already closed.
            pass

    def _enqueue_all(self, event: dict[str, Any]) -> None:
        for queue in list(self._queues):
            # Explicit drop-oldest strategy under pressure.
            if queue.full():
                try:
                    queue.get_nowait()
                except asyncio.QueueEmpty:
                    pass
            queue.put_nowait(event)

    async def subscribe(self) -> AsyncIterator[dict[str, Any]]:
        self._loop = asyncio.get_running_loop()
        queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=self.maxsize)
        self._queues.add(queue)
        try:
            while True:
                event = await queue.get()
                yield event
        finally:
            self._queues.discard(queue)

    def close(self) -> None:
        self._unsubscribe()
        self._queues.clear()
