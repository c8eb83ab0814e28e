"""
In-process event fan-out.

Subscribers are plain callables ``callback(event_type, payload)``. With
``batch_ms == 0`` delivery is synchronous, in registration order. With
``batch_ms > 0`` emissions are queued and a single timer flushes them; the
queue is bounded and drops its oldest entry when full.

A failing subscriber is logged and never affects other subscribers or the
emitter.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from collections.abc import Callable
from typing import Any

from .config import EventsConfig

logger = logging.getLogger(__name__)

EventCallback = Callable[[str, Any], None]


class EventEmitter:
    def __init__(self, batch_ms: int = 0, max_queue: int = 1000):
        self.batch_ms = max(batch_ms, 0)
        self.max_queue = max(max_queue, 1)
        self._subscribers: list[EventCallback] = []
        self._queue: deque[tuple[str, Any]] = deque()
        self._timer: threading.Timer | None = None
        self._lock = threading.Lock()
        self._closed = False
        self.dropped = 0

    @classmethod
    def from_config(cls, config: EventsConfig) -> "EventEmitter":
        return cls(batch_ms=config.batch_ms, max_queue=config.max_queue)

    def subscribe(self, callback: EventCallback) -> Callable[[], None]:
        """Register ``callback``; the returned function unregisters it."""
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def emit(self, event_type: str, payload: Any = None) -> None:
        if not self.batch_ms:
            self._deliver(event_type, payload)
            return

        with self._lock:
            if self._closed:
                return
            if len(self._queue) >= self.max_queue:
                self._queue.popleft()
                self.dropped += 1
            self._queue.append((event_type, payload))
            if self._timer is None:
                self._timer = threading.Timer(self.batch_ms / 1000.0, self.flush)
                self._timer.daemon = True
                self._timer.start()

    def flush(self) -> int:
        """Deliver everything queued so far; returns the number of events delivered."""
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            pending = list(self._queue)
            self._queue.clear()
        for event_type, payload in pending:
            self._deliver(event_type, payload)
        return len(pending)

    def close(self) -> None:
        self.flush()
        with self._lock:
            self._closed = True
            self._subscribers.clear()

    @property
    def pending(self) -> int:
        with self._lock:
            return len(self._queue)

    def _deliver(self, event_type: str, payload: Any) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(event_type, payload)
            except Exception:
                logger.exception("Error in event subscriber for %s", event_type)
