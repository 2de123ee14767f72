from __future__ import annotations

import asyncio
import logging
import threading
from typing import Any

logger = logging.getLogger(__name__)


class EventHub:
    def __init__(self, queue_maxsize: int = 100) -> None:
        # queue -> loop that owns it
        self._subscribers: dict[asyncio.Queue, asyncio.AbstractEventLoop] = {}
        self._lock = threading.Lock()
        self._queue_maxsize = queue_maxsize

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def subscribe(self) -> asyncio.Queue:
        """Register a subscriber; must be called from inside an event loop."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_maxsize)
        loop = asyncio.get_running_loop()
        with self._lock:
            self._subscribers[queue] = loop
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        with self._lock:
            self._subscribers.pop(queue, None)

    def publish(self, event_name: str, payload: Any) -> None:
        with self._lock:
            targets = list(self._subscribers.items())

        for queue, loop in targets:
            try:
                loop.call_soon_threadsafe(self._offer, queue, (event_name, payload))
            except RuntimeError:
                # loop already closed
                self.unsubscribe(queue)

    def _offer(self, queue: asyncio.Queue, item: tuple[str, Any]) -> None:
        try:
            queue.put_nowait(item)
        except asyncio.QueueFull:
            logger.warning("dropping slow subscriber (queue full)")
            self.unsubscribe(queue)
