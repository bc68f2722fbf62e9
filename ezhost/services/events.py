"""In-process change notifications for registry and console updates."""

import asyncio
import logging
from datetime import datetime
from typing import List

logger = logging.getLogger(__name__)

SUBSCRIBER_QUEUE_SIZE = 1000


class EventBus:
    """Fan-out of event dicts to subscriber queues.

    ``publish`` is synchronous so it can be called from registry writes;
    subscribers (WebSocket handlers) drain their own queue.
    """

    def __init__(self):
        self._subscribers: List[asyncio.Queue] = []

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=SUBSCRIBER_QUEUE_SIZE)
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue):
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    def publish(self, event_type: str, **payload):
        event = {
            "type": event_type,
            "time": datetime.now().strftime("%H:%M:%S"),
            **payload,
        }
        for queue in list(self._subscribers):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                # Slow consumer; it will re-poll on reconnect
                logger.debug("Dropping event for full subscriber queue")
