"""
Best-effort progress fan-out to connected listeners.
"""

import asyncio
import logging
from typing import Optional, Set

from config import SUBSCRIBER_QUEUE_SIZE
from models import ProgressEvent

logger = logging.getLogger(__name__)


class ProgressBroadcaster:
    """
    One-way publish channel.

    Each subscriber gets a bounded queue; publishing never waits, and an event
    that does not fit is dropped for that subscriber only. Nothing is kept for
    listeners that connect later.
    """

    def __init__(self, queue_size: int = SUBSCRIBER_QUEUE_SIZE):
        self.queue_size = max(1, queue_size)
        self._subscribers: Set[asyncio.Queue] = set()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        self._subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        self._subscribers.discard(queue)

    def publish(self, task_id: str, progress: Optional[float], step: str) -> None:
        event = ProgressEvent(task_id=task_id, progress=progress, step=step)
        for queue in list(self._subscribers):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.debug("Dropping progress event for %s: subscriber queue full", task_id)
