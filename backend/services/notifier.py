"""
Realtime notifier.

Fans sync events out to in-process subscribers (the SSE endpoint holds
one queue per open stream). Publishing never waits on a slow consumer:
when a queue is full its oldest event is discarded.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 256


class RealtimeNotifier:
    def __init__(self, queue_size: int = DEFAULT_QUEUE_SIZE):
        self.queue_size = queue_size
        self._subscribers: Dict[str, List[asyncio.Queue]] = {}

    def subscribe(self, user_email: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        self._subscribers.setdefault(user_email.lower(), []).append(queue)
        return queue

    def unsubscribe(self, user_email: str, queue: asyncio.Queue) -> None:
        queues = self._subscribers.get(user_email.lower(), [])
        if queue in queues:
            queues.remove(queue)
        if not queues:
            self._subscribers.pop(user_email.lower(), None)

    def subscriber_count(self, user_email: str) -> int:
        return len(self._subscribers.get(user_email.lower(), []))

    def publish(self, user_email: str, event: Dict[str, Any]) -> None:
        for queue in self._subscribers.get(user_email.lower(), []):
            if queue.full():
                try:
                    queue.get_nowait()
                except asyncio.QueueEmpty:
                    pass
                logger.debug(f"Dropped oldest event for a slow subscriber of {user_email}")
            queue.put_nowait(event)

    def publish_progress(self, user_email: str, processed: int, total: int,
                         current_email: Optional[str] = None) -> None:
        self.publish(user_email, {
            "type": "progress",
            "processed": processed,
            "total": total,
            "currentEmail": current_email,
        })

    def publish_saved(self, user_email: str, thread: Dict[str, Any]) -> None:
        self.publish(user_email, {"type": "saved", "thread": thread})


_notifier: Optional[RealtimeNotifier] = None


def get_notifier() -> RealtimeNotifier:
    global _notifier
    if _notifier is None:
        _notifier = RealtimeNotifier()
    return _notifier
