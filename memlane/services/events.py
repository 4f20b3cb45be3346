"""Per-user fan-out of session events to SSE clients."""

import asyncio
import logging
from collections import defaultdict

logger = logging.getLogger(__name__)

QUEUE_SIZE = 256


class EventBroadcaster:
    """Each connected client owns a bounded queue; slow clients lose their oldest events."""

    def __init__(self, queue_size: int = QUEUE_SIZE):
        self._queue_size = queue_size
        self._clients: dict[str, list[asyncio.Queue]] = defaultdict(list)

    def subscribe(self, user_id: str) -> asyncio.Queue:
        q: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
        self._clients[user_id].append(q)
        logger.info(f"SSE client connected for {user_id} (total: {len(self._clients[user_id])})")
        return q

    def unsubscribe(self, user_id: str, q: asyncio.Queue) -> None:
        queues = self._clients.get(user_id, [])
        if q in queues:
            queues.remove(q)
        if not queues:
            self._clients.pop(user_id, None)
        logger.info(f"SSE client disconnected for {user_id} (total: {len(queues)})")

    def publish(self, user_id: str, event: str, data: dict | None = None) -> None:
        """Queue an event for every client of *user_id* without blocking."""
        message = {"event": event, **(data or {})}
        for q in self._clients.get(user_id, []):
            if q.full():
                # Drop oldest message to make room for the new one
                q.get_nowait()
            q.put_nowait(message)
