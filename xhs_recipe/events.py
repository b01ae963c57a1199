import asyncio
from typing import List, Optional

from .schemas import ConnectionState


class StatusBus:
    """In-memory fan-out of connection status changes for SSE subscribers."""

    def __init__(self) -> None:
        self.subscribers: List[asyncio.Queue] = []
        self.last: Optional[ConnectionState] = None

    def publish(self, status: ConnectionState) -> None:
        self.last = status
        for queue in list(self.subscribers):
            queue.put_nowait(status)

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        self.subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        if queue in self.subscribers:
            self.subscribers.remove(queue)
