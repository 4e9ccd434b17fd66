"""
Bounded FIFO hand-off between the chain listener and the dispatcher.
"""

import asyncio
import logging
from typing import Any

from .models import RelayMessage

logger = logging.getLogger(__name__)


class MessageChannel:
    """
    Ordered, bounded queue of RelayMessages.

    A full channel suspends ``send``, which stalls the listener's block
    cursor until the dispatcher catches up.
    """

    DEFAULT_CAPACITY: int = 256

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        """
        Initialize the channel.

        Args:
            capacity: Maximum number of queued messages
        """
        if capacity <= 0:
            raise ValueError(f"Channel capacity must be positive, got {capacity}")
        self.capacity = capacity
        self._queue: asyncio.Queue[RelayMessage] = asyncio.Queue(maxsize=capacity)
        self.messages_sent = 0
        self.messages_received = 0

    async def send(self, message: RelayMessage) -> None:
        """Enqueue a message, waiting while the channel is full."""
        if self._queue.full():
            logger.debug(f"Channel full ({self.capacity}), waiting for dispatcher")
        await self._queue.put(message)
        self.messages_sent += 1

    async def receive(self) -> RelayMessage:
        """Dequeue the oldest message, waiting while the channel is empty."""
        message = await self._queue.get()
        self._queue.task_done()
        self.messages_received += 1
        return message

    def __aiter__(self) -> "MessageChannel":
        return self

    async def __anext__(self) -> RelayMessage:
        return await self.receive()

    def __len__(self) -> int:
        return self._queue.qsize()

    def get_status(self) -> dict[str, Any]:
        """
        Get current status of the channel.

        Returns:
            Dictionary with status information
        """
        return {
            "capacity": self.capacity,
            "queued": self._queue.qsize(),
            "sent": self.messages_sent,
            "received": self.messages_received,
        }
