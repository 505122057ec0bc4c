"""
Protocol channel.

The worker and its controller exchange discrete, ordered, JSON-shaped
messages. A Channel is the worker's end of that exchange:

- send(message): deliver one outbound message, in order
- receive(): next inbound command, parsed and validated
- close(): stop both directions; a pending receive() raises ChannelClosedError

MemoryChannel keeps both directions on asyncio queues and is used for
in-process sessions, the CLI and tests. The WebSocket surface provides its
own Channel in routes/worker.py.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Union

from .messages import _Message, parse_inbound

logger = logging.getLogger(__name__)


class ChannelClosedError(Exception):
    """Raised when sending to or receiving from a closed channel."""
    pass


# Queued to wake any pending receive() on close
_CLOSED = object()


class Channel(ABC):
    """Worker side of the controller connection."""

    @abstractmethod
    async def send(self, message: _Message) -> None:
        """
        Deliver one outbound message.

        Raises:
            ChannelClosedError: If the channel is closed
        """

    @abstractmethod
    async def receive(self) -> _Message:
        """
        Wait for the next inbound command.

        Raises:
            MessageValidationError: If the payload is not a known command
            ChannelClosedError: If the channel was closed
        """

    @abstractmethod
    async def close(self) -> None:
        """Close the channel. Idempotent."""


class MemoryChannel(Channel):
    """
    In-process channel backed by asyncio queues.

    Usage (controller side):
        channel = MemoryChannel()
        channel.put({"type": "load"})
        message = await channel.next_outbound()

    Every message sent is also kept in `sent` in order.
    """

    def __init__(self):
        self._inbound: "asyncio.Queue[Any]" = asyncio.Queue()
        self._outbound: "asyncio.Queue[_Message]" = asyncio.Queue()
        self.sent: List[_Message] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    # ------------------------------------------------------------------
    # Worker side
    # ------------------------------------------------------------------

    async def send(self, message: _Message) -> None:
        if self._closed:
            raise ChannelClosedError("Channel is closed")
        self.sent.append(message)
        await self._outbound.put(message)

    async def receive(self) -> _Message:
        if self._closed and self._inbound.empty():
            raise ChannelClosedError("Channel is closed")

        payload = await self._inbound.get()
        if payload is _CLOSED:
            raise ChannelClosedError("Channel is closed")
        if isinstance(payload, _Message):
            return payload
        return parse_inbound(payload)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._inbound.put_nowait(_CLOSED)
        logger.debug("[SESSION] Memory channel closed")

    # ------------------------------------------------------------------
    # Controller side
    # ------------------------------------------------------------------

    def put(self, message: Union[_Message, Dict[str, Any]]) -> None:
        """
        Queue an inbound command.

        Raw dicts are validated when the worker receives them, so a
        malformed payload reaches the worker as MessageValidationError.
        """
        if self._closed:
            raise ChannelClosedError("Channel is closed")
        self._inbound.put_nowait(message)

    async def next_outbound(self, timeout: Optional[float] = 5.0) -> _Message:
        """
        Wait for the next message the worker sent.

        Raises:
            asyncio.TimeoutError: If nothing arrives within timeout seconds
        """
        return await asyncio.wait_for(self._outbound.get(), timeout)

    def messages_for(self, job_id: str) -> List[_Message]:
        """All sent messages carrying the given job id, in send order."""
        return [m for m in self.sent if getattr(m, "id", None) == job_id]


__all__ = [
    "Channel",
    "ChannelClosedError",
    "MemoryChannel",
]
