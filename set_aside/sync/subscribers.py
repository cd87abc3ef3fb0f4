"""
Subscriber channels and registry.

UI consumers connect through a channel, send requests, and receive
replies plus broadcast events. Requests that arrive before the
coordinator is ready are held in a queue and replayed in arrival order
once it opens the registry.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections import deque
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any

from ..id_utils import generate_id
from .protocol import encode_message

logger = logging.getLogger(__name__)


class SubscriberChannel(ABC):
    """A bidirectional message channel to one subscriber."""

    def __init__(self, name: str | None = None) -> None:
        self.channel_id = name or generate_id()
        self.connected_at = datetime.now(UTC).isoformat()

    @abstractmethod
    async def send(self, message: dict[str, Any]) -> None:
        """Deliver a message to the subscriber."""
        ...

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.channel_id})"


class QueueChannel(SubscriberChannel):
    """In-process channel that queues outgoing messages for the subscriber.

    With a maxsize, a full queue fails the send with asyncio.QueueFull
    instead of waiting for the subscriber to catch up.
    """

    def __init__(self, name: str | None = None, maxsize: int = 0) -> None:
        super().__init__(name)
        self.message_queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize)

    async def send(self, message: dict[str, Any]) -> None:
        self.message_queue.put_nowait(message)

    async def receive(self) -> dict[str, Any]:
        """Wait for the next message sent to this subscriber."""
        return await self.message_queue.get()

    def drain(self) -> list[dict[str, Any]]:
        """Return every message queued so far without waiting."""
        messages = []
        while not self.message_queue.empty():
            messages.append(self.message_queue.get_nowait())
        return messages


class CallbackChannel(SubscriberChannel):
    """Channel backed by a send callable, e.g. a WebSocket connection.

    Messages are JSON-encoded with encode_message() unless encode is False.
    """

    def __init__(
        self,
        send: Callable[[dict[str, Any]], Awaitable[Any]],
        name: str | None = None,
        encode: bool = True,
    ) -> None:
        super().__init__(name)
        self._send = send
        self.encode = encode

    async def send(self, message: dict[str, Any]) -> None:
        await self._send(encode_message(message) if self.encode else message)


RequestHandler = Callable[[SubscriberChannel, dict[str, Any]], Awaitable[None]]


class SubscriberRegistry:
    """Tracks connected channels and routes messages to and from them.

    Example:
        >>> registry = SubscriberRegistry()
        >>> channel = QueueChannel()
        >>> registry.connect(channel)
        >>> await registry.receive(channel, {"type": "listCollections"})
        >>> # queued until the coordinator calls registry.open()
    """

    def __init__(self, send_timeout: float | None = 5.0) -> None:
        """Initialize the registry.

        Args:
            send_timeout: Seconds a single send may take before it counts as
                failed; None waits indefinitely
        """
        self.send_timeout = send_timeout
        self._channels: dict[str, SubscriberChannel] = {}
        self._handler: RequestHandler | None = None
        self._pending: deque[tuple[SubscriberChannel, dict[str, Any]]] = deque()
        self._accepting = False

    @property
    def channels(self) -> list[SubscriberChannel]:
        return list(self._channels.values())

    @property
    def is_open(self) -> bool:
        return self._accepting

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def set_handler(self, handler: RequestHandler) -> None:
        """Set the function that processes requests once the registry is open."""
        self._handler = handler

    def connect(self, channel: SubscriberChannel) -> None:
        self._channels[channel.channel_id] = channel
        logger.info(f"Channel connected: {channel.channel_id}")

    def disconnect(self, channel: SubscriberChannel) -> None:
        if self._channels.pop(channel.channel_id, None) is not None:
            logger.info(f"Channel disconnected: {channel.channel_id}")

    def is_connected(self, channel: SubscriberChannel) -> bool:
        return self._channels.get(channel.channel_id) is channel

    async def receive(self, channel: SubscriberChannel, message: dict[str, Any]) -> None:
        """Accept a request from a channel.

        Requests are queued until open() has been called.
        """
        if not self.is_connected(channel):
            logger.debug(f"Ignoring message from disconnected channel {channel.channel_id}")
            return

        if not self._accepting or self._handler is None:
            logger.debug(f"Queued message {message.get('type')} from {channel.channel_id}")
            self._pending.append((channel, message))
            return

        await self._handler(channel, message)

    async def open(self) -> int:
        """Replay queued requests in arrival order, then accept new ones directly.

        Requests from channels that disconnected while queued are dropped.

        Returns:
            Number of requests replayed
        """
        if self._handler is None:
            raise RuntimeError("No request handler set")

        replayed = 0
        while self._pending:
            channel, message = self._pending.popleft()
            if not self.is_connected(channel):
                logger.debug(f"Dropping queued message from {channel.channel_id}")
                continue
            await self._handler(channel, message)
            replayed += 1

        self._accepting = True
        logger.info(f"Registry open, replayed {replayed} queued requests")
        return replayed

    async def reply(self, channel: SubscriberChannel, message: dict[str, Any]) -> bool:
        """Deliver a message to exactly one channel.

        Returns:
            True if delivered, False if the channel is gone or sending failed
        """
        if not self.is_connected(channel):
            logger.debug(f"Dropping reply to disconnected channel {channel.channel_id}")
            return False
        try:
            await self._send(channel, message)
        except Exception as e:
            logger.warning(f"Reply to {channel.channel_id} failed: {e!r}")
            return False
        return True

    async def broadcast(self, event: dict[str, Any]) -> int:
        """Deliver an event to every connected channel.

        Channels are sent to concurrently, so one slow or failing channel
        does not hold up delivery to the others.

        Returns:
            Number of channels the event was delivered to
        """
        channels = self.channels
        results = await asyncio.gather(
            *(self._send(channel, event) for channel in channels),
            return_exceptions=True,
        )
        delivered = 0
        for channel, result in zip(channels, results, strict=True):
            if isinstance(result, BaseException):
                logger.warning(
                    f"Broadcast of {event.get('type')} to {channel.channel_id} failed: {result!r}"
                )
            else:
                delivered += 1
        return delivered

    async def _send(self, channel: SubscriberChannel, message: dict[str, Any]) -> None:
        if self.send_timeout is None:
            await channel.send(message)
        else:
            await asyncio.wait_for(channel.send(message), self.send_timeout)

    async def serve(
        self,
        receive: Callable[[], Awaitable[dict[str, Any] | None]],
        send: Callable[[dict[str, Any]], Awaitable[Any]],
        name: str | None = None,
    ) -> None:
        """Serve one bidirectional connection until receive() returns None.

        Args:
            receive: Async function returning the next request, None on close
            send: Async function sending a JSON-compatible message
            name: Optional channel name
        """
        channel = CallbackChannel(send, name=name)
        self.connect(channel)
        try:
            while True:
                message = await receive()
                if message is None:
                    break
                await self.receive(channel, message)
        finally:
            self.disconnect(channel)
