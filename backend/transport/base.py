"""
Abstract transport connection.

A transport moves discrete byte messages between two peers, reliably and in
order. Instead of invoking callbacks, every transport publishes its
``open``/``data``/``close``/``error`` events into a bounded per-connection
queue that the owning connection drains one event at a time.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any

from config import CHANNEL_CAPACITY

logger = logging.getLogger(__name__)


class TransportEventType(str, Enum):
    OPEN = "open"
    DATA = "data"
    CLOSE = "close"
    ERROR = "error"


@dataclass
class TransportEvent:
    type: TransportEventType
    payload: Any = None  # bytes for DATA, message str for ERROR


class TransportClosed(ConnectionError):
    """Raised when sending on a transport that is no longer open."""


class TransportConnection(ABC):
    """A message channel to exactly one remote peer."""

    def __init__(self, remote_id: str, capacity: int = CHANNEL_CAPACITY) -> None:
        self.remote_id = remote_id
        self.events: asyncio.Queue[TransportEvent] = asyncio.Queue(maxsize=capacity)
        self._open = False
        self._finished = False
        # Terminal event parked here when the queue is full; delivered after
        # everything queued before it.
        self._terminal: TransportEvent | None = None
        self._finished_event = asyncio.Event()

    @property
    def is_open(self) -> bool:
        return self._open and not self._finished

    @property
    def finished(self) -> bool:
        return self._finished

    async def next_event(self) -> TransportEvent:
        if self.events.empty() and self._terminal is not None:
            event, self._terminal = self._terminal, None
            return event
        return await self.events.get()

    async def _publish(self, event_type: TransportEventType, payload: Any = None) -> None:
        """Queue an open/data event; waits while the channel is full."""
        if self._finished:
            return
        if event_type == TransportEventType.OPEN:
            self._open = True
        event = TransportEvent(event_type, payload)
        try:
            self.events.put_nowait(event)
            return
        except asyncio.QueueFull:
            pass

        # Full: wait for room, but give up once the channel is finished,
        # since nobody may be draining it any more.
        put = asyncio.ensure_future(self.events.put(event))
        finished = asyncio.ensure_future(self._finished_event.wait())
        try:
            await asyncio.wait({put, finished}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            put.cancel()
            finished.cancel()

    def _finish(self, event_type: TransportEventType, payload: Any = None) -> None:
        """Queue the terminal close/error event. Only the first one counts."""
        if self._finished:
            return
        self._open = False
        self._finished = True
        self._finished_event.set()
        event = TransportEvent(event_type, payload)
        try:
            self.events.put_nowait(event)
        except asyncio.QueueFull:
            self._terminal = event

    @abstractmethod
    async def send(self, data: bytes) -> None:
        """Send one message. Raises :class:`TransportClosed` if not open."""

    @abstractmethod
    async def close(self) -> None:
        """Close the channel. Safe to call more than once."""
