"""In-process transport: two linked endpoints sharing the event loop."""

import logging

from config import CHANNEL_CAPACITY
from transport.base import (
    TransportClosed,
    TransportConnection,
    TransportEventType,
)

logger = logging.getLogger(__name__)


class MemoryTransport(TransportConnection):
    """One end of an in-memory pair.

    ``send`` waits on the peer's bounded event queue, so a slow consumer
    applies backpressure to the sender.
    """

    def __init__(self, local_id: str, remote_id: str, capacity: int = CHANNEL_CAPACITY) -> None:
        super().__init__(remote_id, capacity)
        self.local_id = local_id
        self.peer: "MemoryTransport | None" = None

    async def open(self) -> None:
        """Report the channel as open on both ends."""
        await self._publish(TransportEventType.OPEN)
        if self.peer is not None:
            await self.peer._publish(TransportEventType.OPEN)

    async def send(self, data: bytes) -> None:
        if not self.is_open or self.peer is None or self.peer.finished:
            raise TransportClosed(f"Channel to {self.remote_id} is closed")
        await self.peer._publish(TransportEventType.DATA, data)

    async def close(self) -> None:
        if self.finished:
            return
        self._finish(TransportEventType.CLOSE)
        if self.peer is not None:
            self.peer._finish(TransportEventType.CLOSE)

    def fail(self, message: str) -> None:
        """Simulate a transport fault on this end and close the other."""
        self._finish(TransportEventType.ERROR, message)
        if self.peer is not None:
            self.peer._finish(TransportEventType.CLOSE)


def memory_pair(
    local_id: str, remote_id: str, capacity: int = CHANNEL_CAPACITY
) -> tuple[MemoryTransport, MemoryTransport]:
    """Return linked ``(local, remote)`` transports; neither is open yet."""
    local = MemoryTransport(local_id, remote_id, capacity)
    remote = MemoryTransport(remote_id, local_id, capacity)
    local.peer = remote
    remote.peer = local
    return local, remote
