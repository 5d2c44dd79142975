"""In-process signaling: peers in the same event loop find each other by id."""

import logging

from config import CHANNEL_CAPACITY
from errors import IdentityInitFailure, InvalidStateError
from signaling.base import SignalingService
from signaling.identity import IdentityService
from transport.base import TransportEventType
from transport.memory import MemoryTransport, memory_pair

logger = logging.getLogger(__name__)


class LoopbackExchange:
    """Directory shared by every LoopbackSignaling in a process.

    Args:
        auto_open: open dialed transports right away. With False, links stay
            in "connecting" forever, which is how an unreachable peer looks.
        online: when False, identity allocation fails.
    """

    def __init__(
        self, auto_open: bool = True, online: bool = True,
        capacity: int = CHANNEL_CAPACITY,
    ) -> None:
        self.auto_open = auto_open
        self.online = online
        self.capacity = capacity
        self._peers: dict[str, "LoopbackSignaling"] = {}

    def register(self, peer_id: str, signaling: "LoopbackSignaling") -> None:
        self._peers[peer_id] = signaling

    def unregister(self, peer_id: str) -> None:
        self._peers.pop(peer_id, None)

    def peer_ids(self) -> list[str]:
        return list(self._peers)

    async def dial(self, local_id: str, remote_id: str) -> MemoryTransport:
        local, remote = memory_pair(local_id, remote_id, self.capacity)
        target = self._peers.get(remote_id)
        if target is None:
            local._finish(TransportEventType.ERROR, f"Could not connect to peer {remote_id}")
            return local

        await target._incoming(remote)
        if self.auto_open and not local.finished:
            await local.open()
        return local


class LoopbackSignaling(SignalingService):
    """Signaling endpoint backed by a LoopbackExchange."""

    def __init__(self, exchange: LoopbackExchange) -> None:
        super().__init__()
        self.exchange = exchange
        self.identity = IdentityService()

    async def allocate_identity(self) -> str:
        if self.identity.peer_id is not None:
            return self.identity.peer_id
        if not self.exchange.online:
            raise IdentityInitFailure("Failed to initialize connection: signaling service unreachable")
        peer_id = self.identity.allocate()
        self.exchange.register(peer_id, self)
        return peer_id

    async def connect(self, remote_id: str) -> MemoryTransport:
        if self.identity.peer_id is None:
            raise InvalidStateError("Local identity not allocated yet")
        return await self.exchange.dial(self.identity.peer_id, remote_id)

    async def get_peers(self) -> list[str]:
        return [p for p in self.exchange.peer_ids() if p != self.identity.peer_id]

    async def close(self) -> None:
        if self.identity.peer_id is not None:
            self.exchange.unregister(self.identity.peer_id)
            self.identity.retire()
