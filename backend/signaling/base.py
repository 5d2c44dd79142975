"""Interface of the signaling service that brokers peer connections."""

import logging
from abc import ABC, abstractmethod

from transport.base import TransportConnection

logger = logging.getLogger(__name__)


class SignalingService(ABC):
    """Allocates the local identity, dials peers and reports inbound links."""

    def __init__(self) -> None:
        self._incoming_callbacks: list = []  # async fn(transport)

    def on_incoming_connection(self, callback) -> None:
        """Register callback: async fn(transport: TransportConnection)."""
        self._incoming_callbacks.append(callback)

    async def _incoming(self, transport: TransportConnection) -> None:
        if not self._incoming_callbacks:
            logger.warning(f"No handler for inbound connection from {transport.remote_id}")
            await transport.close()
            return
        for cb in self._incoming_callbacks:
            try:
                await cb(transport)
            except Exception as e:
                logger.error(f"Incoming connection callback error: {e}")

    @abstractmethod
    async def allocate_identity(self) -> str:
        """Return the local peer id, allocating it on first call.

        Raises:
            IdentityInitFailure: the service cannot be reached.
        """

    @abstractmethod
    async def connect(self, remote_id: str) -> TransportConnection:
        """Return a transport to ``remote_id``; it opens asynchronously."""

    async def get_peers(self) -> list:
        """Peers this service currently knows about."""
        return []

    async def close(self) -> None:
        """Release network resources. The identity is not reused."""
