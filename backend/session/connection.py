"""
Connection lifecycle: disconnected -> connecting -> connected -> disconnected.

A Connection owns one transport at a time. A single dispatch task drains the
transport's event queue, so open/data/close/error are handled strictly one
after another. A timeout task closes connections that never open.
"""

import asyncio
import logging
from enum import Enum

from config import CONNECT_TIMEOUT
from errors import (
    ConnectionTimeout,
    InvalidStateError,
    MalformedMessage,
    PeerConnectionError,
    PeerDropError,
    TransferAborted,
)
from transfer.codec import decode_message, encode_message
from transport.base import TransportClosed, TransportConnection, TransportEventType

logger = logging.getLogger(__name__)

TIMEOUT_MESSAGE = (
    "Connection timed out. Check that both devices can reach each other on the "
    "network. Peers behind a strict NAT (for example on mobile data) need a "
    "TURN relay server to connect."
)


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class Connection:
    """State machine for the link to a single remote peer.

    Callbacks (all optional, all async):
        on_state_change(connection) after every state transition.
        on_message(message) for each decoded protocol message.
        on_error(error) for every surfaced error.
    """

    def __init__(
        self,
        on_state_change=None,
        on_message=None,
        on_error=None,
        timeout: float = CONNECT_TIMEOUT,
    ) -> None:
        self.state = ConnectionState.DISCONNECTED
        self.remote_id: str | None = None
        self.error: PeerDropError | None = None
        self.transport: TransportConnection | None = None
        self._timeout = timeout
        self._timeout_task: asyncio.Task | None = None
        self._dispatch_task: asyncio.Task | None = None
        self._on_state_change = on_state_change
        self._on_message = on_message
        self._on_error = on_error

    @property
    def is_connected(self) -> bool:
        return (
            self.state == ConnectionState.CONNECTED
            and self.transport is not None
            and self.transport.is_open
        )

    @property
    def is_live(self) -> bool:
        return self.state != ConnectionState.DISCONNECTED

    # --- Entry points ---

    async def initiate(self, remote_id: str, signaling) -> None:
        """Dial ``remote_id`` through the signaling service."""
        self._require_disconnected()
        self.remote_id = remote_id
        self.error = None
        await self._set_state(ConnectionState.CONNECTING)

        try:
            transport = await signaling.connect(remote_id)
        except (PeerDropError, OSError) as e:
            logger.error(f"Failed to connect to {remote_id}: {e}")
            self.error = PeerConnectionError(f"Failed to connect: {e}")
            await self._set_state(ConnectionState.DISCONNECTED)
            await self._report(self.error)
            return

        self._attach(transport)

    async def accept(self, transport: TransportConnection) -> None:
        """Take over an inbound transport reported by the signaling service."""
        self._require_disconnected()
        self.remote_id = transport.remote_id
        self.error = None
        await self._set_state(ConnectionState.CONNECTING)
        self._attach(transport)

    async def close(self) -> None:
        """User-initiated teardown. No-op when already disconnected."""
        await self._teardown(None)

    async def send(self, message) -> None:
        """Encode and send a protocol message over the open transport."""
        transport = self.transport
        if self.state != ConnectionState.CONNECTED or transport is None:
            raise TransferAborted("Connection lost during transfer")
        try:
            await transport.send(encode_message(message))
        except TransportClosed as e:
            raise TransferAborted(f"Connection lost during transfer: {e}") from e

    # --- Internals ---

    def _require_disconnected(self) -> None:
        if self.state != ConnectionState.DISCONNECTED:
            raise InvalidStateError(f"Connection is already {self.state.value}")

    def _attach(self, transport: TransportConnection) -> None:
        self.transport = transport
        self._timeout_task = asyncio.create_task(self._expire(transport))
        self._dispatch_task = asyncio.create_task(self._dispatch(transport))
        logger.info(f"Connecting to {transport.remote_id} (timeout {self._timeout}s)")

    async def _expire(self, transport: TransportConnection) -> None:
        await asyncio.sleep(self._timeout)
        if self.transport is transport and self.state == ConnectionState.CONNECTING:
            logger.warning(f"Connection to {self.remote_id} timed out")
            await self._teardown(ConnectionTimeout(TIMEOUT_MESSAGE))

    async def _dispatch(self, transport: TransportConnection) -> None:
        while True:
            event = await transport.next_event()
            if transport is not self.transport:
                return

            if event.type == TransportEventType.OPEN:
                await self._handle_open()
            elif event.type == TransportEventType.DATA:
                await self._handle_data(event.payload)
            elif event.type == TransportEventType.CLOSE:
                logger.info(f"Connection to {self.remote_id} closed by peer")
                await self._teardown(None)
                return
            elif event.type == TransportEventType.ERROR:
                logger.error(f"Connection error with {self.remote_id}: {event.payload}")
                await self._teardown(PeerConnectionError(f"Connection error: {event.payload}"))
                return

    async def _handle_open(self) -> None:
        if self.state != ConnectionState.CONNECTING:
            return
        if self._timeout_task:
            self._timeout_task.cancel()
            self._timeout_task = None
        self.error = None
        await self._set_state(ConnectionState.CONNECTED)
        logger.info(f"Connected to {self.remote_id}")

    async def _handle_data(self, data: bytes) -> None:
        if self.state != ConnectionState.CONNECTED:
            logger.warning(f"Dropping message received while {self.state.value}")
            return
        try:
            message = decode_message(data)
        except MalformedMessage as e:
            logger.warning(f"Rejected message from {self.remote_id}: {e}")
            await self._report(e)
            return

        if self._on_message:
            try:
                await self._on_message(message)
            except Exception as e:
                logger.error(f"Message handler error: {e}", exc_info=True)

    async def _teardown(self, error: PeerDropError | None) -> None:
        transport = self.transport
        if transport is None:
            return
        self.transport = None

        current = asyncio.current_task()
        for task in (self._timeout_task, self._dispatch_task):
            if task and task is not current:
                task.cancel()
        self._timeout_task = None
        self._dispatch_task = None

        self.error = error
        await transport.close()
        await self._set_state(ConnectionState.DISCONNECTED)
        if error is not None:
            await self._report(error)

    async def _set_state(self, state: ConnectionState) -> None:
        self.state = state
        if self._on_state_change:
            try:
                await self._on_state_change(self)
            except Exception as e:
                logger.error(f"State callback error: {e}", exc_info=True)

    async def _report(self, error: PeerDropError) -> None:
        if self._on_error:
            try:
                await self._on_error(error)
            except Exception as e:
                logger.error(f"Error callback error: {e}", exc_info=True)
