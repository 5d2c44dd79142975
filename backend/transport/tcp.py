"""
TCP transport.

Handles the outer wire framing, the HELLO handshake that exchanges peer ids
and ephemeral keys, and encrypted delivery of protocol messages. TCP gives
the in-order, reliable delivery the transfer protocol depends on.
"""

import asyncio
import json
import logging
import struct

from pydantic import BaseModel, ValidationError

from config import APP_ID, CHANNEL_CAPACITY, CONNECT_TIMEOUT, MAX_FRAME_SIZE
from security.crypto import FrameCipher, generate_keypair
from transport.base import (
    TransportClosed,
    TransportConnection,
    TransportEventType,
)

logger = logging.getLogger(__name__)

# --- Wire protocol helpers ---

HEADER_FORMAT = "!BI"  # 1-byte type + 4-byte length (big-endian)
HEADER_SIZE = struct.calcsize(HEADER_FORMAT)


class FrameType:
    HELLO = 0x01
    DATA = 0x02


class Hello(BaseModel):
    """First frame in each direction."""
    app_id: str
    peer_id: str
    public_key: str  # hex


async def send_frame(
    writer: asyncio.StreamWriter, frame_type: int, payload: bytes = b""
) -> None:
    """Send a type-length-payload frame."""
    header = struct.pack(HEADER_FORMAT, frame_type, len(payload))
    writer.write(header + payload)
    await writer.drain()


async def recv_frame(reader: asyncio.StreamReader) -> tuple[int, bytes]:
    """Receive a type-length-payload frame. Returns (type, payload)."""
    header = await reader.readexactly(HEADER_SIZE)
    frame_type, length = struct.unpack(HEADER_FORMAT, header)
    if length > MAX_FRAME_SIZE:
        raise ValueError(f"Frame too large: {length} bytes")
    payload = b""
    if length > 0:
        payload = await reader.readexactly(length)
    return frame_type, payload


async def _recv_hello(reader: asyncio.StreamReader) -> Hello:
    frame_type, payload = await recv_frame(reader)
    if frame_type != FrameType.HELLO:
        raise ConnectionError(f"Expected HELLO, got {frame_type:#x}")
    try:
        hello = Hello(**json.loads(payload.decode("utf-8")))
    except (UnicodeDecodeError, json.JSONDecodeError, TypeError, ValidationError) as e:
        raise ConnectionError(f"Invalid HELLO frame: {e}") from e
    if hello.app_id != APP_ID:
        raise ConnectionError(f"Peer runs a different application: {hello.app_id}")
    return hello


async def _send_hello(writer: asyncio.StreamWriter, peer_id: str, public_key: bytes) -> None:
    hello = Hello(app_id=APP_ID, peer_id=peer_id, public_key=public_key.hex())
    await send_frame(writer, FrameType.HELLO, json.dumps(hello.model_dump()).encode("utf-8"))


class TcpTransport(TransportConnection):
    """An encrypted, framed TCP stream carrying protocol messages."""

    def __init__(self, local_id: str, remote_id: str, capacity: int = CHANNEL_CAPACITY) -> None:
        super().__init__(remote_id, capacity)
        self.local_id = local_id
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._cipher: FrameCipher | None = None
        self._task: asyncio.Task | None = None
        self._write_lock = asyncio.Lock()

    @classmethod
    def dial(
        cls, local_id: str, remote_id: str, host: str, port: int,
        capacity: int = CHANNEL_CAPACITY,
    ) -> "TcpTransport":
        """Start connecting in the background; an open or error event follows."""
        transport = cls(local_id, remote_id, capacity)
        transport._task = asyncio.create_task(transport._run_dialer(host, port))
        return transport

    @classmethod
    async def handshake_inbound(
        cls,
        local_id: str,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        timeout: float = CONNECT_TIMEOUT,
        capacity: int = CHANNEL_CAPACITY,
    ) -> "TcpTransport":
        """Answer a dialer's HELLO and return an already open transport."""
        private_key, public_bytes = generate_keypair()
        hello = await asyncio.wait_for(_recv_hello(reader), timeout=timeout)
        await _send_hello(writer, local_id, public_bytes)

        transport = cls(local_id, hello.peer_id, capacity)
        transport._reader = reader
        transport._writer = writer
        peer_public = bytes.fromhex(hello.public_key)
        transport._cipher = FrameCipher.negotiate(
            private_key, peer_public, dialer=False, salt=peer_public + public_bytes
        )
        await transport._publish(TransportEventType.OPEN)
        transport._task = asyncio.create_task(transport._read_loop())
        return transport

    async def _run_dialer(self, host: str, port: int) -> None:
        try:
            self._reader, self._writer = await asyncio.open_connection(host, port)
            private_key, public_bytes = generate_keypair()
            await _send_hello(self._writer, self.local_id, public_bytes)
            hello = await _recv_hello(self._reader)
            if hello.peer_id != self.remote_id:
                raise ConnectionError(
                    f"Reached {hello.peer_id} instead of {self.remote_id}"
                )
            self._cipher = FrameCipher.negotiate(
                private_key,
                bytes.fromhex(hello.public_key),
                dialer=True,
                salt=public_bytes + bytes.fromhex(hello.public_key),
            )
        except asyncio.CancelledError:
            raise
        except asyncio.IncompleteReadError:
            self._finish(TransportEventType.ERROR, "Peer closed the connection during handshake")
            await self._close_writer()
            return
        except (OSError, ValueError) as e:
            logger.error(f"Dial to {self.remote_id} at {host}:{port} failed: {e}")
            self._finish(TransportEventType.ERROR, str(e))
            await self._close_writer()
            return

        await self._publish(TransportEventType.OPEN)
        await self._read_loop()

    async def _read_loop(self) -> None:
        try:
            while True:
                frame_type, payload = await recv_frame(self._reader)
                if frame_type != FrameType.DATA:
                    raise ConnectionError(f"Unexpected frame type {frame_type:#x}")
                await self._publish(TransportEventType.DATA, self._cipher.open(payload))
        except asyncio.CancelledError:
            raise
        except asyncio.IncompleteReadError:
            self._finish(TransportEventType.CLOSE)
        except (OSError, ValueError) as e:
            logger.warning(f"Transport to {self.remote_id} failed: {e}")
            self._finish(TransportEventType.ERROR, str(e))
        finally:
            await self._close_writer()

    async def send(self, data: bytes) -> None:
        if not self.is_open or self._writer is None:
            raise TransportClosed(f"Channel to {self.remote_id} is closed")
        async with self._write_lock:
            try:
                await send_frame(self._writer, FrameType.DATA, self._cipher.seal(data))
            except OSError as e:
                self._finish(TransportEventType.ERROR, str(e))
                raise TransportClosed(str(e)) from e

    async def close(self) -> None:
        if self.finished:
            return
        self._finish(TransportEventType.CLOSE)
        if self._task and self._task is not asyncio.current_task():
            self._task.cancel()
        await self._close_writer()

    async def _close_writer(self) -> None:
        writer, self._writer = self._writer, None
        if writer is None:
            return
        writer.close()
        try:
            await writer.wait_closed()
        except Exception:
            pass
