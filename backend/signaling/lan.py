"""
LAN signaling over UDP broadcast.

Broadcasts a periodic beacon carrying our peer id and TCP transport port,
listens for beacons from other instances on the same LAN, and accepts
inbound TCP transports. Dialing a peer id resolves it through the beacons
seen so far.
"""

import asyncio
import json
import logging
import random
import socket
import time

from pydantic import ValidationError

from config import (
    APP_ID,
    CONNECT_TIMEOUT,
    DISCOVERY_INTERVAL,
    DISCOVERY_PORT,
    PEER_TIMEOUT,
    PLATFORM,
    TRANSFER_PORT_MAX,
    TRANSFER_PORT_MIN,
)
from errors import IdentityInitFailure, PeerUnavailable
from signaling.base import SignalingService
from signaling.identity import IdentityService
from signaling.models import Beacon, LanPeer
from transport.tcp import TcpTransport

logger = logging.getLogger(__name__)


class BeaconProtocol(asyncio.DatagramProtocol):
    """asyncio UDP protocol for receiving beacons."""

    def __init__(self, service: "LanSignaling"):
        self.service = service

    def datagram_received(self, data: bytes, addr: tuple[str, int]) -> None:
        try:
            beacon = Beacon(**json.loads(data.decode("utf-8")))
        except (UnicodeDecodeError, json.JSONDecodeError, TypeError, ValidationError) as e:
            logger.debug(f"Ignoring invalid beacon from {addr}: {e}")
            return

        if beacon.app_id != APP_ID or beacon.peer_id == self.service.identity.peer_id:
            return

        self.service.update_peer(
            LanPeer(
                peer_id=beacon.peer_id,
                ip_address=addr[0],
                transfer_port=beacon.transfer_port,
                platform=beacon.platform,
                last_seen=time.time(),
            )
        )

    def error_received(self, exc: Exception) -> None:
        logger.warning(f"Beacon UDP error: {exc}")


def broadcast_addresses() -> set[str]:
    """Broadcast targets: global, loopback and a /24 guess per local address."""
    addresses = {"<broadcast>", "255.255.255.255", "127.255.255.255"}
    try:
        _, _, ips = socket.gethostbyname_ex(socket.gethostname())
    except OSError as e:
        logger.debug(f"Error resolving local IPs: {e}")
        return addresses

    for ip in ips:
        parts = ip.split(".")
        if not ip.startswith("127.") and len(parts) == 4:
            parts[3] = "255"
            addresses.add(".".join(parts))
    return addresses


class LanSignaling(SignalingService):
    """Peer discovery and connection brokering on the local network."""

    def __init__(self, host: str = "0.0.0.0", discovery_port: int = DISCOVERY_PORT) -> None:
        super().__init__()
        self.identity = IdentityService()
        self._host = host
        self._discovery_port = discovery_port
        self._peers: dict[str, LanPeer] = {}
        self._server: asyncio.Server | None = None
        self._udp: asyncio.DatagramTransport | None = None
        self._broadcast_task: asyncio.Task | None = None
        self._cleanup_task: asyncio.Task | None = None
        self._transfer_port = 0

    async def allocate_identity(self) -> str:
        if self.identity.peer_id is not None:
            return self.identity.peer_id
        peer_id = self.identity.allocate()
        try:
            await self._start_listener()
            await self._start_discovery()
        except (OSError, RuntimeError) as e:
            logger.error(f"Signaling startup failed: {e}")
            await self.close()
            raise IdentityInitFailure(f"Failed to initialize connection: {e}") from e
        return peer_id

    async def connect(self, remote_id: str) -> TcpTransport:
        peer = self._peers.get(remote_id)
        if peer is None:
            raise PeerUnavailable(f"Could not connect to peer {remote_id}: not seen on the network")
        logger.info(f"Dialing {remote_id} at {peer.ip_address}:{peer.transfer_port}")
        return TcpTransport.dial(
            self.identity.peer_id, remote_id, peer.ip_address, peer.transfer_port
        )

    async def get_peers(self) -> list[LanPeer]:
        return list(self._peers.values())

    def update_peer(self, peer: LanPeer) -> None:
        """Add or refresh a peer in the directory."""
        if peer.peer_id not in self._peers:
            logger.info(f"Discovered peer: {peer.peer_id} ({peer.ip_address})")
        self._peers[peer.peer_id] = peer

    async def close(self) -> None:
        for task in (self._broadcast_task, self._cleanup_task):
            if task:
                task.cancel()
        if self._udp:
            self._udp.close()
            self._udp = None
        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
        self.identity.retire()
        logger.info("LAN signaling stopped")

    async def _start_listener(self) -> None:
        """Bind the TCP transport listener on a random port."""
        # Try a few ports if the first one is busy
        for _ in range(10):
            port = random.randint(TRANSFER_PORT_MIN, TRANSFER_PORT_MAX)
            try:
                self._server = await asyncio.start_server(
                    self._handle_inbound, self._host, port
                )
            except OSError:
                continue
            self._transfer_port = port
            logger.info(f"Transport listener on port {port}")
            return

        raise RuntimeError("Could not bind to any transfer port")

    async def _start_discovery(self) -> None:
        loop = asyncio.get_running_loop()

        # SO_REUSEADDR before binding so several instances can share the port
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
            sock.setblocking(False)
            sock.bind((self._host, self._discovery_port))
        except OSError:
            sock.close()
            raise

        self._udp, _ = await loop.create_datagram_endpoint(
            lambda: BeaconProtocol(self), sock=sock
        )
        self._broadcast_task = asyncio.create_task(self._broadcast_loop())
        self._cleanup_task = asyncio.create_task(self._cleanup_loop())
        logger.info(f"Beacons on UDP port {self._discovery_port}")

    async def _handle_inbound(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        peername = writer.get_extra_info("peername")
        try:
            transport = await TcpTransport.handshake_inbound(
                self.identity.peer_id, reader, writer, timeout=CONNECT_TIMEOUT
            )
        except (asyncio.TimeoutError, asyncio.IncompleteReadError, OSError, ValueError) as e:
            logger.warning(f"Inbound handshake from {peername} failed: {e}")
            writer.close()
            return

        logger.info(f"Inbound connection from {transport.remote_id} ({peername})")
        await self._incoming(transport)

    async def _broadcast_loop(self) -> None:
        """Periodically send a beacon."""
        while True:
            if self.identity.peer_id and self._udp:
                beacon = Beacon(
                    app_id=APP_ID,
                    peer_id=self.identity.peer_id,
                    transfer_port=self._transfer_port,
                    platform=PLATFORM,
                )
                data = json.dumps(beacon.model_dump()).encode("utf-8")
                for address in broadcast_addresses():
                    try:
                        self._udp.sendto(data, (address, self._discovery_port))
                    except OSError as e:
                        # Some interfaces do not support broadcast
                        logger.debug(f"Beacon to {address} failed: {e}")

            await asyncio.sleep(DISCOVERY_INTERVAL)

    async def _cleanup_loop(self) -> None:
        """Forget peers that have not been seen recently."""
        while True:
            await asyncio.sleep(PEER_TIMEOUT)
            now = time.time()
            for peer_id, peer in list(self._peers.items()):
                if now - peer.last_seen > PEER_TIMEOUT:
                    del self._peers[peer_id]
                    logger.info(f"Peer lost: {peer_id} ({peer.ip_address})")
