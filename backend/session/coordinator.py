"""
Session Coordinator — single owner of the live connection and transfer.

Enforces "at most one connection, at most one active transfer", routes
inbound protocol messages to the receiver, runs sends as background tasks
and reports every change to registered event callbacks.
"""

import asyncio
import logging
import os
from pathlib import Path

from config import CHUNK_SIZE, CONNECT_TIMEOUT, DEFAULT_SAVE_DIR, PACE_DELAY
from errors import (
    IdentityInitFailure,
    InvalidStateError,
    PeerDropError,
    SessionBusy,
    TransferAborted,
)
from session.connection import Connection, ConnectionState
from session.models import SessionSnapshot
from transfer.codec import FileChunk, FileStart
from transfer.models import (
    OutgoingFile,
    ReceivedArtifact,
    TransferDirection,
    TransferSession,
    TransferState,
)
from transfer.receiver import TransferReceiver
from transfer.sender import load_outgoing_file, send_file

logger = logging.getLogger(__name__)


class SessionCoordinator:
    """Owns the peer identity, the connection, transfers and the artifact."""

    def __init__(
        self,
        signaling,
        connect_timeout: float = CONNECT_TIMEOUT,
        chunk_size: int = CHUNK_SIZE,
        pace_delay: float = PACE_DELAY,
        save_dir: str = DEFAULT_SAVE_DIR,
    ) -> None:
        self.signaling = signaling
        self.peer_id: str | None = None
        self.connection: Connection | None = None
        self.receiver = TransferReceiver()
        self.outgoing: TransferSession | None = None
        self.transfer: TransferSession | None = None  # most recent, either direction
        self.artifact: ReceivedArtifact | None = None
        self.last_error: str | None = None
        self._connect_timeout = connect_timeout
        self._chunk_size = chunk_size
        self._pace_delay = pace_delay
        self._save_dir = save_dir
        self._send_task: asyncio.Task | None = None
        self._event_callbacks: list = []  # async fn(event_type, data)
        signaling.on_incoming_connection(self._handle_incoming)

    @property
    def save_dir(self) -> str:
        return self._save_dir

    @save_dir.setter
    def save_dir(self, path: str) -> None:
        os.makedirs(path, exist_ok=True)
        self._save_dir = path

    @property
    def connection_state(self) -> ConnectionState:
        if self.connection is None:
            return ConnectionState.DISCONNECTED
        return self.connection.state

    @property
    def is_transferring(self) -> bool:
        sending = self._send_task is not None and not self._send_task.done()
        return sending or self.receiver.is_active

    def on_event(self, callback) -> None:
        """Register callback: async fn(event_type: str, data: dict)."""
        self._event_callbacks.append(callback)

    async def _emit(self, event_type: str, data: dict) -> None:
        """Emit an event to all registered callbacks."""
        for cb in self._event_callbacks:
            try:
                await cb(event_type, data)
            except Exception as e:
                logger.error(f"Event callback error: {e}")

    # --- Lifecycle ---

    async def start(self) -> str:
        """Obtain the local identity. Returns the existing one if already set."""
        if self.peer_id is not None:
            return self.peer_id
        try:
            self.peer_id = await self.signaling.allocate_identity()
        except IdentityInitFailure as e:
            logger.error(f"Identity allocation failed: {e}")
            await self._report(e)
            raise
        self.last_error = None
        logger.info(f"Session ready as {self.peer_id}")
        return self.peer_id

    async def stop(self) -> None:
        if self._send_task and not self._send_task.done():
            self._send_task.cancel()
            try:
                await self._send_task
            except asyncio.CancelledError:
                pass
        if self.connection:
            await self.connection.close()
        await self.discard_artifact()
        await self.signaling.close()
        # The signaling service retired the id; the next start gets a fresh one
        self.peer_id = None
        logger.info("Session stopped")

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            peer_id=self.peer_id,
            connection_state=self.connection_state,
            remote_id=self.connection.remote_id if self.connection else None,
            transfer=self.transfer,
            last_error=self.last_error,
            artifact=self.artifact.info() if self.artifact else None,
            save_dir=self._save_dir,
        )

    # --- Connections ---

    def _new_connection(self) -> Connection:
        return Connection(
            on_state_change=self._on_connection_state,
            on_message=self._on_message,
            on_error=self._report,
            timeout=self._connect_timeout,
        )

    async def connect(self, remote_id: str) -> Connection:
        """Dial a remote peer. Rejected while another connection is live."""
        if self.peer_id is None:
            raise InvalidStateError("Local identity not allocated yet")
        if remote_id == self.peer_id:
            raise InvalidStateError("Cannot connect to yourself")
        if self.connection is not None:
            raise SessionBusy(
                f"Already {self.connection.state.value} to {self.connection.remote_id}; "
                f"disconnect first"
            )

        self.last_error = None
        connection = self._new_connection()
        self.connection = connection
        await connection.initiate(remote_id, self.signaling)
        return connection

    async def disconnect(self) -> None:
        if self.connection is not None:
            await self.connection.close()

    async def _handle_incoming(self, transport) -> None:
        if self.connection is not None:
            logger.warning(
                f"Refusing connection from {transport.remote_id}: already "
                f"{self.connection.state.value} to {self.connection.remote_id}"
            )
            await transport.close()
            return

        logger.info(f"Accepting connection from {transport.remote_id}")
        self.last_error = None
        connection = self._new_connection()
        self.connection = connection
        await connection.accept(transport)

    async def _on_connection_state(self, connection: Connection) -> None:
        if connection is not self.connection:
            return
        if connection.state == ConnectionState.DISCONNECTED:
            self.connection = None

        await self._emit("connection_state", {
            "state": connection.state.value,
            "remote_id": connection.remote_id,
        })

        if connection.state == ConnectionState.DISCONNECTED:
            if self.receiver.abort("connection lost"):
                await self._on_transfer_state(self.receiver.session)
                if connection.error is None:
                    await self._report(TransferAborted(self.receiver.session.error_message))

    async def _report(self, error: PeerDropError) -> None:
        self.last_error = str(error)
        await self._emit("error", {"kind": type(error).__name__, "message": str(error)})

    # --- Receiving ---

    async def _on_message(self, message) -> None:
        if isinstance(message, FileStart) and self._sending:
            logger.warning(f"Peer started {message.file_info.name} while we are sending")
            await self._report(SessionBusy(
                f"Refused incoming {message.file_info.name}: a send is in progress"
            ))
            return

        try:
            artifact = self.receiver.handle(message)
        except TransferAborted as e:
            await self._on_transfer_state(self.receiver.session)
            await self._report(TransferAborted(f"File transfer failed: {e}"))
            return

        session = self.receiver.session
        if session is None:
            return
        if isinstance(message, FileChunk):
            if session.is_active:
                self.transfer = session
                await self._emit("transfer_progress", session.model_dump(mode="json"))
        else:
            await self._on_transfer_state(session)

        if artifact is not None:
            await self._replace_artifact(artifact)

    async def _replace_artifact(self, artifact: ReceivedArtifact) -> None:
        if self.artifact is not None:
            self.artifact.discard()
        self.artifact = artifact
        await self._emit("artifact", artifact.info().model_dump())
        await self._emit("notification", {
            "type": "success",
            "message": f"'{artifact.name}' received successfully!",
        })

    async def discard_artifact(self) -> bool:
        """Release the received file. Returns False when there was none."""
        if self.artifact is None:
            return False
        released = self.artifact.discard()
        self.artifact = None
        await self._emit("artifact", {})
        return released

    async def save_artifact(self, directory: str | None = None) -> Path:
        """Write the received file into ``directory`` (default: save dir)."""
        artifact = self.artifact
        if artifact is None or artifact.content is None:
            raise InvalidStateError("No received file to save")

        target_dir = Path(directory or self._save_dir)
        target_dir.mkdir(parents=True, exist_ok=True)
        name = Path(artifact.name).name or "received.bin"
        path = target_dir / name
        counter = 1
        while path.exists():
            path = target_dir / f"{Path(name).stem} ({counter}){Path(name).suffix}"
            counter += 1

        await asyncio.to_thread(path.write_bytes, artifact.content)
        logger.info(f"Saved {artifact.name} to {path}")
        return path

    # --- Sending ---

    @property
    def _sending(self) -> bool:
        return self._send_task is not None and not self._send_task.done()

    def _require_ready_to_send(self) -> Connection:
        connection = self.connection
        if connection is None or not connection.is_connected:
            raise InvalidStateError("Not connected to a peer")
        if self.is_transferring:
            raise SessionBusy("A transfer is already in progress")
        return connection

    async def send_file(self, path: str | Path) -> TransferSession:
        """Load a file from disk and start sending it."""
        self._require_ready_to_send()
        outgoing = await load_outgoing_file(path)
        return await self.send_outgoing(outgoing)

    async def send_outgoing(self, outgoing: OutgoingFile) -> TransferSession:
        """Start sending an in-memory file in the background."""
        connection = self._require_ready_to_send()
        session = TransferSession(
            direction=TransferDirection.SENDING,
            file_name=outgoing.name,
            file_size=outgoing.size,
            mime_type=outgoing.mime_type,
        )
        self.outgoing = session
        self.transfer = session
        self._send_task = asyncio.create_task(
            send_file(
                connection,
                outgoing,
                session,
                progress_callback=self._on_send_progress,
                state_callback=self._on_transfer_state,
                chunk_size=self._chunk_size,
                pace_delay=self._pace_delay,
            )
        )
        return session

    async def wait_for_send(self) -> TransferSession | None:
        """Wait until the background send (if any) has finished."""
        if self._send_task is not None:
            await asyncio.shield(self._send_task)
        return self.outgoing

    async def _on_send_progress(self, session: TransferSession) -> None:
        await self._emit("transfer_progress", session.model_dump(mode="json"))

    async def _on_transfer_state(self, session: TransferSession) -> None:
        self.transfer = session
        await self._emit("transfer_state", session.model_dump(mode="json"))

        if session.state == TransferState.COMPLETED and session.direction == TransferDirection.SENDING:
            await self._emit("notification", {
                "type": "success",
                "message": f"'{session.file_name}' sent successfully!",
            })
        elif session.state == TransferState.ABORTED and session.direction == TransferDirection.SENDING:
            await self._report(TransferAborted(session.error_message or "File transfer failed"))
