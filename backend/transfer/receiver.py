"""
Receiving side of the chunked transfer protocol.

Chunks are buffered in memory, keyed by their index, until ``file-complete``
arrives, so peak memory grows with the size of the file being received.
There is no streaming-to-disk path; large files are a capacity limit here.
"""

import logging

from errors import TransferAborted
from transfer.codec import FileChunk, FileComplete, FileStart
from transfer.models import (
    FileInfo,
    ReceivedArtifact,
    TransferDirection,
    TransferSession,
)

logger = logging.getLogger(__name__)


class TransferReceiver:
    """Turns a stream of protocol messages into received artifacts."""

    def __init__(self) -> None:
        self.session: TransferSession | None = None
        self._chunks: dict[int, bytes] = {}

    @property
    def is_active(self) -> bool:
        return self.session is not None and self.session.is_active

    @property
    def buffered_bytes(self) -> int:
        return sum(len(c) for c in self._chunks.values())

    def handle(self, message: FileStart | FileChunk | FileComplete) -> ReceivedArtifact | None:
        """Apply one message. Returns the artifact when a file completes.

        Raises:
            TransferAborted: the file completed with chunks missing.
        """
        if isinstance(message, FileStart):
            self._start(message.file_info)
        elif isinstance(message, FileChunk):
            self._chunk(message)
        elif isinstance(message, FileComplete):
            return self._complete(message.file_info)
        return None

    def abort(self, reason: str) -> bool:
        """Drop the active transfer, if any. No artifact is produced."""
        self._chunks = {}
        if not self.is_active:
            return False
        logger.info(f"Receive of {self.session.file_name} aborted: {reason}")
        self.session.abort(f"File transfer failed: {reason}")
        return True

    def _start(self, info: FileInfo) -> None:
        if self.is_active:
            logger.warning(
                f"New file-start for {info.name} while {self.session.file_name} "
                f"is still active; discarding the old transfer"
            )
            self.session.abort("File transfer failed: superseded by a new transfer")

        self._chunks = {}
        self.session = TransferSession(direction=TransferDirection.RECEIVING)
        self.session.begin(info)
        logger.info(f"Receiving {info.name} ({info.size} bytes, {info.mime_type})")

    def _chunk(self, message: FileChunk) -> None:
        if not self.is_active:
            logger.warning(f"Ignoring chunk {message.index}: no transfer in progress")
            return
        if message.index in self._chunks:
            logger.warning(f"Ignoring duplicate chunk {message.index}")
            return

        self._chunks[message.index] = message.chunk
        self.session.advance(len(message.chunk), message.progress)

    def _complete(self, info: FileInfo) -> ReceivedArtifact | None:
        if not self.is_active:
            logger.warning(f"Ignoring file-complete for {info.name}: no transfer in progress")
            return None

        chunks, self._chunks = self._chunks, {}
        missing = next((i for i in range(len(chunks)) if i not in chunks), None)
        if missing is not None:
            self.session.abort(f"File transfer failed: missing chunk {missing}")
            raise TransferAborted(f"{info.name} arrived with chunk {missing} missing")

        content = b"".join(chunks[i] for i in range(len(chunks)))
        if len(content) < info.size:
            # Trailing chunks leave no gap in the indices, only a short file
            self.session.abort(
                f"File transfer failed: received {len(content)} of {info.size} bytes"
            )
            raise TransferAborted(f"{info.name} arrived truncated")
        if len(content) > info.size:
            logger.warning(
                f"{info.name}: received {len(content)} bytes, declared {info.size}"
            )

        self.session.complete()
        logger.info(f"Received {info.name} ({len(content)} bytes)")
        return ReceivedArtifact(
            name=info.name,
            size=info.size,
            mime_type=info.mime_type,
            content=content,
        )
