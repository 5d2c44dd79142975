"""
Sending side of the chunked transfer protocol.

A file goes out as ``file-start``, an ordered run of ``file-chunk`` messages
and ``file-complete``. The sender stops as soon as the connection goes away
and never announces completion for a file it did not finish.
"""

import asyncio
import logging
import mimetypes
from pathlib import Path

from config import CHUNK_SIZE, PACE_DELAY, PACE_EVERY_BYTES
from errors import TransferAborted
from transfer.codec import FileChunk, FileComplete, FileStart
from transfer.models import (
    OutgoingFile,
    TransferDirection,
    TransferSession,
    TransferState,
)

logger = logging.getLogger(__name__)

DEFAULT_MIME_TYPE = "application/octet-stream"


def compute_progress(sent: int, total: int) -> int:
    """Percent of ``total`` covered by ``sent``, rounded half up.

    An empty file counts as fully sent.
    """
    if total <= 0:
        return 100
    return (sent * 200 + total) // (total * 2)


def iter_chunks(content: bytes, chunk_size: int = CHUNK_SIZE):
    """Yield ``(index, chunk, progress)`` in order, offset 0 first."""
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    total = len(content)
    for index, offset in enumerate(range(0, total, chunk_size)):
        chunk = content[offset:offset + chunk_size]
        yield index, chunk, compute_progress(offset + len(chunk), total)


def crossed_checkpoint(before: int, after: int, every: int) -> bool:
    """True when the byte count moved past a multiple of ``every``."""
    return every > 0 and after // every > before // every


async def load_outgoing_file(path: str | Path) -> OutgoingFile:
    """Read a file from disk into memory."""
    path = Path(path)
    content = await asyncio.to_thread(path.read_bytes)
    mime_type, _ = mimetypes.guess_type(path.name)
    return OutgoingFile(
        name=path.name,
        mime_type=mime_type or DEFAULT_MIME_TYPE,
        content=content,
    )


async def _notify(callback, session: TransferSession) -> None:
    if callback is None:
        return
    try:
        await callback(session)
    except Exception as e:
        logger.error(f"Transfer callback error: {e}")


async def send_file(
    connection,
    outgoing: OutgoingFile,
    session: TransferSession | None = None,
    progress_callback=None,
    state_callback=None,
    chunk_size: int = CHUNK_SIZE,
    pace_every: int = PACE_EVERY_BYTES,
    pace_delay: float = PACE_DELAY,
) -> TransferSession:
    """
    Send a single file to the connected peer.

    Args:
        connection: An open session.connection.Connection.
        outgoing: The file to send.
        session: TransferSession to update in place (created if omitted).
        progress_callback: async fn(session) called after every chunk.
        state_callback: async fn(session) called on state changes.

    Returns:
        The session, either completed or aborted with an error message.
    """
    if session is None:
        session = TransferSession(direction=TransferDirection.SENDING)
    info = outgoing.info()

    try:
        if not connection.is_connected:
            raise TransferAborted("Not connected to a peer")

        session.begin(info)
        await _notify(state_callback, session)
        await connection.send(FileStart(file_info=info))

        if info.size == 0:
            session.advance(0, compute_progress(0, 0))
            await _notify(progress_callback, session)

        sent = 0
        for index, chunk, progress in iter_chunks(outgoing.content, chunk_size):
            if not connection.is_connected:
                raise TransferAborted("Connection lost during transfer")

            await connection.send(FileChunk(index=index, progress=progress, chunk=chunk))
            before, sent = sent, sent + len(chunk)
            session.advance(len(chunk), progress)
            await _notify(progress_callback, session)

            # Fixed pause every PACE_EVERY_BYTES. This is a placeholder
            # heuristic; real backpressure comes from transport.send().
            if crossed_checkpoint(before, sent, pace_every):
                await asyncio.sleep(pace_delay)

        if not connection.is_connected:
            raise TransferAborted("Connection lost during transfer")
        await connection.send(FileComplete(file_info=info))

        session.complete()
        await _notify(state_callback, session)
        logger.info(f"Sent {info.name} ({info.size} bytes)")

    except asyncio.CancelledError:
        if session.state == TransferState.ACTIVE:
            session.abort("File transfer failed: cancelled")
            await _notify(state_callback, session)
        raise
    except TransferAborted as e:
        logger.error(f"Send error for {info.name}: {e}")
        session.abort(f"File transfer failed: {e}")
        await _notify(state_callback, session)

    return session
