import pytest

from helpers import FakeConnection
from transfer import sender
from transfer.codec import FileChunk, FileComplete, FileStart
from transfer.models import OutgoingFile, TransferState
from transfer.sender import (
    compute_progress,
    crossed_checkpoint,
    iter_chunks,
    load_outgoing_file,
    send_file,
)


def test_progress_rounds_half_up_and_handles_empty_files():
    assert compute_progress(16384, 40000) == 41
    assert compute_progress(32768, 40000) == 82
    assert compute_progress(40000, 40000) == 100
    assert compute_progress(1, 200) == 1  # 0.5 rounds up
    assert compute_progress(0, 0) == 100


def test_chunks_for_exact_multiple_of_chunk_size():
    content = b"x" * (16384 * 2)
    chunks = list(iter_chunks(content, 16384))
    assert [len(c) for _, c, _ in chunks] == [16384, 16384]
    assert [p for _, _, p in chunks] == [50, 100]


def test_progress_is_non_decreasing_and_ends_at_100():
    for size in (1, 999, 16385, 163840 + 7, 1_000_003):
        progress = [p for _, _, p in iter_chunks(b"\0" * size, 16384)]
        assert progress == sorted(progress)
        assert progress[-1] == 100


def test_checkpoint_crossing():
    every = 163840
    assert not crossed_checkpoint(0, 16384, every)
    assert crossed_checkpoint(16384 * 9, 16384 * 10, every)
    # Uneven chunk sizes still trigger on the crossing, not on exact equality
    assert crossed_checkpoint(160000, 170000, every)
    assert not crossed_checkpoint(170000, 180000, every)
    assert not crossed_checkpoint(0, 10**9, 0)


@pytest.mark.asyncio
async def test_40000_byte_file_scenario():
    connection = FakeConnection()
    outgoing = OutgoingFile(name="doc.pdf", mime_type="application/pdf", content=b"a" * 40000)
    progress_seen = []

    async def on_progress(session):
        progress_seen.append(session.progress_percent)

    session = await send_file(connection, outgoing, progress_callback=on_progress, pace_delay=0)

    start, *chunks, complete = connection.sent
    assert isinstance(start, FileStart)
    assert start.file_info.size == 40000
    assert all(isinstance(c, FileChunk) for c in chunks)
    assert [len(c.chunk) for c in chunks] == [16384, 16384, 7232]
    assert [c.index for c in chunks] == [0, 1, 2]
    assert [c.progress for c in chunks] == [41, 82, 100]
    assert isinstance(complete, FileComplete)
    assert complete.file_info.size == 40000
    assert complete.file_info.mime_type == "application/pdf"

    assert progress_seen == [41, 82, 100]
    assert session.state == TransferState.COMPLETED
    assert session.transferred_bytes == 40000


@pytest.mark.asyncio
async def test_empty_file_sends_start_then_complete():
    connection = FakeConnection()
    session = await send_file(connection, OutgoingFile(name="empty.txt"), pace_delay=0)

    assert [type(m) for m in connection.sent] == [FileStart, FileComplete]
    assert session.state == TransferState.COMPLETED
    assert session.progress_percent == 100


@pytest.mark.asyncio
async def test_connection_loss_aborts_without_complete():
    connection = FakeConnection(drop_after=3)  # start + two chunks
    states = []

    async def on_state(session):
        states.append(session.state)

    session = await send_file(
        connection,
        OutgoingFile(name="big.bin", content=b"z" * 100_000),
        state_callback=on_state,
        pace_delay=0,
    )

    assert len(connection.sent) == 3
    assert not any(isinstance(m, FileComplete) for m in connection.sent)
    assert session.state == TransferState.ABORTED
    assert session.error_message.startswith("File transfer failed")
    assert states == [TransferState.ACTIVE, TransferState.ABORTED]


@pytest.mark.asyncio
async def test_send_requires_open_connection():
    connection = FakeConnection()
    connection.is_connected = False

    session = await send_file(connection, OutgoingFile(name="a", content=b"abc"))

    assert connection.sent == []
    assert session.state == TransferState.ABORTED


@pytest.mark.asyncio
async def test_load_outgoing_file_guesses_mime_type(tmp_path):
    path = tmp_path / "notes.txt"
    path.write_bytes(b"hello")
    unknown = tmp_path / "blob.unknownext"
    unknown.write_bytes(b"\x00")

    outgoing = await load_outgoing_file(path)
    assert (outgoing.name, outgoing.size, outgoing.mime_type) == ("notes.txt", 5, "text/plain")
    assert (await load_outgoing_file(unknown)).mime_type == "application/octet-stream"


@pytest.mark.asyncio
async def test_sender_pauses_at_each_pacing_checkpoint(monkeypatch):
    connection = FakeConnection()
    pauses = []

    async def fake_sleep(delay):
        sent = sum(len(m.chunk) for m in connection.sent if isinstance(m, FileChunk))
        pauses.append((sent, delay))

    monkeypatch.setattr(sender.asyncio, "sleep", fake_sleep)

    session = await send_file(
        connection, OutgoingFile(name="paced.bin", content=b"p" * 500_000), pace_delay=0.01
    )

    assert session.state == TransferState.COMPLETED
    assert pauses == [(163840, 0.01), (327680, 0.01), (491520, 0.01)]
