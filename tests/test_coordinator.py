import asyncio
import os

import pytest

from errors import IdentityInitFailure, InvalidStateError, SessionBusy
from helpers import EventLog, wait_until
from session.connection import ConnectionState
from session.coordinator import SessionCoordinator
from signaling.loopback import LoopbackExchange, LoopbackSignaling
from transfer.models import OutgoingFile, TransferDirection, TransferState

CONNECTED = ConnectionState.CONNECTED
DISCONNECTED = ConnectionState.DISCONNECTED


async def _peers(exchange: LoopbackExchange | None = None, **kwargs):
    exchange = exchange or LoopbackExchange()
    kwargs.setdefault("pace_delay", 0)
    alice = SessionCoordinator(LoopbackSignaling(exchange), **kwargs)
    bob = SessionCoordinator(LoopbackSignaling(exchange), **kwargs)
    await alice.start()
    await bob.start()
    return alice, bob


async def _connected_peers(**kwargs):
    alice, bob = await _peers(**kwargs)
    await alice.connect(bob.peer_id)
    await wait_until(
        lambda: alice.connection_state == CONNECTED and bob.connection_state == CONNECTED
    )
    return alice, bob


async def _stop(*coordinators):
    for coordinator in coordinators:
        await coordinator.stop()


@pytest.mark.asyncio
async def test_file_round_trip_between_peers():
    alice, bob = await _connected_peers()
    bob_events = EventLog()
    bob.on_event(bob_events)
    content = os.urandom(40000)
    try:
        session = await alice.send_outgoing(
            OutgoingFile(name="report.pdf", mime_type="application/pdf", content=content)
        )
        await alice.wait_for_send()
        await wait_until(lambda: bob.artifact is not None)

        assert session.state == TransferState.COMPLETED
        assert session.progress_percent == 100
        assert bob.artifact.content == content
        assert bob.artifact.mime_type == "application/pdf"
        assert bob.transfer.direction == TransferDirection.RECEIVING
        assert bob.transfer.state == TransferState.COMPLETED
        assert [e["progress_percent"] for e in bob_events.of("transfer_progress")] == [41, 82, 100]
        assert bob.snapshot().artifact.name == "report.pdf"
    finally:
        await _stop(alice, bob)


@pytest.mark.asyncio
async def test_second_connection_is_rejected():
    alice, bob = await _connected_peers()
    try:
        with pytest.raises(SessionBusy):
            await alice.connect(bob.peer_id)
        with pytest.raises(InvalidStateError):
            await alice.connect(alice.peer_id)
    finally:
        await _stop(alice, bob)


@pytest.mark.asyncio
async def test_inbound_connection_refused_while_busy():
    exchange = LoopbackExchange()
    alice, bob = await _peers(exchange)
    carol = SessionCoordinator(LoopbackSignaling(exchange))
    await carol.start()
    try:
        await alice.connect(bob.peer_id)
        await wait_until(lambda: alice.connection_state == CONNECTED)

        await carol.connect(alice.peer_id)
        await wait_until(lambda: carol.connection_state == DISCONNECTED)

        assert alice.connection.remote_id == bob.peer_id
        assert alice.connection_state == CONNECTED
    finally:
        await _stop(alice, bob, carol)


@pytest.mark.asyncio
async def test_send_requires_connection_and_idle_session():
    alice, bob = await _peers()
    try:
        with pytest.raises(InvalidStateError):
            await alice.send_outgoing(OutgoingFile(name="a", content=b"abc"))

        await alice.connect(bob.peer_id)
        await wait_until(lambda: alice.connection_state == CONNECTED)

        await alice.send_outgoing(OutgoingFile(name="a", content=b"a" * 500_000))
        with pytest.raises(SessionBusy):
            await alice.send_outgoing(OutgoingFile(name="b", content=b"b"))
        await alice.wait_for_send()
    finally:
        await _stop(alice, bob)


@pytest.mark.asyncio
async def test_closing_mid_transfer_discards_partial_data():
    alice, bob = await _connected_peers()

    async def hang_up_on_first_chunk(event_type, data):
        if event_type == "transfer_progress":
            await bob.disconnect()

    bob.on_event(hang_up_on_first_chunk)
    try:
        session = await alice.send_outgoing(OutgoingFile(name="big", content=b"x" * 1_000_000))
        await alice.wait_for_send()

        assert session.state == TransferState.ABORTED
        assert session.error_message.startswith("File transfer failed")
        await wait_until(lambda: alice.connection_state == DISCONNECTED)

        assert bob.artifact is None
        assert bob.receiver.buffered_bytes == 0
        assert bob.transfer.state == TransferState.ABORTED
        assert bob.last_error.startswith("File transfer failed")
    finally:
        await _stop(alice, bob)


@pytest.mark.asyncio
async def test_empty_file_transfer():
    alice, bob = await _connected_peers()
    try:
        await alice.send_outgoing(OutgoingFile(name="empty.txt", mime_type="text/plain"))
        await alice.wait_for_send()
        await wait_until(lambda: bob.artifact is not None)
        assert bob.artifact.content == b""
        assert bob.transfer.progress_percent == 100
    finally:
        await _stop(alice, bob)


@pytest.mark.asyncio
async def test_new_artifact_releases_the_previous_one():
    alice, bob = await _connected_peers()
    try:
        await alice.send_outgoing(OutgoingFile(name="one", content=b"1"))
        await alice.wait_for_send()
        await wait_until(lambda: bob.artifact is not None)
        first = bob.artifact

        await alice.send_outgoing(OutgoingFile(name="two", content=b"2"))
        await alice.wait_for_send()
        await wait_until(lambda: bob.artifact is not first)

        assert first.released
        assert bob.artifact.content == b"2"
    finally:
        await _stop(alice, bob)


@pytest.mark.asyncio
async def test_discard_and_save_artifact(tmp_path):
    alice, bob = await _connected_peers()
    try:
        await alice.send_outgoing(OutgoingFile(name="notes.txt", content=b"hello"))
        await alice.wait_for_send()
        await wait_until(lambda: bob.artifact is not None)

        saved = await bob.save_artifact(str(tmp_path))
        again = await bob.save_artifact(str(tmp_path))
        assert saved.read_bytes() == b"hello"
        assert again.name == "notes (1).txt"

        artifact = bob.artifact
        assert await bob.discard_artifact() is True
        assert artifact.released
        assert bob.artifact is None
        assert await bob.discard_artifact() is False
        with pytest.raises(InvalidStateError):
            await bob.save_artifact(str(tmp_path))
    finally:
        await _stop(alice, bob)


@pytest.mark.asyncio
async def test_connect_timeout_is_surfaced_once():
    exchange = LoopbackExchange(auto_open=False)
    alice, bob = await _peers(exchange, connect_timeout=0.05)
    events = EventLog()
    alice.on_event(events)
    try:
        await alice.connect(bob.peer_id)
        await asyncio.sleep(0.2)

        assert alice.connection_state == DISCONNECTED
        assert [e["kind"] for e in events.of("error")] == ["ConnectionTimeout"]
        assert "timed out" in alice.last_error
        assert [e["state"] for e in events.of("connection_state")] == ["connecting", "disconnected"]
    finally:
        await _stop(alice, bob)


@pytest.mark.asyncio
async def test_unknown_peer_reports_connection_error():
    alice, bob = await _peers()
    try:
        await alice.connect("ghost-peer-00000000")
        await wait_until(lambda: alice.connection_state == DISCONNECTED)
        assert alice.last_error == "Connection error: Could not connect to peer ghost-peer-00000000"
    finally:
        await _stop(alice, bob)


@pytest.mark.asyncio
async def test_identity_failure_is_surfaced():
    coordinator = SessionCoordinator(LoopbackSignaling(LoopbackExchange(online=False)))

    with pytest.raises(IdentityInitFailure):
        await coordinator.start()
    assert coordinator.peer_id is None
    assert coordinator.last_error.startswith("Failed to initialize connection")


@pytest.mark.asyncio
async def test_restart_allocates_a_fresh_identity():
    exchange = LoopbackExchange()
    coordinator = SessionCoordinator(LoopbackSignaling(exchange))

    first = await coordinator.start()
    await coordinator.stop()
    assert coordinator.peer_id is None
    assert coordinator.snapshot().peer_id is None

    second = await coordinator.start()
    try:
        assert second != first
        assert exchange.peer_ids() == [second]
    finally:
        await coordinator.stop()


@pytest.mark.asyncio
async def test_inbound_dispatch_runs_while_the_sender_pauses():
    alice, bob = await _connected_peers(pace_delay=0.2)
    try:
        await alice.send_outgoing(OutgoingFile(name="paced.bin", content=b"p" * 500_000))

        # The first pause comes after ten chunks; bob drains them meanwhile
        await wait_until(lambda: bob.receiver.buffered_bytes >= 163840, timeout=1.0)
        assert alice.is_transferring
        assert alice.outgoing.transferred_bytes < 500_000

        await alice.wait_for_send()
        await wait_until(lambda: bob.artifact is not None)
        assert bob.artifact.size == 500_000
    finally:
        await _stop(alice, bob)
