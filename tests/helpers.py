"""Shared test helpers: recorders, fake connections and polling."""

import asyncio

from errors import TransferAborted
from session.connection import Connection
from transport.memory import memory_pair


async def wait_until(predicate, timeout: float = 2.0, interval: float = 0.002) -> None:
    """Poll ``predicate`` until it is true or fail after ``timeout`` seconds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)


class Recorder:
    """Collects everything a Connection reports through its callbacks."""

    def __init__(self) -> None:
        self.states = []
        self.messages = []
        self.errors = []

    async def on_state_change(self, connection) -> None:
        self.states.append(connection.state)

    async def on_message(self, message) -> None:
        self.messages.append(message)

    async def on_error(self, error) -> None:
        self.errors.append(error)

    def connection(self, timeout: float = 1.0) -> Connection:
        return Connection(
            on_state_change=self.on_state_change,
            on_message=self.on_message,
            on_error=self.on_error,
            timeout=timeout,
        )


class EventLog:
    """Collects coordinator events."""

    def __init__(self) -> None:
        self.events: list[tuple[str, dict]] = []

    async def __call__(self, event_type: str, data: dict) -> None:
        self.events.append((event_type, data))

    def of(self, event_type: str) -> list[dict]:
        return [data for kind, data in self.events if kind == event_type]


class FakeConnection:
    """Stands in for an open Connection; records sent messages.

    With ``drop_after`` set, the link goes down once that many messages
    have been sent.
    """

    def __init__(self, drop_after: int | None = None) -> None:
        self.sent = []
        self.is_connected = True
        self._drop_after = drop_after

    async def send(self, message) -> None:
        if not self.is_connected:
            raise TransferAborted("Connection lost during transfer")
        self.sent.append(message)
        if self._drop_after is not None and len(self.sent) >= self._drop_after:
            self.is_connected = False


async def open_connection_pair(timeout: float = 1.0):
    """Two Connections linked by an in-memory transport, both connected."""
    alice_log, bob_log = Recorder(), Recorder()
    alice, bob = alice_log.connection(timeout), bob_log.connection(timeout)
    alice_end, bob_end = memory_pair("alice", "bob")
    await alice.accept(alice_end)
    await bob.accept(bob_end)
    await alice_end.open()
    await wait_until(lambda: alice.is_connected and bob.is_connected)
    return alice, bob, alice_log, bob_log
