"""Exceptions raised by the connection and transfer layers."""


class PeerDropError(Exception):
    """Base class for every error surfaced to the user."""


class IdentityInitFailure(PeerDropError):
    """The signaling service could not allocate a local peer identity."""


class ConnectionTimeout(PeerDropError):
    """The connection did not open before the connect timeout elapsed."""


class PeerConnectionError(PeerDropError):
    """The transport reported a fault on an open or opening connection."""


class PeerUnavailable(PeerDropError):
    """The signaling service does not know how to reach the remote peer."""


class TransferAborted(PeerDropError):
    """A transfer ended before completion; no artifact is produced."""


class MalformedMessage(PeerDropError):
    """A transport message is not a valid transfer protocol message."""


class InvalidStateError(PeerDropError):
    """An operation was requested from a state that does not allow it."""


class SessionBusy(PeerDropError):
    """A connection or transfer is already in progress."""
