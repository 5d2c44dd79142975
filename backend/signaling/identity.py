"""
Identity Service for generating ephemeral peer identities.
"""

import logging
import random
import uuid

logger = logging.getLogger(__name__)

ADJECTIVES = [
    "neon", "cosmic", "turbo", "silent", "electric", "quantum",
    "hidden", "mystic", "clever", "swift", "brave", "pixel",
    "sneaky", "bold", "lucky", "happy", "fierce", "calm"
]

ANIMALS = [
    "fox", "panda", "gopher", "bear", "snail", "owl",
    "wolf", "tiger", "hawk", "dolphin", "penguin", "falcon",
    "eagle", "lion", "shark", "whale", "octopus", "duck"
]


def generate_peer_id() -> str:
    """A short id that is easy to read out and type, e.g. ``swift-fox-3fa2c19b``."""
    return f"{random.choice(ADJECTIVES)}-{random.choice(ANIMALS)}-{uuid.uuid4().hex[:8]}"


class IdentityService:
    """Holds the peer id for the current process session.

    The id is assigned once and never changes; after :meth:`retire` a new
    call to :meth:`allocate` produces a fresh id rather than the old one.
    """

    def __init__(self) -> None:
        self.peer_id: str | None = None
        self._retired: set[str] = set()

    def allocate(self) -> str:
        if self.peer_id is None:
            peer_id = generate_peer_id()
            while peer_id in self._retired:
                peer_id = generate_peer_id()
            self.peer_id = peer_id
            logger.info(f"Allocated peer id: {self.peer_id}")
        return self.peer_id

    def retire(self) -> None:
        if self.peer_id is not None:
            self._retired.add(self.peer_id)
            self.peer_id = None
