"""
Frame encryption for the TCP transport: X25519 key agreement + AES-256-GCM.

Keys are ephemeral (per connection) and never persisted. Each direction
uses its own nonce prefix and a frame counter, so a frame that arrives out
of order, twice, or not at all makes the next decryption fail.
"""

import logging
import struct

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.asymmetric.x25519 import (
    X25519PrivateKey,
    X25519PublicKey,
)
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.hashes import SHA256
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    PublicFormat,
)

logger = logging.getLogger(__name__)

# AES-256 key size
KEY_SIZE = 32
HKDF_INFO = b"peerdrop-v1-channel-key"

DIALER_PREFIX = b"\x00\x00\x00\x01"
LISTENER_PREFIX = b"\x00\x00\x00\x02"


class FrameOrderError(ConnectionError):
    """A frame failed authentication; it was tampered with or reordered."""


def generate_keypair() -> tuple[X25519PrivateKey, bytes]:
    """
    Generate an ephemeral X25519 keypair.

    Returns:
        (private_key, public_key_bytes) where public_key_bytes
        is 32 bytes suitable for transmission.
    """
    private_key = X25519PrivateKey.generate()
    public_bytes = private_key.public_key().public_bytes(
        encoding=Encoding.Raw,
        format=PublicFormat.Raw,
    )
    return private_key, public_bytes


def derive_shared_key(
    private_key: X25519PrivateKey,
    peer_public_bytes: bytes,
    salt: bytes | None = None,
) -> bytes:
    """Derive the 32-byte channel key from the ECDH shared secret."""
    peer_public_key = X25519PublicKey.from_public_bytes(peer_public_bytes)
    shared_secret = private_key.exchange(peer_public_key)
    return HKDF(
        algorithm=SHA256(),
        length=KEY_SIZE,
        salt=salt,
        info=HKDF_INFO,
    ).derive(shared_secret)


class FrameCipher:
    """Seals outbound frames and opens inbound ones for one connection."""

    def __init__(self, key: bytes, dialer: bool) -> None:
        self._aead = AESGCM(key)
        self._send_prefix = DIALER_PREFIX if dialer else LISTENER_PREFIX
        self._recv_prefix = LISTENER_PREFIX if dialer else DIALER_PREFIX
        self._send_counter = 0
        self._recv_counter = 0

    @classmethod
    def negotiate(
        cls,
        private_key: X25519PrivateKey,
        peer_public_bytes: bytes,
        dialer: bool,
        salt: bytes | None = None,
    ) -> "FrameCipher":
        return cls(derive_shared_key(private_key, peer_public_bytes, salt), dialer)

    @staticmethod
    def _nonce(prefix: bytes, counter: int) -> bytes:
        return prefix + struct.pack("!Q", counter)

    def seal(self, plaintext: bytes) -> bytes:
        nonce = self._nonce(self._send_prefix, self._send_counter)
        self._send_counter += 1
        return self._aead.encrypt(nonce, plaintext, None)

    def open(self, ciphertext: bytes) -> bytes:
        nonce = self._nonce(self._recv_prefix, self._recv_counter)
        try:
            plaintext = self._aead.decrypt(nonce, ciphertext, None)
        except InvalidTag as e:
            raise FrameOrderError(
                f"Frame {self._recv_counter} failed authentication"
            ) from e
        self._recv_counter += 1
        return plaintext
