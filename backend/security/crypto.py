"""
Link encryption: X25519 key agreement + AES-256-GCM per frame.

Keys are ephemeral (one pair per link) and never persisted.
"""

import os
import logging

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.asymmetric.x25519 import (
    X25519PrivateKey,
    X25519PublicKey,
)
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.hashes import SHA256
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    PublicFormat,
)

from errors import ProtocolViolation

logger = logging.getLogger(__name__)

# AES-256-GCM nonce size (12 bytes recommended)
NONCE_SIZE = 12
# AES-256 key size
KEY_SIZE = 32
# Raw X25519 public key size
PUBLIC_KEY_SIZE = 32

LINK_KEY_INFO = b"peershare-v1-link-key"


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


def derive_link_key(
    private_key: X25519PrivateKey,
    peer_public_bytes: bytes,
) -> bytes:
    """Derive the 32-byte AES-256 link key from the ECDH shared secret."""
    if len(peer_public_bytes) != PUBLIC_KEY_SIZE:
        raise ProtocolViolation(
            f"Bad public key length: {len(peer_public_bytes)}"
        )
    peer_public_key = X25519PublicKey.from_public_bytes(peer_public_bytes)
    shared_secret = private_key.exchange(peer_public_key)

    return HKDF(
        algorithm=SHA256(),
        length=KEY_SIZE,
        salt=None,
        info=LINK_KEY_INFO,
    ).derive(shared_secret)


class FrameCipher:
    """Seals and opens whole wire units with one link key."""

    def __init__(self, key: bytes) -> None:
        self._aesgcm = AESGCM(key)

    def seal(self, plaintext: bytes) -> bytes:
        """Returns: nonce (12 bytes) || ciphertext || tag (16 bytes)"""
        nonce = os.urandom(NONCE_SIZE)
        return nonce + self._aesgcm.encrypt(nonce, plaintext, None)

    def open(self, sealed: bytes) -> bytes:
        if len(sealed) < NONCE_SIZE:
            raise ProtocolViolation("Sealed frame shorter than its nonce")
        try:
            return self._aesgcm.decrypt(sealed[:NONCE_SIZE], sealed[NONCE_SIZE:], None)
        except InvalidTag as e:
            raise ProtocolViolation("Frame failed authentication") from e
