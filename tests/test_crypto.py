import pytest

from errors import ProtocolViolation
from security.crypto import FrameCipher, derive_link_key, generate_keypair


def _shared_ciphers():
    a_priv, a_pub = generate_keypair()
    b_priv, b_pub = generate_keypair()
    a_key = derive_link_key(a_priv, b_pub)
    b_key = derive_link_key(b_priv, a_pub)
    return a_key, b_key


def test_both_sides_derive_the_same_key():
    a_key, b_key = _shared_ciphers()
    assert a_key == b_key
    assert len(a_key) == 32


def test_sealed_frame_opens_on_the_other_side():
    a_key, b_key = _shared_ciphers()
    sealed = FrameCipher(a_key).seal(b"\x02payload")
    assert b"payload" not in sealed
    assert FrameCipher(b_key).open(sealed) == b"\x02payload"


def test_tampered_frame_is_rejected():
    a_key, b_key = _shared_ciphers()
    sealed = bytearray(FrameCipher(a_key).seal(b"hello"))
    sealed[-1] ^= 0xFF
    with pytest.raises(ProtocolViolation):
        FrameCipher(b_key).open(bytes(sealed))


def test_short_frame_is_rejected():
    a_key, _ = _shared_ciphers()
    with pytest.raises(ProtocolViolation):
        FrameCipher(a_key).open(b"tiny")


def test_bad_public_key_length():
    priv, _ = generate_keypair()
    with pytest.raises(ProtocolViolation):
        derive_link_key(priv, b"\x00" * 16)
