"""
Wire framing for control messages and file chunks.

Every unit is a kind byte, a 4-byte big-endian body length and the body.
Control bodies are UTF-8 JSON; chunk bodies are opaque bytes and are
never parsed. Classification depends only on the kind byte.
"""

import json
import struct
from enum import IntEnum

from pydantic import ValidationError

from errors import ProtocolViolation
from protocol.models import ControlMessage

HEADER_FORMAT = "!BI"  # 1-byte kind + 4-byte length (big-endian)
HEADER_SIZE = struct.calcsize(HEADER_FORMAT)

# Either a structured control message or a raw file chunk
Payload = ControlMessage | bytes


class FrameKind(IntEnum):
    CONTROL = 0x01
    CHUNK = 0x02


def pack_frame(kind: FrameKind, body: bytes) -> bytes:
    """Prefix a body with its kind and length."""
    return struct.pack(HEADER_FORMAT, kind, len(body)) + body


def encode(payload: Payload) -> bytes:
    """Frame a control message or a binary chunk for the wire."""
    if isinstance(payload, ControlMessage):
        body = json.dumps(
            payload.model_dump(mode="json", exclude_none=True),
            separators=(",", ":"),
        ).encode("utf-8")
        return pack_frame(FrameKind.CONTROL, body)
    if isinstance(payload, (bytes, bytearray, memoryview)):
        return pack_frame(FrameKind.CHUNK, bytes(payload))
    raise TypeError(f"Cannot frame {type(payload).__name__}")


def classify(unit: bytes) -> FrameKind:
    """Return the kind of a framed unit without touching its body."""
    if len(unit) < HEADER_SIZE:
        raise ProtocolViolation(f"Unit too short: {len(unit)} bytes")
    try:
        return FrameKind(unit[0])
    except ValueError:
        raise ProtocolViolation(f"Unknown frame kind {unit[0]:#x}") from None


def decode(unit: bytes) -> Payload:
    """Parse a framed unit into a ControlMessage or the raw chunk bytes."""
    kind = classify(unit)
    _, length = struct.unpack_from(HEADER_FORMAT, unit)
    body = unit[HEADER_SIZE:]
    if len(body) != length:
        raise ProtocolViolation(
            f"Length mismatch: header says {length}, got {len(body)}"
        )

    if kind == FrameKind.CHUNK:
        return bytes(body)

    try:
        return ControlMessage.model_validate(json.loads(body.decode("utf-8")))
    except (UnicodeDecodeError, json.JSONDecodeError, ValidationError) as e:
        raise ProtocolViolation(f"Malformed control message: {e}") from e
