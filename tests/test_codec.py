import struct

import pytest
from pydantic import ValidationError

from errors import ProtocolViolation
from protocol.codec import FrameKind, classify, decode, encode, pack_frame
from protocol.models import (
    ControlMessage,
    FileMeta,
    FileRequest,
    ManifestPayload,
    MessageType,
)


def test_control_message_keeps_camel_case_fields():
    msg = ControlMessage.make(MessageType.REQUEST_FILE, FileRequest(file_id="abc"))
    unit = encode(msg)
    assert classify(unit) == FrameKind.CONTROL

    decoded = decode(unit)
    assert decoded.type == MessageType.REQUEST_FILE
    assert decoded.payload == {"fileId": "abc"}
    assert decoded.parse_payload(FileRequest).file_id == "abc"


def test_start_file_carries_mime_type():
    meta = FileMeta(id="f1", name="a.png", size=3, mime_type="image/png")
    decoded = decode(encode(ControlMessage.make(MessageType.START_FILE, meta)))
    assert decoded.payload["mimeType"] == "image/png"
    assert decoded.parse_payload(FileMeta) == meta


def test_message_without_payload():
    decoded = decode(encode(ControlMessage(type=MessageType.NUDGE)))
    assert decoded.type == MessageType.NUDGE
    assert decoded.payload is None


def test_chunk_that_looks_like_json_stays_binary():
    body = b'{"type":"TEXT","payload":{"text":"hi"}}'
    unit = encode(body)
    assert classify(unit) == FrameKind.CHUNK
    assert decode(unit) == body


def test_empty_chunk():
    assert decode(encode(b"")) == b""


def test_encode_rejects_other_types():
    with pytest.raises(TypeError):
        encode("not bytes")


def test_classify_rejects_short_unit():
    with pytest.raises(ProtocolViolation):
        classify(b"\x01\x00")


def test_classify_rejects_unknown_kind():
    with pytest.raises(ProtocolViolation):
        classify(b"\x09\x00\x00\x00\x00")


def test_decode_rejects_length_mismatch():
    unit = struct.pack("!BI", FrameKind.CHUNK, 10) + b"short"
    with pytest.raises(ProtocolViolation):
        decode(unit)


def test_decode_rejects_malformed_json():
    with pytest.raises(ProtocolViolation):
        decode(pack_frame(FrameKind.CONTROL, b"{not json"))


def test_decode_rejects_unknown_message_type():
    with pytest.raises(ProtocolViolation):
        decode(pack_frame(FrameKind.CONTROL, b'{"type":"SELF_DESTRUCT"}'))


def test_file_meta_rejects_negative_size():
    with pytest.raises(ValidationError):
        FileMeta(id="x", name="x", size=-1)


def test_manifest_files_only_when_unlocked():
    with pytest.raises(ValidationError):
        ManifestPayload(locked=True, files=[])
    with pytest.raises(ValidationError):
        ManifestPayload(locked=False)
    assert ManifestPayload(locked=True).to_wire() == {"locked": True}
