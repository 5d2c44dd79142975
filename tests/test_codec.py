import json
import struct

import pytest

from errors import MalformedMessage
from transfer.codec import (
    FileChunk,
    FileComplete,
    FileStart,
    decode_message,
    encode_message,
)
from transfer.models import FileInfo


def _frame(header: dict, payload: bytes = b"") -> bytes:
    raw = json.dumps(header).encode("utf-8")
    return struct.pack(">I", len(raw)) + raw + payload


def _header(frame: bytes) -> dict:
    (length,) = struct.unpack_from(">I", frame)
    return json.loads(frame[4:4 + length])


def test_file_start_uses_wire_field_names():
    info = FileInfo(name="photo.jpg", size=40000, mime_type="image/jpeg")
    frame = encode_message(FileStart(file_info=info))

    assert _header(frame) == {
        "type": "file-start",
        "fileInfo": {"name": "photo.jpg", "size": 40000, "type": "image/jpeg"},
    }
    decoded = decode_message(frame)
    assert isinstance(decoded, FileStart)
    assert decoded.file_info == info


def test_file_chunk_carries_bytes_as_payload():
    chunk = bytes(range(256)) * 4
    frame = encode_message(FileChunk(index=3, progress=41, chunk=chunk))

    assert _header(frame) == {"type": "file-chunk", "index": 3, "progress": 41}
    assert frame.endswith(chunk)

    decoded = decode_message(frame)
    assert isinstance(decoded, FileChunk)
    assert decoded.chunk == chunk
    assert (decoded.index, decoded.progress) == (3, 41)


def test_file_complete_decodes():
    frame = _frame({"type": "file-complete", "fileInfo": {"name": "a", "size": 0, "type": ""}})
    decoded = decode_message(frame)
    assert isinstance(decoded, FileComplete)
    assert decoded.file_info.size == 0


@pytest.mark.parametrize(
    "frame",
    [
        b"",
        b"\x00\x00",
        struct.pack(">I", 100) + b"{}",
        struct.pack(">I", 3) + b"{{{",
        _frame(["file-start"]),
        _frame({"type": "file-resume"}),
        _frame({"fileInfo": {"name": "a", "size": 1, "type": ""}}),
        _frame({"type": "file-start", "fileInfo": {"name": "a", "size": -1, "type": ""}}),
        _frame({"type": "file-start"}),
        _frame({"type": "file-chunk", "index": 0, "progress": 101}, b"x"),
        _frame({"type": "file-chunk", "index": -1, "progress": 5}, b"x"),
        _frame({"type": "file-complete", "fileInfo": {"name": "a", "size": 1, "type": ""}}, b"extra"),
    ],
)
def test_malformed_frames_are_rejected(frame):
    with pytest.raises(MalformedMessage):
        decode_message(frame)
