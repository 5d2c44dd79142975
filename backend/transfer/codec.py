"""
Transfer protocol message codec.

Every protocol message travels as one transport message:

```
+------------------+---------------------+-------------------+
| header len (4B)  | header (JSON utf-8) | payload (binary)  |
+------------------+---------------------+-------------------+
```

Only ``file-chunk`` messages carry a payload (the chunk bytes). Anything that
does not decode into one of the three message shapes raises
:class:`errors.MalformedMessage`.
"""

import json
import logging
import struct
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from errors import MalformedMessage
from transfer.models import FileInfo

logger = logging.getLogger(__name__)

HEADER_LENGTH_FORMAT = ">I"
HEADER_LENGTH_SIZE = struct.calcsize(HEADER_LENGTH_FORMAT)


class MessageType:
    FILE_START = "file-start"
    FILE_CHUNK = "file-chunk"
    FILE_COMPLETE = "file-complete"


class FileStart(BaseModel):
    """Announces a file; the receiver opens a new transfer session."""
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["file-start"] = MessageType.FILE_START
    file_info: FileInfo = Field(alias="fileInfo")


class FileChunk(BaseModel):
    """One slice of file content."""
    type: Literal["file-chunk"] = MessageType.FILE_CHUNK
    index: int = Field(ge=0)
    progress: int = Field(ge=0, le=100)
    chunk: bytes = b""


class FileComplete(BaseModel):
    """Marks the end of the file; the receiver assembles the artifact."""
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["file-complete"] = MessageType.FILE_COMPLETE
    file_info: FileInfo = Field(alias="fileInfo")


TransferMessage = Annotated[
    Union[FileStart, FileChunk, FileComplete],
    Field(discriminator="type"),
]

_message_adapter: TypeAdapter = TypeAdapter(TransferMessage)


def encode_message(message: FileStart | FileChunk | FileComplete) -> bytes:
    """Serialize a protocol message into a single transport message."""
    if isinstance(message, FileChunk):
        header = {
            "type": message.type,
            "index": message.index,
            "progress": message.progress,
        }
        payload = message.chunk
    else:
        header = message.model_dump(by_alias=True)
        payload = b""

    header_bytes = json.dumps(header, separators=(",", ":")).encode("utf-8")
    return struct.pack(HEADER_LENGTH_FORMAT, len(header_bytes)) + header_bytes + payload


def decode_message(data: bytes) -> FileStart | FileChunk | FileComplete:
    """Parse and validate a transport message."""
    if len(data) < HEADER_LENGTH_SIZE:
        raise MalformedMessage(f"Frame too short: {len(data)} bytes")

    (header_length,) = struct.unpack_from(HEADER_LENGTH_FORMAT, data)
    header_end = HEADER_LENGTH_SIZE + header_length
    if header_end > len(data):
        raise MalformedMessage(
            f"Header length {header_length} exceeds frame size {len(data)}"
        )

    try:
        header = json.loads(data[HEADER_LENGTH_SIZE:header_end].decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise MalformedMessage(f"Unreadable message header: {e}") from e

    if not isinstance(header, dict):
        raise MalformedMessage("Message header is not an object")

    payload = data[header_end:]
    if header.get("type") == MessageType.FILE_CHUNK:
        header["chunk"] = payload
    elif payload:
        raise MalformedMessage(
            f"Unexpected {len(payload)}-byte payload on {header.get('type')!r} message"
        )

    try:
        return _message_adapter.validate_python(header)
    except ValidationError as e:
        raise MalformedMessage(
            f"Invalid {header.get('type')!r} message ({e.error_count()} error(s))"
        ) from e
