"""Pydantic models for file transfer."""

import uuid
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class TransferState(str, Enum):
    """All possible states for a file transfer."""
    IDLE = "idle"
    ACTIVE = "active"
    COMPLETED = "completed"
    ABORTED = "aborted"


class TransferDirection(str, Enum):
    SENDING = "sending"
    RECEIVING = "receiving"


class FileInfo(BaseModel):
    """File metadata carried by the start and complete messages."""
    model_config = ConfigDict(populate_by_name=True)

    name: str
    size: int = Field(ge=0)
    mime_type: str = Field(default="application/octet-stream", alias="type")


class TransferSession(BaseModel):
    """One side's view of a single file transfer, exposed to the frontend."""
    direction: TransferDirection
    state: TransferState = TransferState.IDLE
    file_name: str = ""
    file_size: int = 0
    mime_type: str = ""
    transferred_bytes: int = 0
    progress_percent: int = 0
    error_message: str | None = None

    @property
    def is_active(self) -> bool:
        return self.state == TransferState.ACTIVE

    def begin(self, info: FileInfo) -> None:
        self.file_name = info.name
        self.file_size = info.size
        self.mime_type = info.mime_type
        self.transferred_bytes = 0
        self.progress_percent = 0
        self.error_message = None
        self.state = TransferState.ACTIVE

    def advance(self, byte_count: int, progress: int) -> None:
        """Record newly moved bytes; progress never goes backwards."""
        self.transferred_bytes += byte_count
        self.progress_percent = max(self.progress_percent, min(progress, 100))

    def complete(self) -> None:
        self.progress_percent = 100
        self.state = TransferState.COMPLETED

    def abort(self, message: str) -> None:
        self.error_message = message
        self.state = TransferState.ABORTED


class OutgoingFile(BaseModel):
    """A file loaded into memory, ready to be sent."""
    name: str
    mime_type: str = "application/octet-stream"
    content: bytes = b""

    @property
    def size(self) -> int:
        return len(self.content)

    def info(self) -> FileInfo:
        return FileInfo(name=self.name, size=self.size, mime_type=self.mime_type)


class ArtifactInfo(BaseModel):
    """Public description of a received file."""
    name: str
    size: int
    mime_type: str
    token: str


class ReceivedArtifact:
    """A fully received file held in memory until the user discards it.

    The content and its download token are the backing resource; both are
    released by :meth:`discard`, which may be called any number of times.
    """

    def __init__(self, name: str, size: int, mime_type: str, content: bytes) -> None:
        self.name = name
        self.size = size
        self.mime_type = mime_type
        self._content: bytes | None = content
        self._token: str | None = uuid.uuid4().hex

    @property
    def content(self) -> bytes | None:
        return self._content

    @property
    def token(self) -> str | None:
        return self._token

    @property
    def released(self) -> bool:
        return self._content is None

    def discard(self) -> bool:
        """Release the content. Returns False if it was already released."""
        if self._content is None:
            return False
        self._content = None
        self._token = None
        return True

    def info(self) -> ArtifactInfo | None:
        if self._token is None:
            return None
        return ArtifactInfo(
            name=self.name,
            size=self.size,
            mime_type=self.mime_type,
            token=self._token,
        )
