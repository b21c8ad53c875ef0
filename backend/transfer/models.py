"""Pydantic models for file transfer."""

import mimetypes
import os
import time
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from config import DEFAULT_MIME_TYPE


class TransferState(str, Enum):
    """All possible states for a transfer session."""
    AWAITING_ACCEPTANCE = "awaiting_acceptance"
    REJECTED = "rejected"
    CONNECTING = "connecting"
    TRANSFERRING = "transferring"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


FINISHED_STATES = frozenset({
    TransferState.REJECTED,
    TransferState.COMPLETED,
    TransferState.FAILED,
    TransferState.CANCELLED,
})


class TransferDirection(str, Enum):
    SENDING = "sending"
    RECEIVING = "receiving"


class FileEntry(BaseModel):
    """One file of a transfer plan."""
    model_config = ConfigDict(frozen=True)

    name: str
    size: int
    mime_type: str = DEFAULT_MIME_TYPE
    path: str | None = Field(default=None, exclude=True)

    @classmethod
    def from_path(cls, path: str) -> "FileEntry":
        mime_type, _ = mimetypes.guess_type(path)
        return cls(
            name=os.path.basename(path),
            size=os.path.getsize(path),
            mime_type=mime_type or DEFAULT_MIME_TYPE,
            path=path,
        )


class OfferSummary(BaseModel):
    """What an offer tells the receiver about the files before consent."""
    model_config = ConfigDict(populate_by_name=True)

    file_name: str = Field(default="", alias="fileName")
    file_size: int = Field(default=0, alias="fileSize")
    file_type: str = Field(default="", alias="fileType")
    file_count: int = Field(default=0, alias="fileCount")


class FileTransferPlan(BaseModel):
    """The ordered, immutable list of files offered in one session."""
    model_config = ConfigDict(frozen=True)

    files: tuple[FileEntry, ...] = ()

    @classmethod
    def from_paths(cls, paths: list[str]) -> "FileTransferPlan":
        return cls(files=tuple(FileEntry.from_path(p) for p in paths))

    @property
    def total_bytes(self) -> int:
        return sum(f.size for f in self.files)

    def summary(self) -> OfferSummary:
        return OfferSummary(
            file_name=", ".join(f.name for f in self.files),
            file_size=self.total_bytes,
            file_type=", ".join(f.mime_type or DEFAULT_MIME_TYPE for f in self.files),
            file_count=len(self.files),
        )


class TransferProgress(BaseModel):
    """Running byte count for the current session."""
    transferred_bytes: int = 0
    total_bytes: int = 0
    start_time: float = 0.0

    def reset(self, total_bytes: int = 0) -> None:
        self.transferred_bytes = 0
        self.total_bytes = total_bytes
        self.start_time = time.monotonic() if total_bytes else 0.0

    def advance(self, byte_count: int) -> None:
        if not self.start_time:
            self.start_time = time.monotonic()
        self.transferred_bytes += byte_count

    @property
    def percent(self) -> float:
        if self.total_bytes <= 0:
            return 0.0
        return min(100.0, self.transferred_bytes / self.total_bytes * 100)

    @property
    def speed_bps(self) -> float:
        """Average speed since the session started, in bytes/sec."""
        if not self.start_time:
            return 0.0
        elapsed = time.monotonic() - self.start_time
        if elapsed <= 0:
            return 0.0
        return self.transferred_bytes / elapsed


class TransferInfo(BaseModel):
    """State of the current transfer session, exposed to the frontend."""
    transfer_id: str
    direction: TransferDirection
    state: TransferState
    peer_device_id: str
    peer_device_name: str
    file_names: str = ""
    file_count: int = 0
    total_bytes: int = 0
    transferred_bytes: int = 0
    progress_percent: float = 0.0
    speed_bps: float = 0.0
    error_message: str | None = None


class TransferRequest(BaseModel):
    """API body for initiating a transfer."""
    file_paths: list[str]
    peer_id: str | None = None


# --- Peer-channel frame types ---

class FrameType:
    FILE_START = "file-start"
    FILE_END = "file-end"
    TRANSFER_COMPLETE = "transfer-complete"


class FileStartFrame(BaseModel):
    """Metadata sent before the chunks of each file."""
    model_config = ConfigDict(populate_by_name=True)

    type: str = FrameType.FILE_START
    name: str
    size: int
    mime_type: str = Field(default=DEFAULT_MIME_TYPE, alias="mimeType")
    index: int
    total: int


class ReceivedFile(BaseModel):
    """A fully reassembled file, ready for the save sink."""
    name: str
    mime_type: str
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)
