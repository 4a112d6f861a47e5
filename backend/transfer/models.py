"""Pydantic models for file transfers."""

from enum import Enum
from pathlib import Path

from pydantic import BaseModel

from protocol.models import FileMeta


class TransferStatus(str, Enum):
    """All possible states for a file transfer."""
    STARTING = "starting"
    TRANSFERRING = "transferring"
    COMPLETED = "completed"
    FAILED = "failed"


class TransferDirection(str, Enum):
    SENDING = "sending"
    RECEIVING = "receiving"


class TransferState(BaseModel):
    """Progress of one file over one connection, exposed to the view layer."""
    connection_id: str
    file_id: str
    file_name: str
    direction: TransferDirection
    expected_size: int
    bytes_transferred: int = 0
    status: TransferStatus = TransferStatus.STARTING
    speed_bps: float = 0.0
    progress_percent: float = 0.0
    eta_seconds: float = 0.0
    error_message: str | None = None

    @property
    def active(self) -> bool:
        return self.status in (TransferStatus.STARTING, TransferStatus.TRANSFERRING)

    def fail(self, reason: str) -> None:
        self.status = TransferStatus.FAILED
        self.error_message = reason
        self.speed_bps = 0.0
        self.eta_seconds = 0.0

    def complete(self) -> None:
        self.status = TransferStatus.COMPLETED
        self.progress_percent = 100.0
        self.speed_bps = 0.0
        self.eta_seconds = 0.0


class CompletedFile(BaseModel):
    """A fully reassembled file, tagged with its declared MIME type."""
    meta: FileMeta
    data: bytes
    path: Path | None = None

    @property
    def mime_type(self) -> str:
        return self.meta.mime_type
