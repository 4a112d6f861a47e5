"""Pydantic models for host and guest sessions."""

import time
import uuid
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, Field, field_validator

from config import CHUNK_SIZE
from protocol.models import FileMeta


class SessionConfig(BaseModel):
    """Host-side limits consulted by the gate and the quota checks."""
    expires_at: float | None = None  # Unix timestamp
    max_downloads: int | None = Field(default=None, ge=1)  # None = unlimited
    password: str | None = None
    chunk_size: int = Field(default=CHUNK_SIZE, gt=0)

    @field_validator("password")
    @classmethod
    def _blank_means_none(cls, value: str | None) -> str | None:
        return value or None


class ExpiryReason(str, Enum):
    TIME = "time"
    LIMIT = "limit"
    USER = "user"


class HostedFile(BaseModel):
    """A file offered by the host, with its download statistics."""
    meta: FileMeta
    path: Path
    downloads: int = 0
    last_downloaded_at: float | None = None
    added_at: float = Field(default_factory=time.time)


class ChatSender(str, Enum):
    SELF = "self"
    PEER = "peer"


class ChatMessage(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:10])
    text: str
    sender: ChatSender
    timestamp: float = Field(default_factory=time.time)
    connection_id: str | None = None


class DownloadStatus(str, Enum):
    """Guest-side view of one catalogue entry."""
    IDLE = "idle"
    PENDING = "pending"
    DOWNLOADING = "downloading"
    COMPLETED = "completed"
    FAILED = "failed"


class DownloadState(BaseModel):
    status: DownloadStatus = DownloadStatus.IDLE
    progress_percent: float = 0.0
    speed_bps: float = 0.0
    eta_seconds: float = 0.0
    saved_path: str | None = None
    error_message: str | None = None
