"""Pydantic models for the control protocol spoken between host and guest."""

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from config import DEFAULT_MIME_TYPE


class MessageType(str, Enum):
    """Every control message understood by either role."""
    MANIFEST = "MANIFEST"
    REQUEST_FILE = "REQUEST_FILE"
    START_FILE = "START_FILE"
    END_FILE = "END_FILE"
    VERIFY_PASSWORD = "VERIFY_PASSWORD"
    PASSWORD_CORRECT = "PASSWORD_CORRECT"
    PASSWORD_INCORRECT = "PASSWORD_INCORRECT"
    TEXT = "TEXT"
    PING = "PING"
    PONG = "PONG"
    NUDGE = "NUDGE"
    ERROR = "ERROR"


class WireModel(BaseModel):
    """Base for payloads whose wire names are camelCase."""
    model_config = ConfigDict(populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class FileMeta(WireModel):
    """Catalogue entry for one hosted file. Also the START_FILE payload."""
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    id: str
    name: str
    size: int = Field(ge=0)
    mime_type: str = Field(default=DEFAULT_MIME_TYPE, alias="mimeType")


class ManifestPayload(WireModel):
    """The catalogue as seen by one connection; `files` only when unlocked."""
    locked: bool
    files: list[FileMeta] | None = None

    @model_validator(mode="after")
    def _files_iff_unlocked(self) -> "ManifestPayload":
        if self.locked and self.files is not None:
            raise ValueError("a locked manifest must not carry files")
        if not self.locked and self.files is None:
            raise ValueError("an unlocked manifest must carry files")
        return self


class FileRequest(WireModel):
    file_id: str = Field(alias="fileId")


class FileEnd(WireModel):
    file_id: str = Field(alias="fileId")


class PasswordAttempt(WireModel):
    password: str


class TextPayload(WireModel):
    text: str


class PingPayload(WireModel):
    ts: int  # milliseconds since the epoch, echoed back untouched


class ErrorPayload(WireModel):
    message: str
    code: str | None = None
    file_id: str | None = Field(default=None, alias="fileId")


class ControlMessage(BaseModel):
    """A structured (non-binary) unit on the wire."""
    type: MessageType
    payload: dict[str, Any] | None = None

    @classmethod
    def make(
        cls, msg_type: MessageType, payload: WireModel | dict | None = None
    ) -> "ControlMessage":
        if isinstance(payload, WireModel):
            payload = payload.to_wire()
        return cls(type=msg_type, payload=payload)

    def parse_payload(self, model: type[WireModel]) -> WireModel:
        """Validate the payload against the model for this message type."""
        return model.model_validate(self.payload or {})


# Payload model for every message type that carries one
PAYLOAD_MODELS: dict[MessageType, type[WireModel]] = {
    MessageType.MANIFEST: ManifestPayload,
    MessageType.REQUEST_FILE: FileRequest,
    MessageType.START_FILE: FileMeta,
    MessageType.END_FILE: FileEnd,
    MessageType.VERIFY_PASSWORD: PasswordAttempt,
    MessageType.TEXT: TextPayload,
    MessageType.PING: PingPayload,
    MessageType.PONG: PingPayload,
    MessageType.ERROR: ErrorPayload,
}
