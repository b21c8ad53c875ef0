"""Pydantic models for the signaling relay."""

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Platform(str, Enum):
    """Device icon derived by the relay from the client's user agent."""
    IPHONE = "iphone"
    IPAD = "ipad"
    MAC = "mac"
    WINDOWS = "windows"
    ANDROID = "android"
    LINUX = "linux"
    UNKNOWN = "unknown"


class DeviceIdentity(BaseModel):
    """A device registered with the relay."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    id: str
    name: str
    icon: Platform
    connection: Any = Field(exclude=True)

    def presence(self) -> "PresenceEntry":
        return PresenceEntry(id=self.id, name=self.name, icon=self.icon)


class PresenceEntry(BaseModel):
    """One row of the device list sent to clients."""
    id: str
    name: str
    icon: Platform
    online: bool = True


# --- Wire protocol message types ---

class MessageType:
    REGISTER = "register"
    REGISTERED = "registered"
    DEVICES = "devices"
    OFFER = "offer"
    ANSWER = "answer"
    ICE_CANDIDATE = "ice-candidate"
    TRANSFER_ACCEPT = "transfer-accept"
    TRANSFER_REJECT = "transfer-reject"
    PING = "ping"
    PONG = "pong"


SIGNALING_TYPES = frozenset({
    MessageType.OFFER,
    MessageType.ANSWER,
    MessageType.ICE_CANDIDATE,
})
RESPONSE_TYPES = frozenset({
    MessageType.TRANSFER_ACCEPT,
    MessageType.TRANSFER_REJECT,
})


class InboundMessage(BaseModel):
    """Any JSON message a client sends to the relay."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    type: str
    name: str | None = None
    target: str | None = None
    data: Any = None
    file_name: str | None = Field(default=None, alias="fileName")
    file_size: int | None = Field(default=None, alias="fileSize")
    file_type: str | None = Field(default=None, alias="fileType")
    file_count: int | None = Field(default=None, alias="fileCount")

    @field_validator("name", mode="before")
    @classmethod
    def _name_as_text(cls, v):
        # Clients may send any JSON value; the registry applies the fallback.
        if v is None or isinstance(v, str):
            return v
        return str(v)


class SignalingEnvelope(BaseModel):
    """A message in flight between two devices.

    ``sender`` is always filled in by the relay from the sending connection;
    ``payload`` is forwarded without inspection.
    """
    model_config = ConfigDict(populate_by_name=True)

    type: str
    sender: str | None = Field(default=None, alias="from")
    target: str
    payload: Any = Field(default=None, alias="data")
    file_name: str | None = Field(default=None, alias="fileName")
    file_size: int | None = Field(default=None, alias="fileSize")
    file_type: str | None = Field(default=None, alias="fileType")
    file_count: int | None = Field(default=None, alias="fileCount")

    @classmethod
    def from_inbound(cls, message: InboundMessage) -> "SignalingEnvelope":
        return cls(
            type=message.type,
            target=message.target,
            data=message.data,
            fileName=message.file_name,
            fileSize=message.file_size,
            fileType=message.file_type,
            fileCount=message.file_count,
        )

    def to_wire(self) -> dict:
        """Serialize for the target device (the target itself is implied)."""
        if self.type in RESPONSE_TYPES:
            return {"type": self.type, "from": self.sender}
        message = {"type": self.type, "from": self.sender, "data": self.payload}
        # Transfer-size metadata only rides along with offers.
        extra = {
            "fileName": self.file_name,
            "fileSize": self.file_size,
            "fileType": self.file_type,
            "fileCount": self.file_count,
        }
        message.update({k: v for k, v in extra.items() if v is not None})
        return message
