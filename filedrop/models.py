import json
import secrets
import string
import time
from enum import Enum
from typing import Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_MIME_TYPE = "application/octet-stream"
ROOM_CODE_LENGTH = 6
ROOM_CODE_ALPHABET = string.ascii_uppercase + string.digits


class EnvelopeType(str, Enum):
    CREATE_ROOM = "create-room"
    JOIN_ROOM = "join-room"
    ROOM_CREATED = "room-created"
    ROOM_JOINED = "room-joined"
    PEER_JOINED = "peer-joined"
    OFFER = "offer"
    ANSWER = "answer"
    ICE_CANDIDATE = "ice-candidate"
    LEAVE_ROOM = "leave-room"
    ERROR = "error"


RELAYED_TYPES = {EnvelopeType.OFFER, EnvelopeType.ANSWER, EnvelopeType.ICE_CANDIDATE}


class Room(BaseModel):
    code: str
    peers: Dict[str, str] = Field(default_factory=dict)  # peer_id -> socket_id
    created_at: float = Field(default_factory=time.time)

    def age(self, now: Optional[float] = None) -> float:
        return (time.time() if now is None else now) - self.created_at


class RoomRequest(BaseModel):
    """create-room / join-room / leave-room as sent by a peer."""
    model_config = ConfigDict(populate_by_name=True)

    type: EnvelopeType
    room_code: str = Field(alias="roomCode", min_length=1)
    peer_id: str = Field(alias="peerId", min_length=1)


class RelayEnvelope(BaseModel):
    type: EnvelopeType
    payload: Dict[str, Any] = Field(default_factory=dict)


class FileMetadata(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["file-metadata"] = "file-metadata"
    name: str = Field(min_length=1)
    size: int = Field(ge=0)
    mime_type: str = Field(default=DEFAULT_MIME_TYPE, alias="mimeType")

    @field_validator("mime_type", mode="before")
    @classmethod
    def default_mime_type(cls, value):
        return value or DEFAULT_MIME_TYPE

    def to_frame(self) -> str:
        return self.model_dump_json(by_alias=True)


class FileComplete(BaseModel):
    type: Literal["file-complete"] = "file-complete"

    def to_frame(self) -> str:
        return self.model_dump_json()


ControlFrame = Union[FileMetadata, FileComplete]


def parse_control_frame(text: str) -> ControlFrame:
    """Parse a text frame from the direct channel.

    Raises ValueError for unparseable JSON, unknown types and invalid
    metadata (pydantic's ValidationError is a ValueError).
    """
    data = json.loads(text)
    if not isinstance(data, dict):
        raise ValueError("control frame is not a JSON object")
    frame_type = data.get("type")
    if frame_type == "file-metadata":
        return FileMetadata.model_validate(data)
    if frame_type == "file-complete":
        return FileComplete()
    raise ValueError(f"unknown control frame type: {frame_type!r}")


def generate_room_code() -> str:
    """Random 6-character uppercase alphanumeric room code."""
    return "".join(secrets.choice(ROOM_CODE_ALPHABET) for _ in range(ROOM_CODE_LENGTH))


# Server -> peer envelopes

def room_created(room_code: str) -> dict:
    return {"type": EnvelopeType.ROOM_CREATED.value, "roomCode": room_code}


def room_joined(room_code: str) -> dict:
    return {"type": EnvelopeType.ROOM_JOINED.value, "roomCode": room_code}


def peer_joined(peer_id: str, room_code: str) -> dict:
    return {"type": EnvelopeType.PEER_JOINED.value, "peerId": peer_id, "roomCode": room_code}


def error_message(message: str) -> dict:
    return {"type": EnvelopeType.ERROR.value, "message": message}
