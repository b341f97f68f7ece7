"""Data models and event schemas for the chat relay.

This module defines:
    - The stored data model (ThreadKey, ConversationThread, Message)
    - Inbound WebSocket events as a tagged union discriminated on ``type``
    - Outbound WebSocket events

Inbound events are parsed with :func:`parse_event`, which turns any
validation failure into :class:`~chatrelay.errors.MalformedEvent` before the
relay touches the store.

Wire format:
    Inbound:
        {"type": "joinRoom", "roomId": "general"}
        {"type": "privateMessage", "to": "bob", "text": "hey"}
        {"type": "roomMessage", "roomId": "general", "audioUrl": "/uploads/audio/1.wav"}
    Outbound:
        {"type": "presenceChanged", "username": "alice", "status": "online"}
        {"type": "privateMessageDelivered", "from": "alice", "text": "hey", ...}
        {"type": "roomMessageDelivered", "roomId": "general", "username": "alice", ...}
"""
import json
import time
import uuid
from enum import Enum
from typing import Annotated, Any, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

from chatrelay.errors import MalformedEvent


# =============================================================================
# Enums
# =============================================================================


class PresenceStatus(str, Enum):
    """Whether a user currently has a live connection."""
    ONLINE = "online"
    OFFLINE = "offline"


class ThreadKind(str, Enum):
    """Kind of conversation thread.

    Attributes:
        ROOM: History of a room, keyed by room id.
        DIRECT: History between two users, keyed by the unordered username pair.
    """
    ROOM = "room"
    DIRECT = "direct"


# =============================================================================
# Stored data model
# =============================================================================


class ThreadKey(BaseModel):
    """Identity of a conversation thread.

    Direct keys store the pair sorted, so ``ThreadKey.direct("a", "b")`` and
    ``ThreadKey.direct("b", "a")`` are equal and map to the same stored thread.
    """
    model_config = ConfigDict(frozen=True)

    kind: ThreadKind
    roomId: Optional[str] = None
    users: Optional[tuple] = None

    @classmethod
    def room(cls, room_id: str) -> "ThreadKey":
        return cls(kind=ThreadKind.ROOM, roomId=room_id)

    @classmethod
    def direct(cls, user_a: str, user_b: str) -> "ThreadKey":
        return cls(kind=ThreadKind.DIRECT, users=tuple(sorted((user_a, user_b))))

    @property
    def value(self) -> str:
        """Stable string form used as the unique key in storage."""
        if self.kind == ThreadKind.ROOM:
            return f"room:{self.roomId}"
        # JSON keeps the pair unambiguous whatever characters the names contain
        return "direct:" + json.dumps(list(self.users))


class ConversationThread(BaseModel):
    """A durable, append-only message history for one room or one user pair.

    Attributes:
        id: Store-assigned thread identifier.
        kind: Room or direct thread.
        roomId: Room id (room threads only).
        users: Sorted username pair (direct threads only).
        createdAt: Unix timestamp of thread creation.
    """
    id: str = Field(..., description="Thread ID")
    kind: ThreadKind = Field(..., description="room or direct")
    roomId: Optional[str] = Field(default=None, description="Room ID for room threads")
    users: Optional[List[str]] = Field(default=None, description="Sorted user pair for direct threads")
    createdAt: float = Field(default_factory=time.time, description="Creation time (seconds since epoch)")


class Message(BaseModel):
    """A single stored chat message.

    The timestamp is assigned by the relay at receipt time; clients never
    supply it. ``seq`` is the 1-based position inside the thread and is
    assigned by the store on append.

    Attributes:
        id: Unique message identifier (auto-generated UUID).
        username: Sender's handshake username.
        text: Message text; empty string for media-only messages.
        audioUrl: Optional reference to an uploaded audio clip.
        videoUrl: Optional reference to an uploaded video clip.
        seen: Read flag, always False when relayed.
        timestamp: Server receipt time in seconds since epoch.
        seq: Position in the thread (None until persisted).
    """
    id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        description="Unique message ID"
    )
    username: str = Field(..., description="Sender username")
    text: str = Field(default="", description="Message text (may be empty)")
    audioUrl: Optional[str] = Field(default=None, description="Audio reference")
    videoUrl: Optional[str] = Field(default=None, description="Video reference")
    seen: bool = Field(default=False, description="Read flag")
    timestamp: float = Field(
        default_factory=time.time,
        description="Timestamp in seconds since epoch"
    )
    seq: Optional[int] = Field(default=None, description="Position within the thread")


# =============================================================================
# Inbound events
# =============================================================================


class _MessageBody(BaseModel):
    """Content fields shared by private and room messages."""
    text: Optional[str] = None
    audioUrl: Optional[str] = None
    videoUrl: Optional[str] = None

    @field_validator("audioUrl", "videoUrl")
    @classmethod
    def _blank_reference_is_absent(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not v.strip():
            return None
        return v


class JoinRoomEvent(BaseModel):
    type: Literal["joinRoom"]
    roomId: str = Field(..., min_length=1)


class PrivateMessageEvent(_MessageBody):
    type: Literal["privateMessage"]
    to: str = Field(..., min_length=1, description="Recipient username")


class RoomMessageEvent(_MessageBody):
    type: Literal["roomMessage"]
    roomId: Optional[str] = Field(default=None, description="Target room; defaults to current room")


InboundEvent = Annotated[
    Union[JoinRoomEvent, PrivateMessageEvent, RoomMessageEvent],
    Field(discriminator="type"),
]

_inbound_adapter = TypeAdapter(InboundEvent)


def parse_event(data: Any) -> Union[JoinRoomEvent, PrivateMessageEvent, RoomMessageEvent]:
    """Validate a decoded JSON frame into one of the inbound event types.

    Raises:
        MalformedEvent: If the frame is not an object, has an unknown
            ``type``, or is missing required fields.
    """
    if not isinstance(data, dict):
        raise MalformedEvent("Event must be a JSON object")
    try:
        return _inbound_adapter.validate_python(data)
    except ValidationError as exc:
        errors = exc.errors()
        first = errors[0] if errors else {}
        location = ".".join(str(part) for part in first.get("loc", ()))
        detail = first.get("msg", "invalid event")
        raise MalformedEvent(f"Invalid event: {location}: {detail}" if location else f"Invalid event: {detail}") from exc


# =============================================================================
# Outbound events
# =============================================================================


class ConnectedEvent(BaseModel):
    type: Literal["connected"] = "connected"
    connectionId: str
    username: Optional[str] = None
    onlineUsers: List[str] = Field(default_factory=list)


class PresenceChanged(BaseModel):
    type: Literal["presenceChanged"] = "presenceChanged"
    username: str
    status: PresenceStatus


class RoomJoined(BaseModel):
    type: Literal["roomJoined"] = "roomJoined"
    roomId: str


class PrivateMessageDelivered(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["privateMessageDelivered"] = "privateMessageDelivered"
    id: str
    text: str = ""
    audioUrl: Optional[str] = None
    videoUrl: Optional[str] = None
    sender: str = Field(..., alias="from")
    timestamp: float

    @classmethod
    def from_message(cls, message: Message) -> "PrivateMessageDelivered":
        return cls(
            id=message.id,
            text=message.text,
            audioUrl=message.audioUrl,
            videoUrl=message.videoUrl,
            sender=message.username,
            timestamp=message.timestamp,
        )


class PrivateMessageSent(BaseModel):
    """Acknowledgement to the sender; ``delivered`` is False when the recipient is offline."""
    type: Literal["privateMessageSent"] = "privateMessageSent"
    to: str
    delivered: bool
    message: Message


class RoomMessageDelivered(Message):
    type: Literal["roomMessageDelivered"] = "roomMessageDelivered"
    roomId: str

    @classmethod
    def from_message(cls, room_id: str, message: Message) -> "RoomMessageDelivered":
        return cls(roomId=room_id, **message.model_dump())


class ErrorEvent(BaseModel):
    type: Literal["error"] = "error"
    code: str
    error: str


def to_wire(event: BaseModel) -> dict:
    """Serialize an outbound event for ``send_json``."""
    return event.model_dump(mode="json", by_alias=True)
