"""Pydantic schemas for conversations, messages and wire events.

This module defines the data shapes shared by the client core and the
reference gateway:
- Conversation / Message: the client-visible projection
- Client events: frames the client sends (join, leave, send, typing, mark_read)
- Server events: frames the server sends, parsed through a discriminated
  union on the ``type`` field

Wire fields use camelCase to match the marketplace API.
"""
import time
import uuid
from enum import Enum
from typing import Annotated, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter


# =============================================================================
# Enums
# =============================================================================


class SenderRole(str, Enum):
    """Role of a conversation participant.

    Attributes:
        REQUESTER: The customer asking for a service.
        PROVIDER: The service provider.
        FACILITATOR: Optional third party mediating the conversation.
    """
    REQUESTER = "requester"
    PROVIDER = "provider"
    FACILITATOR = "facilitator"


class MessageType(str, Enum):
    TEXT = "text"
    FILE = "file"
    SYSTEM = "system"


class DeliveryStatus(str, Enum):
    """Client-side delivery status of a message.

    Attributes:
        PENDING: Optimistic local echo, not yet confirmed by the server.
        CONFIRMED: Durable message acknowledged by the server.
        FAILED: Transmission failed; the user may retry.
    """
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class Visibility(str, Enum):
    OPEN = "open"
    MINIMIZED_PREVIEW = "minimized_preview"
    MINIMIZED_COMPACT = "minimized_compact"
    CLOSED = "closed"


# Error codes carried by server "error" frames
ERROR_UNAUTHORIZED = "unauthorized"
ERROR_JOIN_FAILED = "join_failed"
ERROR_SEND_FAILED = "send_failed"
ERROR_INVALID_EVENT = "invalid_event"


def new_temporary_id(prefix: str) -> str:
    """Return a client-local placeholder id such as ``local-1f3a...``."""
    return f"{prefix}-{uuid.uuid4().hex}"


# =============================================================================
# Data Models
# =============================================================================


class Participant(BaseModel):
    id: str = Field(..., description="User ID")
    name: str = Field(default="", description="Display name")


class Participants(BaseModel):
    """Membership of a conversation. Only grows: a facilitator may be appended."""
    requesterId: str
    requesterName: str = ""
    providerId: str
    providerName: str = ""
    facilitatorId: Optional[str] = None
    facilitatorName: Optional[str] = None

    def member_ids(self) -> List[str]:
        ids = [self.requesterId, self.providerId]
        if self.facilitatorId:
            ids.append(self.facilitatorId)
        return ids


class Message(BaseModel):
    """A chat message as seen by the client.

    Attributes:
        id: Durable server id, or a ``local-`` id while pending.
        conversationId: Conversation this message belongs to.
        senderRole: Role of the sender.
        senderId: User ID of the sender.
        content: Message text (or file reference for file messages).
        type: text, file or system.
        createdAt: Unix timestamp (seconds since epoch).
        correlationId: Client-generated id echoed back by the server on
            confirmation of an outbound message.
        status: Client-side delivery status; never sent over the wire.
    """
    id: str = Field(..., description="Message ID")
    conversationId: str = Field(..., description="Conversation ID")
    senderRole: SenderRole = Field(..., description="Role of the sender")
    senderId: str = Field(..., description="User ID of the sender")
    content: str = Field(default="", description="Message content")
    type: MessageType = Field(default=MessageType.TEXT, description="Message type")
    createdAt: float = Field(
        default_factory=time.time,
        description="Timestamp in seconds since epoch"
    )
    correlationId: Optional[str] = Field(
        default=None,
        description="Client correlation id for optimistic reconciliation"
    )
    status: DeliveryStatus = Field(
        default=DeliveryStatus.CONFIRMED,
        description="Client-side delivery status"
    )

    def to_wire(self) -> dict:
        """Serialize to the wire shape (no client-side status)."""
        return self.model_dump(mode="json", exclude={"status"})


class Conversation(BaseModel):
    """In-memory projection of a conversation."""
    id: str
    participants: Participants
    linkedJobId: Optional[str] = None
    messages: List[Message] = Field(default_factory=list)
    visibility: Visibility = Visibility.CLOSED
    loading: bool = False
    historyCursor: Optional[float] = None
    readBy: Dict[str, float] = Field(default_factory=dict)

    @property
    def is_visible(self) -> bool:
        return self.visibility != Visibility.CLOSED


class ConversationSummary(BaseModel):
    """Conversation index entry returned by ``GET /chats``."""
    id: str
    participants: Participants
    linkedJobId: Optional[str] = None


class CreateConversationRequest(BaseModel):
    participants: Participants
    linkedJobId: Optional[str] = None


class HistoryPage(BaseModel):
    messages: List[Message] = Field(default_factory=list)
    nextCursor: Optional[float] = None


# =============================================================================
# Client -> server events
# =============================================================================


class JoinEvent(BaseModel):
    type: Literal["join"] = "join"
    conversationId: str


class LeaveEvent(BaseModel):
    type: Literal["leave"] = "leave"
    conversationId: str


class SendEvent(BaseModel):
    type: Literal["send"] = "send"
    conversationId: str
    content: str
    messageType: MessageType = MessageType.TEXT
    correlationId: str


class TypingIntent(BaseModel):
    type: Literal["typing"] = "typing"
    conversationId: str
    isTyping: bool = True


class MarkReadEvent(BaseModel):
    type: Literal["mark_read"] = "mark_read"
    conversationId: str


ClientEvent = Annotated[
    Union[JoinEvent, LeaveEvent, SendEvent, TypingIntent, MarkReadEvent],
    Field(discriminator="type"),
]

CLIENT_EVENT_ADAPTER: TypeAdapter = TypeAdapter(ClientEvent)


# =============================================================================
# Server -> client events
# =============================================================================


class ConnectedEvent(BaseModel):
    type: Literal["connected"] = "connected"
    userId: str
    role: Optional[SenderRole] = None


class JoinedEvent(BaseModel):
    type: Literal["joined"] = "joined"
    conversationId: str


class MessageEvent(BaseModel):
    type: Literal["message"] = "message"
    message: Message


class TypingEvent(BaseModel):
    type: Literal["typing"] = "typing"
    conversationId: str
    userId: str
    isTyping: bool = True


class ReadReceiptEvent(BaseModel):
    type: Literal["read_receipt"] = "read_receipt"
    conversationId: str
    userId: str
    readAt: float = Field(default_factory=time.time)


class PresenceEvent(BaseModel):
    type: Literal["presence"] = "presence"
    conversationId: str
    userId: str
    online: bool = True


class ParticipantAddedEvent(BaseModel):
    type: Literal["participant_added"] = "participant_added"
    conversationId: str
    participant: Participant
    role: SenderRole = SenderRole.FACILITATOR


class ErrorEvent(BaseModel):
    type: Literal["error"] = "error"
    code: str
    message: str = ""
    conversationId: Optional[str] = None
    correlationId: Optional[str] = None


ServerEvent = Annotated[
    Union[
        ConnectedEvent,
        JoinedEvent,
        MessageEvent,
        TypingEvent,
        ReadReceiptEvent,
        PresenceEvent,
        ParticipantAddedEvent,
        ErrorEvent,
    ],
    Field(discriminator="type"),
]

SERVER_EVENT_ADAPTER: TypeAdapter = TypeAdapter(ServerEvent)


def parse_server_event(data: dict):
    """Validate a raw server frame into its typed event model.

    Raises:
        pydantic.ValidationError: If the frame is malformed or of unknown type.
    """
    return SERVER_EVENT_ADAPTER.validate_python(data)


def parse_client_event(data: dict):
    """Validate a raw client frame into its typed event model."""
    return CLIENT_EVENT_ADAPTER.validate_python(data)
