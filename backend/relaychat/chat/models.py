"""Data models shared by the real-time session core.

Identity and the message payloads are pydantic models so they serialize
straight onto the wire; the live Connection record is a plain dataclass
because it carries the transport object.
"""
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, List, Optional, Protocol

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    """Naive UTC timestamp (DuckDB TIMESTAMP columns are timezone-less)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def now_ms() -> float:
    return time.time() * 1000


# =============================================================================
# Enums
# =============================================================================


class ConnectionState(str, Enum):
    """Lifecycle of a single connection.

    CONNECTING -> AUTHENTICATED -> ACTIVE -> DISCONNECTED (terminal).
    """
    CONNECTING = "connecting"
    AUTHENTICATED = "authenticated"
    ACTIVE = "active"
    DISCONNECTED = "disconnected"


class DirectedStatus(str, Enum):
    """Delivery status of a directed message, ordered sent < delivered < read."""
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]

    def can_advance_to(self, target: "DirectedStatus") -> bool:
        """True if moving to *target* is a forward transition."""
        return target.rank > self.rank


_STATUS_RANK = {
    DirectedStatus.SENT: 0,
    DirectedStatus.DELIVERED: 1,
    DirectedStatus.READ: 2,
}


class HealthLabel(str, Enum):
    MEASURING = "measuring"
    EXCELLENT = "excellent"
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"


class MessageKind(str, Enum):
    BROADCAST = "broadcast"
    DIRECTED = "directed"


# =============================================================================
# Identity & connection
# =============================================================================


class Identity(BaseModel):
    """Verified identity attached to a connection at handshake.

    Attributes:
        userId: Persistent user id issued by the credential collaborator.
        displayName: Name shown to other users.
    """
    model_config = ConfigDict(frozen=True)

    userId: int = Field(..., description="Persistent user id")
    displayName: str = Field(..., description="Display name shown in UI")


class Transport(Protocol):
    """Anything that can push a JSON frame and be closed (a WebSocket)."""

    async def send_json(self, data: Any) -> None: ...

    async def close(self, code: int = 1000) -> None: ...


@dataclass
class Connection:
    """Live connection record owned by the presence registry."""
    identity: Identity
    transport: Transport
    connection_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    joined_at: datetime = field(default_factory=utcnow)
    state: ConnectionState = ConnectionState.CONNECTING

    @property
    def user_id(self) -> int:
        return self.identity.userId

    @property
    def display_name(self) -> str:
        return self.identity.displayName


# =============================================================================
# Messages
# =============================================================================


class BroadcastMessage(BaseModel):
    """Public-room message; fire-and-forget to every live connection.

    ``id`` is ``None`` when persistence failed and the message was fanned
    out anyway.
    """
    kind: MessageKind = MessageKind.BROADCAST
    id: Optional[int] = None
    senderId: int
    senderName: str
    text: str
    createdAt: datetime = Field(default_factory=utcnow)


class DirectedMessage(BaseModel):
    """Message addressed to exactly one recipient."""
    kind: MessageKind = MessageKind.DIRECTED
    id: Optional[int] = None
    fromUserId: int
    fromUsername: str = ""
    toUserId: int
    toUsername: str = ""
    text: str
    createdAt: datetime = Field(default_factory=utcnow)
    status: DirectedStatus = DirectedStatus.SENT
    deliveredAt: Optional[datetime] = None
    readAt: Optional[datetime] = None


class PresenceEntry(BaseModel):
    """One row of the presence snapshot."""
    userId: int
    displayName: str
    latency: float
    jitter: float
    connectionQuality: HealthLabel


class ConversationSummary(BaseModel):
    """Per-peer summary for the recent-conversations list."""
    peerId: int
    peerName: str
    lastMessageAt: Optional[datetime] = None
    unreadCount: int = 0
    lastMessageText: Optional[str] = None


class ReadReceipt(BaseModel):
    messageIds: List[int]
    readBy: int
    readerName: str
    readAt: datetime
