"""
Message and per-viewer deletion models.
"""
import enum
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Index, String, Text

from vchats.core.database import Base

TOMBSTONE_TEXT = "This message was deleted"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid4())


class MessageKind(str, enum.Enum):
    TEXT = "text"
    IMAGE = "image"


class DeliveryState(str, enum.Enum):
    """Linear delivery lifecycle; a message only ever moves forward."""

    SENT = "sent"
    DELIVERED = "delivered"
    SEEN = "seen"

    @property
    def rank(self) -> int:
        return _DELIVERY_RANK[self]

    @classmethod
    def most_advanced(cls, *states: "DeliveryState") -> "DeliveryState":
        return max((cls(state) for state in states), key=lambda state: state.rank)


_DELIVERY_RANK = {
    DeliveryState.SENT: 0,
    DeliveryState.DELIVERED: 1,
    DeliveryState.SEEN: 2,
}


class Message(Base):
    """A direct message between two users."""

    __tablename__ = "messages"

    id = Column(String(36), primary_key=True, default=_new_id)

    sender_id = Column(String(64), nullable=False, index=True)
    receiver_id = Column(String(64), nullable=False, index=True)

    content = Column(Text, nullable=False, default="")
    kind = Column(String(16), nullable=False, default=MessageKind.TEXT.value)
    image_url = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    delivery_state = Column(String(16), nullable=False, default=DeliveryState.SENT.value)
    deleted_for_everyone = Column(Boolean, nullable=False, default=False)

    # {reactor_id: emoji}
    reactions = Column(JSON, nullable=False, default=dict)

    __table_args__ = (
        Index("ix_messages_pair_created", "sender_id", "receiver_id", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<Message(id={self.id}, sender_id={self.sender_id}, state={self.delivery_state})>"

    def other_party(self, user_id: str) -> str:
        return self.receiver_id if self.sender_id == user_id else self.sender_id

    def advance_to(self, state: DeliveryState) -> bool:
        """Move the delivery state forward; returns False if it was already there."""
        current = DeliveryState(self.delivery_state)
        target = DeliveryState.most_advanced(current, state)
        if target is current:
            return False
        self.delivery_state = target.value
        return True

    def tombstone(self) -> None:
        self.deleted_for_everyone = True
        self.content = TOMBSTONE_TEXT
        self.image_url = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sender_id": self.sender_id,
            "receiver_id": self.receiver_id,
            "content": self.content,
            "kind": self.kind,
            "image_url": self.image_url,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "delivery_state": self.delivery_state,
            "deleted_for_everyone": bool(self.deleted_for_everyone),
            "reactions": dict(self.reactions or {}),
        }


class MessageDeletion(Base):
    """A "delete for me" record; hides the message from one viewer only."""

    __tablename__ = "message_deletions"

    message_id = Column(
        String(36),
        ForeignKey("messages.id", ondelete="CASCADE"),
        primary_key=True,
    )
    user_id = Column(String(64), primary_key=True)
    # The other participant, so the row can be routed to its conversation
    peer_id = Column(String(64), nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    def to_dict(self) -> dict:
        return {
            "message_id": self.message_id,
            "user_id": self.user_id,
            "peer_id": self.peer_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
