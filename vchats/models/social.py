"""
Profiles and friend requests.
"""
import enum
from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

from sqlalchemy import JSON, Column, DateTime, String, Text, UniqueConstraint

from vchats.core.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


FALLBACK_NAME = "Someone"


def resolve_display_name(name: Optional[str], email: Optional[str]) -> str:
    """Name, else the local part of the email, else ``FALLBACK_NAME``."""
    if name:
        return name
    if email:
        return email.split("@")[0]
    return FALLBACK_NAME


def unordered_pair(user_id: str, other_id: str) -> str:
    return ":".join(sorted((user_id, other_id)))


def _request_pair_key(context) -> str:
    params = context.get_current_parameters()
    return unordered_pair(params["sender_id"], params["receiver_id"])


class FriendshipStatus(str, enum.Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class Profile(Base):
    """Public profile; blocking is stored on the blocker's row."""

    __tablename__ = "profiles"

    id = Column(String(64), primary_key=True)
    email = Column(String(320), nullable=True)
    name = Column(String(255), nullable=True)
    avatar_url = Column(Text, nullable=True)

    blocked_users = Column(JSON, nullable=False, default=list)
    hidden_contacts = Column(JSON, nullable=False, default=list)

    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)

    @property
    def display_name(self) -> str:
        return resolve_display_name(self.name, self.email)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "avatar_url": self.avatar_url,
            "display_name": self.display_name,
        }


class FriendRequest(Base):
    """At most one request exists per unordered pair of users."""

    __tablename__ = "friend_requests"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    sender_id = Column(String(64), nullable=False, index=True)
    receiver_id = Column(String(64), nullable=False, index=True)
    # Sorted "a:b" of both ids; unique whichever side sent the request
    pair_key = Column(String(129), nullable=False, default=_request_pair_key)
    status = Column(String(16), nullable=False, default=FriendshipStatus.PENDING.value)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("pair_key", name="uq_friend_requests_pair"),
    )

    def __repr__(self) -> str:
        return f"<FriendRequest({self.sender_id}->{self.receiver_id}, {self.status})>"

    def other_party(self, user_id: str) -> str:
        return self.receiver_id if self.sender_id == user_id else self.sender_id
