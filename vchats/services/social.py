"""
Profiles, friend requests and blocking.

Messaging between two users is allowed only when their friend request is
accepted and neither has blocked the other. Blocking is one-directional and
stored on the blocker's profile.
"""
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import and_, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from vchats.core.exceptions import NotFoundError, PermissionDeniedError, ValidationError
from vchats.core.logging import get_logger
from vchats.models.social import FriendRequest, FriendshipStatus, Profile

logger = get_logger(__name__)


def _pair_filter(user_id: str, peer_id: str):
    return or_(
        and_(FriendRequest.sender_id == user_id, FriendRequest.receiver_id == peer_id),
        and_(FriendRequest.sender_id == peer_id, FriendRequest.receiver_id == user_id),
    )


class ProfileService:
    def __init__(self, db: Session):
        self.db = db

    def get(self, user_id: str) -> Optional[Profile]:
        return self.db.get(Profile, user_id)

    def get_or_404(self, user_id: str) -> Profile:
        profile = self.get(user_id)
        if profile is None:
            raise NotFoundError(f"Profile {user_id} not found")
        return profile

    def get_or_create(self, user_id: str) -> Profile:
        profile = self.get(user_id)
        if profile is None:
            profile = Profile(id=user_id, blocked_users=[], hidden_contacts=[])
            self.db.add(profile)
            self.db.flush()
        return profile

    def upsert(
        self,
        user_id: str,
        email: Optional[str] = None,
        name: Optional[str] = None,
        avatar_url: Optional[str] = None,
    ) -> Profile:
        profile = self.get_or_create(user_id)
        if email is not None:
            profile.email = email
        if name is not None:
            profile.name = name
        if avatar_url is not None:
            profile.avatar_url = avatar_url
        self.db.commit()
        return profile

    def is_blocked(self, blocker_id: str, blocked_id: str) -> bool:
        """Whether ``blocker_id`` has blocked ``blocked_id`` (one direction only)."""
        profile = self.get(blocker_id)
        return profile is not None and blocked_id in (profile.blocked_users or [])

    def block(self, blocker_id: str, blocked_id: str) -> Profile:
        if blocker_id == blocked_id:
            raise ValidationError("Users cannot block themselves")
        profile = self.get_or_create(blocker_id)
        if blocked_id not in (profile.blocked_users or []):
            profile.blocked_users = [*(profile.blocked_users or []), blocked_id]
        self.db.commit()
        logger.info("User blocked", extra={"extra_data": {"blocker_id": blocker_id, "blocked_id": blocked_id}})
        return profile

    def unblock(self, blocker_id: str, blocked_id: str) -> Profile:
        profile = self.get_or_create(blocker_id)
        profile.blocked_users = [uid for uid in (profile.blocked_users or []) if uid != blocked_id]
        self.db.commit()
        return profile

    def hide_contact(self, user_id: str, contact_id: str) -> Profile:
        profile = self.get_or_create(user_id)
        if contact_id not in (profile.hidden_contacts or []):
            profile.hidden_contacts = [*(profile.hidden_contacts or []), contact_id]
        self.db.commit()
        return profile

    def unhide_contact(self, user_id: str, contact_id: str, commit: bool = True) -> Profile:
        profile = self.get_or_create(user_id)
        if contact_id in (profile.hidden_contacts or []):
            profile.hidden_contacts = [uid for uid in profile.hidden_contacts if uid != contact_id]
        if commit:
            self.db.commit()
        return profile


class FriendService:
    def __init__(self, db: Session):
        self.db = db
        self.profiles = ProfileService(db)

    def get_status(self, user_id: str, peer_id: str) -> Optional[FriendRequest]:
        """The request between the two users in either direction, if any."""
        return self.db.query(FriendRequest).filter(_pair_filter(user_id, peer_id)).first()

    def send_request(self, sender_id: str, receiver_id: str) -> FriendRequest:
        """Create a request, or return the one that already exists for the pair."""
        if sender_id == receiver_id:
            raise ValidationError("Cannot send a friend request to yourself")

        existing = self.get_status(sender_id, receiver_id)
        if existing is not None:
            return existing

        request = FriendRequest(sender_id=sender_id, receiver_id=receiver_id)
        self.db.add(request)
        try:
            self.db.commit()
        except IntegrityError:
            # Concurrent request for the same pair won the insert.
            self.db.rollback()
            existing = self.get_status(sender_id, receiver_id)
            if existing is None:
                raise
            return existing

        logger.info(
            "Friend request sent",
            extra={"extra_data": {"sender_id": sender_id, "receiver_id": receiver_id}},
        )
        return request

    def _respond(self, request_id: str, user_id: str, status: FriendshipStatus) -> FriendRequest:
        request = self.db.get(FriendRequest, request_id)
        if request is None:
            raise NotFoundError(f"Friend request {request_id} not found")
        if request.receiver_id != user_id:
            raise PermissionDeniedError("Only the receiver can answer a friend request")

        if request.status == status.value:
            return request

        request.status = status.value
        request.updated_at = datetime.now(timezone.utc)
        self.db.commit()
        logger.info(
            "Friend request answered",
            extra={"extra_data": {"request_id": request_id, "status": status.value}},
        )
        return request

    def accept(self, request_id: str, user_id: str) -> FriendRequest:
        return self._respond(request_id, user_id, FriendshipStatus.ACCEPTED)

    def reject(self, request_id: str, user_id: str) -> FriendRequest:
        return self._respond(request_id, user_id, FriendshipStatus.REJECTED)

    def pending_for(self, user_id: str) -> List[FriendRequest]:
        return (
            self.db.query(FriendRequest)
            .filter(
                FriendRequest.receiver_id == user_id,
                FriendRequest.status == FriendshipStatus.PENDING.value,
            )
            .order_by(FriendRequest.created_at.desc())
            .all()
        )

    def friends_of(self, user_id: str, include_hidden: bool = False) -> List[str]:
        requests = (
            self.db.query(FriendRequest)
            .filter(
                or_(FriendRequest.sender_id == user_id, FriendRequest.receiver_id == user_id),
                FriendRequest.status == FriendshipStatus.ACCEPTED.value,
            )
            .all()
        )
        friend_ids = [request.other_party(user_id) for request in requests]
        if include_hidden:
            return friend_ids
        profile = self.profiles.get(user_id)
        hidden = set(profile.hidden_contacts or []) if profile else set()
        return [friend_id for friend_id in friend_ids if friend_id not in hidden]

    def can_message(self, user_id: str, peer_id: str) -> bool:
        if self.profiles.is_blocked(user_id, peer_id) or self.profiles.is_blocked(peer_id, user_id):
            return False
        request = self.get_status(user_id, peer_id)
        return request is not None and request.status == FriendshipStatus.ACCEPTED.value

    def require_can_message(self, user_id: str, peer_id: str) -> None:
        if not self.can_message(user_id, peer_id):
            raise PermissionDeniedError(
                "Cannot send message: users must be friends and not blocked",
                details={"peer_id": peer_id},
            )
