"""
Message store operations.

Every write goes to the database first and is then announced on the fast
broadcast channel; the change feed announces the same write on commit.
Subscribers deduplicate the two.
"""
from typing import Dict, Iterable, List, Optional

from sqlalchemy import and_, func, or_
from sqlalchemy.orm import Session

from vchats.core.exceptions import NotFoundError, PermissionDeniedError
from vchats.core.logging import get_logger
from vchats.models.message import DeliveryState, Message, MessageDeletion, MessageKind
from vchats.models.social import Profile
from vchats.schemas.events import MessageSnapshot
from vchats.services.channels import (
    MESSAGE_DELETED,
    MESSAGE_RECEIVED,
    MESSAGE_UPDATED,
    MESSAGES_SEEN,
    BroadcastChannel,
)
from vchats.services.notifications import display_name, message_preview
from vchats.services.social import FriendService

logger = get_logger(__name__)


def _conversation_filter(user_id: str, peer_id: str):
    return or_(
        and_(Message.sender_id == user_id, Message.receiver_id == peer_id),
        and_(Message.sender_id == peer_id, Message.receiver_id == user_id),
    )


def format_chat_preview(message: Message, limit: int = 40) -> str:
    """One-line preview for the chat list."""
    snapshot = MessageSnapshot.model_validate(message)
    if snapshot.deleted_for_everyone:
        return snapshot.content
    return message_preview(snapshot, limit)


class MessageService:
    def __init__(self, db: Session, broadcast: Optional[BroadcastChannel] = None):
        self.db = db
        self.broadcast = broadcast
        self.friends = FriendService(db)

    def _emit(self, event_name: str, payload: dict) -> None:
        if self.broadcast is None:
            return
        self.broadcast.emit(event_name, payload)

    def get_or_404(self, message_id: str) -> Message:
        message = self.db.get(Message, message_id)
        if message is None:
            raise NotFoundError(f"Message {message_id} not found")
        return message

    # -- reads -------------------------------------------------------------

    def get_messages(self, user_id: str, peer_id: str) -> List[Message]:
        """
        The conversation as ``user_id`` sees it, oldest first.

        Returns an empty list when the two may not message each other. The
        peer's messages that were only ``sent`` are acknowledged as
        ``delivered`` now that the viewer has fetched them.
        """
        if not self.friends.can_message(user_id, peer_id):
            return []

        hidden = {
            row.message_id
            for row in self.db.query(MessageDeletion.message_id).filter(MessageDeletion.user_id == user_id)
        }
        messages = [
            message
            for message in (
                self.db.query(Message)
                .filter(_conversation_filter(user_id, peer_id))
                .order_by(Message.created_at.asc(), Message.id.asc())
                .all()
            )
            if message.id not in hidden
        ]

        undelivered = [
            message.id
            for message in messages
            if message.receiver_id == user_id and message.delivery_state == DeliveryState.SENT.value
        ]
        if undelivered:
            self.mark_delivered(user_id, undelivered)

        return messages

    def latest_messages(self, user_id: str) -> List[Message]:
        """Most recent message of each conversation ``user_id`` takes part in."""
        rows = (
            self.db.query(Message)
            .filter(or_(Message.sender_id == user_id, Message.receiver_id == user_id))
            .order_by(Message.created_at.desc(), Message.id.desc())
            .limit(1000)
            .all()
        )
        latest: Dict[str, Message] = {}
        for message in rows:
            other_id = message.receiver_id if message.sender_id == user_id else message.sender_id
            latest.setdefault(other_id, message)
        return list(latest.values())

    def unread_count(self, user_id: str, peer_id: str) -> int:
        return (
            self.db.query(func.count(Message.id))
            .filter(
                Message.sender_id == peer_id,
                Message.receiver_id == user_id,
                Message.delivery_state != DeliveryState.SEEN.value,
                Message.deleted_for_everyone.is_(False),
            )
            .scalar()
            or 0
        )

    # -- writes ------------------------------------------------------------

    def send_message(
        self,
        sender_id: str,
        receiver_id: str,
        content: str,
        kind: MessageKind = MessageKind.TEXT,
        image_url: Optional[str] = None,
    ) -> Message:
        """
        Store a message and announce it.

        Raises:
            PermissionDeniedError: if the users are not friends or either
                blocked the other; nothing is stored
        """
        self.friends.require_can_message(sender_id, receiver_id)

        self.friends.profiles.unhide_contact(sender_id, receiver_id, commit=False)
        message = Message(
            sender_id=sender_id,
            receiver_id=receiver_id,
            content=content if kind is MessageKind.TEXT else (content or image_url),
            kind=kind.value,
            image_url=image_url,
            delivery_state=DeliveryState.SENT.value,
            reactions={},
        )
        self.db.add(message)
        self.db.commit()

        sender = self.db.get(Profile, sender_id)
        payload = message.to_dict()
        payload["sender_name"] = display_name(sender)
        payload["sender_avatar"] = sender.avatar_url if sender else None
        self._emit(MESSAGE_RECEIVED, payload)

        logger.info(
            "Message sent",
            extra={"extra_data": {"message_id": message.id, "sender_id": sender_id, "kind": kind.value}},
        )
        return message

    def delete_message(self, message_id: str, user_id: str, scope: str = "self") -> Optional[Message]:
        """
        ``scope="everyone"`` tombstones the message (sender only);
        ``scope="self"`` hides it from ``user_id`` alone. Repeats are absorbed.
        """
        message = self.get_or_404(message_id)
        if user_id not in (message.sender_id, message.receiver_id):
            raise PermissionDeniedError("Not a participant of this conversation")

        if scope == "everyone":
            if message.sender_id != user_id:
                raise PermissionDeniedError("Only the sender can delete a message for everyone")
            if not message.deleted_for_everyone:
                message.tombstone()
                self.db.commit()
                self._emit(MESSAGE_UPDATED, message.to_dict())
                logger.info("Message deleted for everyone", extra={"extra_data": {"message_id": message_id}})
            return message

        already = self.db.get(MessageDeletion, (message_id, user_id))
        if already is None:
            self.db.add(
                MessageDeletion(message_id=message_id, user_id=user_id, peer_id=message.other_party(user_id))
            )
            self.db.commit()
            logger.info(
                "Message deleted for self",
                extra={"extra_data": {"message_id": message_id, "user_id": user_id}},
            )
        return None

    def delete_chat(self, user_id: str, peer_id: str) -> int:
        """Hard-delete the whole conversation for both participants."""
        messages = self.db.query(Message).filter(_conversation_filter(user_id, peer_id)).all()
        if not messages:
            return 0

        ids = [message.id for message in messages]
        self.db.query(MessageDeletion).filter(MessageDeletion.message_id.in_(ids)).delete(
            synchronize_session=False
        )
        for message in messages:
            self.db.delete(message)
        self.db.commit()

        for message_id in ids:
            self._emit(
                MESSAGE_DELETED,
                {"message_id": message_id, "sender_id": user_id, "receiver_id": peer_id},
            )
        logger.info(
            "Chat deleted",
            extra={"extra_data": {"user_id": user_id, "peer_id": peer_id, "count": len(ids)}},
        )
        return len(ids)

    def react(self, message_id: str, user_id: str, emoji: str) -> Message:
        """Set ``user_id``'s single reaction; the last one wins. Tombstones are frozen."""
        message = self.get_or_404(message_id)
        if user_id not in (message.sender_id, message.receiver_id):
            raise PermissionDeniedError("Not a participant of this conversation")
        if message.deleted_for_everyone:
            return message

        message.reactions = {**(message.reactions or {}), user_id: emoji}
        self.db.commit()
        self._emit(MESSAGE_UPDATED, message.to_dict())
        return message

    def _advance(self, viewer_id: str, message_ids: Iterable[str], state: DeliveryState) -> List[Message]:
        ids = list(dict.fromkeys(message_ids))
        if not ids:
            return []
        candidates = (
            self.db.query(Message)
            .filter(Message.id.in_(ids), Message.receiver_id == viewer_id)
            .all()
        )
        advanced = [message for message in candidates if message.advance_to(state)]
        if advanced:
            self.db.commit()
        return advanced

    def mark_delivered(self, viewer_id: str, message_ids: Iterable[str]) -> List[str]:
        advanced = self._advance(viewer_id, message_ids, DeliveryState.DELIVERED)
        for message in advanced:
            self._emit(MESSAGE_UPDATED, message.to_dict())
        return [message.id for message in advanced]

    def mark_seen(self, viewer_id: str, message_ids: Optional[Iterable[str]] = None, peer_id: Optional[str] = None) -> List[str]:
        """
        Advance messages received by ``viewer_id`` to ``seen``.

        With no ids, every not-yet-seen message from ``peer_id`` is used.
        """
        if message_ids is None:
            if peer_id is None:
                return []
            message_ids = [
                row.id
                for row in self.db.query(Message.id).filter(
                    Message.sender_id == peer_id,
                    Message.receiver_id == viewer_id,
                    Message.delivery_state != DeliveryState.SEEN.value,
                )
            ]

        advanced = self._advance(viewer_id, message_ids, DeliveryState.SEEN)
        by_sender: Dict[str, List[str]] = {}
        for message in advanced:
            by_sender.setdefault(message.sender_id, []).append(message.id)
        # One event per conversation
        for sender_id, ids in by_sender.items():
            self._emit(MESSAGES_SEEN, {"message_ids": ids, "seen_by": viewer_id, "sender_id": sender_id})
        if advanced:
            logger.debug(
                "Messages marked seen",
                extra={"extra_data": {"viewer_id": viewer_id, "count": len(advanced)}},
            )
        return [message.id for message in advanced]
