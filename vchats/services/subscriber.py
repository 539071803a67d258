"""
Dual-channel conversation subscriptions.

A subscription listens on the fast broadcast channel and on the durable
change feed at the same time and turns whatever either one reports about the
conversation into validated ``ConversationEvent`` objects. The two channels
are not ordered relative to each other and will usually report the same
message twice; reconciling that is the consumer's job (see
``vchats.services.delivery``).
"""
from typing import Any, Callable, Dict, Iterator, List, Optional

from pydantic import ValidationError as PydanticValidationError

from vchats.core.exceptions import InvalidEventError
from vchats.core.logging import get_logger
from vchats.models.message import TOMBSTONE_TEXT
from vchats.models.social import unordered_pair
from vchats.schemas.events import ConversationEvent, MessageSnapshot, parse_event
from vchats.services.channels import (
    MESSAGE_DELETED,
    MESSAGE_RECEIVED,
    MESSAGE_UPDATED,
    MESSAGES_SEEN,
    BroadcastChannel,
    ChangeEvent,
    ChangeFeed,
)

logger = get_logger(__name__)

EventCallback = Callable[[ConversationEvent], None]


def conversation_key(user_id: str, peer_id: str) -> str:
    """Order-independent key for the conversation between two users."""
    return unordered_pair(user_id, peer_id)


class SubscriptionHandle:
    """Detaches a subscription's listeners; ``close()`` may be called any number of times."""

    def __init__(self, key: str, closers: List[Callable[[], Any]]):
        self.key = key
        self._closers = closers
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for closer in self._closers:
            closer()
        self._closers = []
        logger.debug("Subscription closed", extra={"extra_data": {"conversation": self.key}})

    def __enter__(self) -> "SubscriptionHandle":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class DualChannelSubscriber:
    """Builds conversation subscriptions over a broadcast channel and a change feed."""

    def __init__(self, broadcast: Optional[BroadcastChannel], feed: ChangeFeed):
        self.broadcast = broadcast
        self.feed = feed

    def subscribe(self, self_id: str, peer_id: str, on_event: EventCallback) -> SubscriptionHandle:
        key = conversation_key(self_id, peer_id)
        pair = {self_id, peer_id}
        handle: Optional[SubscriptionHandle] = None

        def in_conversation(row: Any) -> bool:
            return isinstance(row, dict) and {row.get("sender_id"), row.get("receiver_id")} == pair

        def deliver(raw: Dict[str, Any], source: str) -> None:
            if handle is not None and handle.closed:
                return
            try:
                event = parse_event(raw)
            except InvalidEventError as e:
                logger.warning(
                    "Dropping malformed event",
                    extra={"extra_data": {"conversation": key, "source": source, "errors": e.details.get("errors")}},
                )
                return
            on_event(event)

        closers: List[Callable[[], Any]] = []

        if self.broadcast is None or not self.broadcast.connected:
            logger.info(
                "Fast channel unavailable, using change feed only",
                extra={"extra_data": {"conversation": key}},
            )

        def on_received(payload: Any) -> None:
            if in_conversation(payload):
                deliver({"type": "inserted", "message": payload}, "broadcast")

        def on_updated(payload: Any) -> None:
            if in_conversation(payload):
                deliver({"type": "updated", "message": payload}, "broadcast")

        def on_seen(payload: Any) -> None:
            if isinstance(payload, dict) and {payload.get("seen_by"), payload.get("sender_id")} == pair:
                deliver({"type": "bulk_seen", "message_ids": payload.get("message_ids")}, "broadcast")

        def on_deleted(payload: Any) -> None:
            if in_conversation(payload):
                deliver({"type": "deleted", "message_id": payload.get("message_id")}, "broadcast")

        if self.broadcast is not None:
            listeners = {
                MESSAGE_RECEIVED: on_received,
                MESSAGE_UPDATED: on_updated,
                MESSAGES_SEEN: on_seen,
                MESSAGE_DELETED: on_deleted,
            }
            for event_name, listener in listeners.items():
                token = self.broadcast.on(event_name, listener)
                closers.append(lambda token=token: self.broadcast.off(token))

        def on_message_change(change: ChangeEvent) -> None:
            if change.event_type == "INSERT":
                deliver({"type": "inserted", "message": change.new}, "change_feed")
            elif change.event_type == "UPDATE":
                row = dict(change.new)
                if row.get("deleted_for_everyone"):
                    row["content"] = TOMBSTONE_TEXT
                deliver({"type": "updated", "message": row}, "change_feed")
            elif change.event_type == "DELETE":
                deliver({"type": "deleted", "message_id": change.old.get("id")}, "change_feed")

        def on_deletion_change(change: ChangeEvent) -> None:
            if change.event_type == "INSERT":
                deliver({"type": "deleted", "message_id": change.new.get("message_id")}, "change_feed")

        message_token = self.feed.subscribe(
            "messages",
            on_message_change,
            predicate=lambda change: in_conversation(change.new or change.old),
        )
        deletion_token = self.feed.subscribe(
            "message_deletions",
            on_deletion_change,
            predicate=lambda change: (change.new.get("user_id"), change.new.get("peer_id")) == (self_id, peer_id),
        )
        closers.append(lambda: self.feed.unsubscribe(message_token))
        closers.append(lambda: self.feed.unsubscribe(deletion_token))

        handle = SubscriptionHandle(key, closers)
        logger.debug("Subscription opened", extra={"extra_data": {"conversation": key}})
        return handle

    def subscribe_inbox(self, self_id: str, on_message: Callable[[MessageSnapshot], None]) -> SubscriptionHandle:
        """New messages addressed to ``self_id`` from anyone, on both channels."""
        key = f"inbox:{self_id}"
        handle: Optional[SubscriptionHandle] = None

        def deliver(row: Any, source: str) -> None:
            if handle is not None and handle.closed:
                return
            if not isinstance(row, dict) or row.get("receiver_id") != self_id:
                return
            try:
                message = MessageSnapshot.model_validate(row)
            except PydanticValidationError as e:
                logger.warning(
                    "Dropping malformed inbox message",
                    extra={"extra_data": {"source": source, "errors": e.errors(include_url=False)}},
                )
                return
            on_message(message)

        closers: List[Callable[[], Any]] = []
        if self.broadcast is not None:
            token = self.broadcast.on(MESSAGE_RECEIVED, lambda payload: deliver(payload, "broadcast"))
            closers.append(lambda: self.broadcast.off(token))

        feed_token = self.feed.subscribe(
            "messages",
            lambda change: deliver(change.new, "change_feed"),
            predicate=lambda change: change.event_type == "INSERT",
        )
        closers.append(lambda: self.feed.unsubscribe(feed_token))

        handle = SubscriptionHandle(key, closers)
        return handle


class SubscriptionRegistry:
    """One active handle per conversation key, owned by a single chat session."""

    def __init__(self):
        self._handles: Dict[str, SubscriptionHandle] = {}

    def open(self, key: str, factory: Callable[[], SubscriptionHandle]) -> SubscriptionHandle:
        """Tear down any handle under ``key``, then register a fresh one."""
        self.close(key)
        handle = factory()
        self._handles[key] = handle
        return handle

    def close(self, key: str) -> bool:
        handle = self._handles.pop(key, None)
        if handle is None:
            return False
        handle.close()
        return True

    def close_all(self) -> None:
        for key in list(self._handles):
            self.close(key)

    def get(self, key: str) -> Optional[SubscriptionHandle]:
        return self._handles.get(key)

    def __contains__(self, key: str) -> bool:
        return key in self._handles

    def __len__(self) -> int:
        return len(self._handles)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._handles))
