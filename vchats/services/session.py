"""
Chat sessions: one connected client's view of its conversations.

A session owns its subscription registry, the state machine of the
conversation that is currently open, and the notification side effects for
everything addressed to its user. Switching conversations detaches the
previous subscription before the next one is attached, in the same call.
"""
from collections import OrderedDict
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set

from vchats.core.logging import get_logger
from vchats.models.message import DeliveryState
from vchats.schemas.events import ConversationEvent, MessageSnapshot
from vchats.schemas.notification import DeviceClass, FocusState, NotificationDecision
from vchats.services.delivery import ConversationState
from vchats.services.notifications import NotificationDispatcher
from vchats.services.subscriber import DualChannelSubscriber, SubscriptionRegistry, conversation_key

logger = get_logger(__name__)

PeerReceiptWriter = Callable[[str, List[str], DeliveryState], Awaitable[Any]]

# Ids remembered to keep notifications exactly-once per message
_ANNOUNCED_LIMIT = 512


class PresenceRegistry:
    """Connected chat sessions per user."""

    def __init__(self):
        self._sessions: Dict[str, Set[int]] = {}

    def add(self, user_id: str, session_id: int) -> None:
        self._sessions.setdefault(user_id, set()).add(session_id)

    def remove(self, user_id: str, session_id: int) -> None:
        sessions = self._sessions.get(user_id)
        if sessions is None:
            return
        sessions.discard(session_id)
        if not sessions:
            del self._sessions[user_id]

    def is_connected(self, user_id: str) -> bool:
        return bool(self._sessions.get(user_id))


class ChatSession:
    def __init__(
        self,
        user_id: str,
        subscriber: DualChannelSubscriber,
        dispatcher: NotificationDispatcher,
        send_receipts: Optional[PeerReceiptWriter] = None,
        profile_lookup: Callable[[str], Any] = lambda user_id: None,
        on_change: Optional[Callable[[ConversationState, ConversationEvent], None]] = None,
        on_notification: Optional[Callable[[NotificationDecision], None]] = None,
        device_class: DeviceClass = DeviceClass.DESKTOP,
        debounce_seconds: float = 0.1,
        presence: Optional[PresenceRegistry] = None,
    ):
        self.user_id = user_id
        self.subscriber = subscriber
        self.dispatcher = dispatcher
        self.send_receipts = send_receipts
        self.profile_lookup = profile_lookup
        self.on_change = on_change
        self.on_notification = on_notification
        self.device_class = device_class
        self.debounce_seconds = debounce_seconds
        self.presence = presence

        self.registry = SubscriptionRegistry()
        self.focus = FocusState()
        self.conversation: Optional[ConversationState] = None
        self._announced: "OrderedDict[str, None]" = OrderedDict()

    @property
    def active_peer(self) -> Optional[str]:
        return self.conversation.peer_id if self.conversation else None

    def start(self) -> None:
        """Watch the inbox so messages from other conversations still notify."""
        self.registry.open(
            f"inbox:{self.user_id}",
            lambda: self.subscriber.subscribe_inbox(self.user_id, self._on_inbox_message),
        )
        if self.presence is not None:
            self.presence.add(self.user_id, id(self))

    def select_peer(self, peer_id: str, initial: Iterable[MessageSnapshot] = ()) -> ConversationState:
        """Open the conversation with ``peer_id``, closing the current one first."""
        self.close_conversation()
        initial = list(initial)

        receipts = None
        if self.send_receipts is not None:
            send = self.send_receipts

            async def receipts(ids: List[str], state: DeliveryState) -> Any:
                return await send(peer_id, ids, state)

        state = ConversationState(
            self.user_id,
            peer_id,
            send_receipts=receipts,
            on_incoming=self._announce,
            debounce_seconds=self.debounce_seconds,
        )
        state.focused = self.focus.is_attentive
        self.conversation = state

        self.registry.open(
            conversation_key(self.user_id, peer_id),
            lambda: self.subscriber.subscribe(self.user_id, peer_id, lambda event: self._on_event(state, event)),
        )
        # Fetched history is already known to the user; never announce it.
        for message in initial:
            self._remember(message.id)
        state.load(initial)

        logger.debug("Conversation opened", extra={"extra_data": {"user_id": self.user_id, "peer_id": peer_id}})
        return state

    def close_conversation(self) -> None:
        state = self.conversation
        if state is None:
            return
        self.registry.close(conversation_key(self.user_id, state.peer_id))
        state.close()
        self.conversation = None

    def set_focus(self, focus: FocusState) -> None:
        self.focus = focus
        if self.conversation is not None:
            self.conversation.set_focused(focus.is_attentive)

    def close(self) -> None:
        self.close_conversation()
        self.registry.close_all()
        if self.presence is not None:
            self.presence.remove(self.user_id, id(self))

    def _on_event(self, state: ConversationState, event: ConversationEvent) -> None:
        if state is not self.conversation:
            return
        if state.apply(event) and self.on_change is not None:
            self.on_change(state, event)

    def _on_inbox_message(self, message: MessageSnapshot) -> None:
        if message.sender_id == self.active_peer:
            # The open conversation's state machine announces these.
            return
        self._announce(message)

    def _remember(self, message_id: str) -> bool:
        if message_id in self._announced:
            return False
        self._announced[message_id] = None
        while len(self._announced) > _ANNOUNCED_LIMIT:
            self._announced.popitem(last=False)
        return True

    def _announce(self, message: MessageSnapshot) -> None:
        if message.sender_id == self.user_id or not self._remember(message.id):
            return
        decision = self.dispatcher.dispatch(
            message,
            self.profile_lookup(message.sender_id),
            self.focus,
            self.device_class,
            viewer_id=self.user_id,
        )
        if decision.show and self.on_notification is not None:
            self.on_notification(decision)
