"""
Websocket endpoint for live chat sessions.

Each connection owns one ``ChatSession``. Inbound frames are JSON commands:

    {"type": "open_chat", "peer_id": "..."}
    {"type": "close_chat"}
    {"type": "focus", "visibilityState": "visible", "hasFocus": true}
    {"type": "notification_click", "action": "reply", "data": {...}, "clientUrl": "..."}

Outbound frames are ``snapshot``, ``event``, ``notification``,
``click`` and ``error``.
"""
import asyncio
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from sqlalchemy.orm import sessionmaker

from vchats.api.deps import get_dispatcher, get_presence, get_subscriber
from vchats.core.config import Settings, get_settings
from vchats.core.database import get_session_factory, session_scope
from vchats.core.exceptions import ChatError
from vchats.core.logging import get_logger
from vchats.models.message import DeliveryState
from vchats.models.social import Profile
from vchats.schemas.events import ConversationEvent, MessageSnapshot, event_to_dict
from vchats.schemas.notification import FocusState, NotificationDecision
from vchats.services.delivery import ConversationState
from vchats.services.messaging import MessageService
from vchats.services.notifications import NotificationDispatcher, detect_device_class
from vchats.services.session import ChatSession, PresenceRegistry
from vchats.services.subscriber import DualChannelSubscriber
from vchats.services.worker import handle_notification_click

logger = get_logger(__name__)

router = APIRouter(tags=["Realtime"])


class ConnectionWindow:
    """The connected client, seen as a service-worker client window."""

    def __init__(self, url: str, send_frame):
        self.url = url
        self._send_frame = send_frame

    def focus(self) -> None:
        self._send_frame({"type": "FOCUS"})

    def post_message(self, message: Dict[str, Any]) -> None:
        self._send_frame(message)


class ConnectionSurface:
    def __init__(self, client_url: Optional[str], send_frame):
        self.client_url = client_url
        self._send_frame = send_frame

    def match_all(self) -> List[ConnectionWindow]:
        if not self.client_url:
            return []
        return [ConnectionWindow(self.client_url, self._send_frame)]

    def open_window(self, url: str) -> None:
        self._send_frame({"type": "OPEN_WINDOW", "url": url})


@router.websocket("/ws/{user_id}")
async def chat_socket(
    websocket: WebSocket,
    user_id: str,
    settings: Settings = Depends(get_settings),
    session_factory: sessionmaker = Depends(get_session_factory),
    subscriber: DualChannelSubscriber = Depends(get_subscriber),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
    presence: PresenceRegistry = Depends(get_presence),
):
    await websocket.accept()
    loop = asyncio.get_running_loop()
    outbox: "asyncio.Queue[Dict[str, Any]]" = asyncio.Queue()

    def send_frame(frame: Dict[str, Any]) -> None:
        # Change feed callbacks may fire on a worker thread.
        loop.call_soon_threadsafe(outbox.put_nowait, frame)

    async def pump() -> None:
        while True:
            frame = await outbox.get()
            await websocket.send_json(frame)

    async def write_receipts(peer_id: str, ids: List[str], state: DeliveryState) -> List[str]:
        with session_scope(session_factory) as db:
            service = MessageService(db, subscriber.broadcast)
            if state is DeliveryState.SEEN:
                return service.mark_seen(user_id, ids)
            return service.mark_delivered(user_id, ids)

    def lookup_profile(profile_id: str) -> Optional[Dict[str, Any]]:
        with session_scope(session_factory) as db:
            profile = db.get(Profile, profile_id)
            return profile.to_dict() if profile else None

    def on_change(state: ConversationState, event: ConversationEvent) -> None:
        send_frame(
            {
                "type": "event",
                "peer_id": state.peer_id,
                "event": event_to_dict(event),
                "unread": state.unread_count,
            }
        )

    def on_notification(decision: NotificationDecision) -> None:
        send_frame({"type": "notification", "notification": decision.to_wire()})

    session = ChatSession(
        user_id,
        subscriber,
        dispatcher,
        send_receipts=write_receipts,
        profile_lookup=lookup_profile,
        on_change=on_change,
        on_notification=on_notification,
        device_class=detect_device_class(websocket.headers.get("user-agent")),
        debounce_seconds=settings.seen_debounce_seconds,
        presence=presence,
    )
    session.start()
    sender = asyncio.create_task(pump())
    logger.info("Chat session connected", extra={"extra_data": {"user_id": user_id}})

    try:
        while True:
            command = await websocket.receive_json()
            try:
                _handle_command(command, session, session_factory, settings, send_frame)
            except (ChatError, ValueError, KeyError, TypeError) as e:
                logger.warning(
                    "Rejected websocket command",
                    extra={"extra_data": {"user_id": user_id, "error": str(e)}},
                )
                send_frame({"type": "error", "detail": str(e)})
    except WebSocketDisconnect:
        logger.info("Chat session disconnected", extra={"extra_data": {"user_id": user_id}})
    finally:
        session.close()
        sender.cancel()


def _handle_command(
    command: Dict[str, Any],
    session: ChatSession,
    session_factory: sessionmaker,
    settings: Settings,
    send_frame,
) -> None:
    kind = command.get("type")

    if kind == "open_chat":
        peer_id = command["peer_id"]
        with session_scope(session_factory) as db:
            service = MessageService(db, session.subscriber.broadcast)
            messages = service.get_messages(session.user_id, peer_id)
            initial = [MessageSnapshot.model_validate(message) for message in messages]
            can_message = service.friends.can_message(session.user_id, peer_id)
        state = session.select_peer(peer_id, initial)
        send_frame(
            {
                "type": "snapshot",
                "peer_id": peer_id,
                "can_message": can_message,
                "messages": [message.model_dump(mode="json") for message in state.messages],
                "unread": state.unread_count,
            }
        )
    elif kind == "close_chat":
        session.close_conversation()
    elif kind == "focus":
        session.set_focus(FocusState.model_validate(command))
    elif kind == "notification_click":
        surface = ConnectionSurface(command.get("clientUrl"), send_frame)
        outcome = handle_notification_click(
            command.get("action"),
            command.get("data") or {},
            surface,
            settings.app_origin,
        )
        send_frame({"type": "click", "outcome": outcome.to_wire()})
    else:
        raise ValueError(f"Unknown command type: {kind!r}")
