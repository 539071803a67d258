"""
Service worker notification surface.

Mirrors what the browser service worker does with pushes and notification
clicks, against an abstract set of client windows so the same routing is
used by websocket clients and by tests.
"""
from typing import Any, Dict, List, Optional, Protocol, Tuple, Union

from vchats.core.logging import get_logger
from vchats.schemas.notification import (
    ClickOutcome,
    NotificationAction,
    NotificationData,
    NotificationOptions,
)
from vchats.schemas.push import PushPayload
from vchats.services.notifications import DEFAULT_ICON, DESKTOP_VIBRATION, build_deep_link

logger = get_logger(__name__)

OPEN_CHAT = "OPEN_CHAT"
PUSH_TAG = "message-notification"
BACKGROUND_SYNC_TAG = "background-sync"


class ClientWindow(Protocol):
    url: str

    def focus(self) -> Any: ...

    def post_message(self, message: Dict[str, Any]) -> Any: ...


class ClientSurface(Protocol):
    def match_all(self) -> List[ClientWindow]: ...

    def open_window(self, url: str) -> Any: ...


def build_push_notification(payload: PushPayload) -> Tuple[str, NotificationOptions]:
    """Title and options for a relay push, as the worker's ``push`` handler shows it."""
    options = NotificationOptions(
        body=payload.message,
        icon=payload.icon or DEFAULT_ICON,
        badge=DEFAULT_ICON,
        tag=PUSH_TAG,
        renotify=True,
        data=NotificationData(
            user_id=payload.userId,
            url=payload.url,
            sender_name=payload.senderName,
        ),
        vibrate=DESKTOP_VIBRATION,
        require_interaction=False,
        actions=[
            NotificationAction(action="reply", title="Reply", icon=DEFAULT_ICON),
            NotificationAction(action="view", title="View Chat", icon=DEFAULT_ICON),
        ],
    )
    return payload.title, options


def handle_notification_click(
    action: Optional[str],
    data: Union[NotificationData, Dict[str, Any]],
    clients: ClientSurface,
    origin: str,
) -> ClickOutcome:
    """
    Route a notification click.

    ``reply`` focuses an existing client and asks it to open the chat with
    the input focused, ``view`` (or a plain click) opens the chat without
    forcing focus, ``dismiss`` only closes the notification. With no client
    open, a new window is opened at a deep link instead.
    """
    if isinstance(data, dict):
        data = NotificationData.model_validate(data)
    action = action or "view"

    if action == "dismiss":
        return ClickOutcome(action=action)

    user_id = data.user_id
    message: Dict[str, Any] = {"type": OPEN_CHAT, "userId": user_id}
    if action == "reply":
        message["focusInput"] = True

    for client in clients.match_all():
        if client.url.startswith(origin):
            client.focus()
            client.post_message(message)
            return ClickOutcome(action=action, focused_client=client.url, posted_message=message)

    if action == "reply":
        url = build_deep_link(origin, user_id, reply=True)
    else:
        url = data.url or build_deep_link(origin, user_id)
    clients.open_window(url)
    logger.debug("Opened window for notification click", extra={"extra_data": {"url": url}})
    return ClickOutcome(action=action, opened_url=url)


def handle_background_sync(tag: str) -> bool:
    """Offline send queue placeholder; acknowledges the sync tag and does nothing else."""
    return tag == BACKGROUND_SYNC_TAG
