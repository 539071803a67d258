"""
Notification dispatch for incoming messages.

The dispatcher decides whether a message from the peer should surface as a
system notification and builds what the service worker needs to show it.
It never shows anything itself; callers hand the decision to a websocket
client or to the push relay.
"""
import re
import time
from typing import Any, Callable, Optional
from urllib.parse import urlencode

from vchats.core.logging import get_logger
from vchats.models.message import MessageKind
from vchats.models.social import FALLBACK_NAME, resolve_display_name
from vchats.schemas.events import MessageSnapshot
from vchats.schemas.notification import (
    DeviceClass,
    FocusState,
    NotificationAction,
    NotificationData,
    NotificationDecision,
    NotificationOptions,
)
from vchats.schemas.push import PushPayload

logger = get_logger(__name__)

DEFAULT_ICON = "/logo.svg"
IMAGE_PREVIEW = "📷 Sent you an image"
ELLIPSIS = "..."

DESKTOP_VIBRATION = [200, 100, 200]
MOBILE_VIBRATION = [300, 100, 300, 100, 300]

_MOBILE_AGENT = re.compile(
    r"Android|webOS|iPhone|iPad|iPod|BlackBerry|IEMobile|Opera Mini",
    re.IGNORECASE,
)


def detect_device_class(user_agent: Optional[str]) -> DeviceClass:
    if user_agent and _MOBILE_AGENT.search(user_agent):
        return DeviceClass.MOBILE
    return DeviceClass.DESKTOP


def build_deep_link(origin: str, peer_id: str, reply: bool = False) -> str:
    """URL that reopens the conversation with ``peer_id``."""
    query = {"chat": peer_id}
    if reply:
        query["reply"] = "true"
    return f"{origin}?{urlencode(query)}"


def display_name(profile: Any) -> str:
    """Display name for a profile row, a profile dict or ``None``."""
    if profile is None:
        return FALLBACK_NAME
    if isinstance(profile, dict):
        return resolve_display_name(profile.get("name"), profile.get("email"))
    return resolve_display_name(getattr(profile, "name", None), getattr(profile, "email", None))


def truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + ELLIPSIS


def message_preview(message: MessageSnapshot, limit: int) -> str:
    if message.kind is MessageKind.IMAGE:
        return IMAGE_PREVIEW
    return truncate(message.content, limit)


class NotificationDispatcher:
    """
    Decides per incoming message whether to raise a notification.

    Args:
        origin: Web client origin used for deep links
        preview_length: Text previews longer than this are cut and get "..."
        clock: Returns the current time in seconds; injectable for tests
    """

    def __init__(
        self,
        origin: str,
        preview_length: int = 100,
        icon: str = DEFAULT_ICON,
        clock: Callable[[], float] = time.time,
    ):
        self.origin = origin
        self.preview_length = preview_length
        self.icon = icon
        self.clock = clock

    def dispatch(
        self,
        message: MessageSnapshot,
        sender_profile: Any,
        focus_state: FocusState,
        device_class: DeviceClass,
        viewer_id: Optional[str] = None,
    ) -> NotificationDecision:
        if focus_state.is_attentive:
            return NotificationDecision.suppressed("focused")
        if message.deleted_for_everyone:
            return NotificationDecision.suppressed("deleted")
        if viewer_id is not None and message.sender_id == viewer_id:
            return NotificationDecision.suppressed("own_message")

        name = display_name(sender_profile)
        body = message_preview(message, self.preview_length)
        avatar = self._avatar(sender_profile)
        data = NotificationData(
            user_id=message.sender_id,
            url=build_deep_link(self.origin, message.sender_id),
            sender_name=name,
            timestamp=int(self.clock() * 1000),
            full_message=message.content if message.kind is MessageKind.TEXT else None,
        )

        if device_class is DeviceClass.MOBILE:
            title = f"💬 {name}"
            options = NotificationOptions(
                body=body,
                icon=avatar,
                badge=self.icon,
                tag=f"mobile-message-{message.sender_id}",
                data=data,
                vibrate=MOBILE_VIBRATION,
                require_interaction=True,
                actions=[
                    NotificationAction(action="reply", title="💬 Reply", icon=self.icon),
                    NotificationAction(action="view", title="👁️ View", icon=self.icon),
                    NotificationAction(action="dismiss", title="❌ Dismiss", icon=self.icon),
                ],
            )
        else:
            title = name
            options = NotificationOptions(
                body=body,
                icon=avatar,
                badge=self.icon,
                tag=f"message-{message.sender_id}",
                data=data,
                vibrate=DESKTOP_VIBRATION,
                require_interaction=False,
                actions=[
                    NotificationAction(action="reply", title="Reply", icon=self.icon),
                    NotificationAction(action="view", title="View Chat", icon=self.icon),
                ],
            )

        logger.debug(
            "Notification raised",
            extra={"extra_data": {"message_id": message.id, "device_class": device_class.value}},
        )
        return NotificationDecision(show=True, title=title, options=options)

    def push_payload(self, decision: NotificationDecision) -> Optional[PushPayload]:
        """Relay payload for a shown decision, for viewers with no open client."""
        if not decision.show or decision.options is None:
            return None
        data = decision.options.data
        return PushPayload(
            title=decision.title,
            message=decision.options.body,
            url=data.url,
            icon=decision.options.icon,
            userId=data.user_id,
            senderName=data.sender_name,
        )

    def _avatar(self, profile: Any) -> str:
        if isinstance(profile, dict):
            avatar = profile.get("avatar_url")
        else:
            avatar = getattr(profile, "avatar_url", None)
        return avatar or self.icon
