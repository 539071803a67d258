"""
Notification decisions and the service-worker notification surface.

Field names are snake_case in Python and camelCase on the wire, matching the
browser ``Notification`` options the service worker passes to
``showNotification``.
"""
import enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class DeviceClass(str, enum.Enum):
    MOBILE = "mobile"
    DESKTOP = "desktop"


class FocusState(_CamelModel):
    """The viewer's window state as reported by the client."""

    visibility_state: Literal["visible", "hidden"] = "hidden"
    has_focus: bool = False

    @property
    def is_attentive(self) -> bool:
        return self.visibility_state == "visible" and self.has_focus


class NotificationAction(_CamelModel):
    action: Literal["reply", "view", "dismiss"]
    title: str
    icon: Optional[str] = None


class NotificationData(_CamelModel):
    user_id: Optional[str] = None
    url: Optional[str] = None
    sender_name: Optional[str] = None
    timestamp: Optional[int] = None
    full_message: Optional[str] = None


class NotificationOptions(_CamelModel):
    body: str
    icon: str
    badge: str
    tag: str
    renotify: bool = True
    data: NotificationData
    vibrate: List[int] = Field(default_factory=list)
    require_interaction: bool = False
    silent: bool = False
    actions: List[NotificationAction] = Field(default_factory=list)


class NotificationDecision(_CamelModel):
    show: bool
    reason: Optional[str] = None
    title: Optional[str] = None
    options: Optional[NotificationOptions] = None

    @classmethod
    def suppressed(cls, reason: str) -> "NotificationDecision":
        return cls(show=False, reason=reason)


class ClickOutcome(_CamelModel):
    """What the service worker did in response to a notification click."""

    action: str
    closed: bool = True
    focused_client: Optional[str] = None
    posted_message: Optional[Dict[str, Any]] = None
    opened_url: Optional[str] = None
