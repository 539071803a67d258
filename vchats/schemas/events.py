"""
Conversation events delivered by the dual-channel subscriber.

Both channels speak loosely-shaped dict payloads; they are validated into
these closed variants at the channel boundary so the delivery state machine
only ever sees well-formed events.
"""
from datetime import datetime, timezone
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator
from pydantic import ValidationError as PydanticValidationError

from vchats.core.exceptions import InvalidEventError
from vchats.models.message import DeliveryState, MessageKind


class MessageSnapshot(BaseModel):
    """A message as seen by one client at one point in time."""

    model_config = ConfigDict(from_attributes=True, extra="ignore")

    id: str = Field(..., min_length=1)
    sender_id: str
    receiver_id: str
    content: str = ""
    kind: MessageKind = MessageKind.TEXT
    image_url: Optional[str] = None
    created_at: datetime
    delivery_state: DeliveryState = DeliveryState.SENT
    deleted_for_everyone: bool = False
    reactions: Dict[str, str] = Field(default_factory=dict)

    @field_validator("created_at")
    @classmethod
    def assume_utc(cls, v: datetime) -> datetime:
        # SQLite hands back naive datetimes; everything else is aware.
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    @field_validator("reactions", mode="before")
    @classmethod
    def none_reactions(cls, v):
        return v or {}

    @property
    def sort_key(self):
        return (self.created_at, self.id)


class MessageInserted(BaseModel):
    type: Literal["inserted"] = "inserted"
    message: MessageSnapshot


class MessageUpdated(BaseModel):
    """Covers tombstoning, reactions and per-message delivery receipts."""

    type: Literal["updated"] = "updated"
    message: MessageSnapshot


class MessageDeleted(BaseModel):
    type: Literal["deleted"] = "deleted"
    message_id: str


class BulkSeenUpdate(BaseModel):
    type: Literal["bulk_seen"] = "bulk_seen"
    message_ids: List[str]


ConversationEvent = Annotated[
    Union[MessageInserted, MessageUpdated, MessageDeleted, BulkSeenUpdate],
    Field(discriminator="type"),
]

_event_adapter = TypeAdapter(ConversationEvent)


def parse_event(data: Any) -> ConversationEvent:
    """
    Validate a raw payload into a conversation event.

    Raises:
        InvalidEventError: if the payload matches no variant
    """
    try:
        return _event_adapter.validate_python(data)
    except PydanticValidationError as e:
        raise InvalidEventError(
            "Malformed conversation event",
            details={"errors": e.errors(include_url=False)},
        ) from e


def event_to_dict(event: ConversationEvent) -> Dict[str, Any]:
    return event.model_dump(mode="json")
