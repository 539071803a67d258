"""
Pydantic schemas for the message endpoints.
"""
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field, model_validator

from vchats.models.message import DeliveryState, MessageKind


class SendMessageRequest(BaseModel):
    """Request schema for POST /conversations/{peer_id}/messages."""

    content: str = Field(default="", max_length=4096)
    kind: MessageKind = Field(default=MessageKind.TEXT)
    image_url: Optional[str] = Field(default=None, max_length=2048)

    model_config = {
        "json_schema_extra": {
            "example": {"content": "Hello", "kind": "text"}
        }
    }

    @model_validator(mode="after")
    def check_payload(self):
        if self.kind is MessageKind.IMAGE and not self.image_url:
            raise ValueError("image messages require image_url")
        if self.kind is MessageKind.TEXT and not self.content.strip():
            raise ValueError("text messages cannot be empty")
        return self


class MessageResponse(BaseModel):
    id: str
    sender_id: str
    receiver_id: str
    content: str
    kind: MessageKind
    image_url: Optional[str] = None
    created_at: datetime
    delivery_state: DeliveryState
    deleted_for_everyone: bool = False
    reactions: dict = Field(default_factory=dict)

    model_config = {"from_attributes": True}


class MessagesListResponse(BaseModel):
    data: List[MessageResponse]
    total: int


class ReactionRequest(BaseModel):
    emoji: str = Field(..., min_length=1, max_length=32)


class SeenRequest(BaseModel):
    """Ids to mark seen; omitted means every unseen message from the peer."""

    message_ids: Optional[List[str]] = None


class SeenResponse(BaseModel):
    message_ids: List[str]


class ConversationPreview(BaseModel):
    peer_id: str
    preview: str
    message: MessageResponse


class LatestMessagesResponse(BaseModel):
    data: List[ConversationPreview]


class UnreadCountResponse(BaseModel):
    peer_id: str
    count: int


class StatusResponse(BaseModel):
    status: str = Field(default="ok")


class HealthResponse(BaseModel):
    status: str
    checks: Optional[dict] = None


class ErrorResponse(BaseModel):
    detail: str
    error_code: Optional[str] = None
    details: Optional[dict] = None
    retryable: Optional[bool] = None
