"""
Pydantic schemas for the push relay.
"""
from typing import Optional

from pydantic import BaseModel, Field


class PushSubscriptionKeys(BaseModel):
    p256dh: str = Field(..., min_length=1)
    auth: str = Field(..., min_length=1)


class BrowserPushSubscription(BaseModel):
    """The JSON form of a browser ``PushSubscription``."""

    endpoint: str = Field(..., min_length=1)
    keys: PushSubscriptionKeys
    expirationTime: Optional[float] = None


class SubscribeRequest(BaseModel):
    subscription: BrowserPushSubscription


class PushPayload(BaseModel):
    """What the service worker's ``push`` handler receives."""

    title: str
    message: str
    url: Optional[str] = None
    icon: Optional[str] = None
    userId: Optional[str] = Field(default=None, description="Sender id")
    senderName: Optional[str] = None


class PushSendRequest(BaseModel):
    """Signed relay call: deliver ``payload`` to ``user_id``'s subscription."""

    user_id: str = Field(..., min_length=1)
    payload: PushPayload


class PushSendResponse(BaseModel):
    status: str


class VapidKeyResponse(BaseModel):
    key: Optional[str] = None
