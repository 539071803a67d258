"""
Pydantic schemas for profiles, friend requests and blocking.
"""
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from vchats.models.social import FriendshipStatus


class ProfileUpdate(BaseModel):
    email: Optional[str] = Field(default=None, max_length=320)
    name: Optional[str] = Field(default=None, max_length=255)
    avatar_url: Optional[str] = Field(default=None, max_length=2048)


class ProfileResponse(BaseModel):
    id: str
    email: Optional[str] = None
    name: Optional[str] = None
    avatar_url: Optional[str] = None
    display_name: str

    model_config = {"from_attributes": True}


class FriendRequestCreate(BaseModel):
    receiver_id: str = Field(..., min_length=1, max_length=64)


class FriendRequestResponse(BaseModel):
    id: str
    sender_id: str
    receiver_id: str
    status: FriendshipStatus
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class FriendRequestList(BaseModel):
    data: List[FriendRequestResponse]


class FriendshipStatusResponse(BaseModel):
    peer_id: str
    status: Optional[FriendshipStatus] = None
    request: Optional[FriendRequestResponse] = None
    blocked: bool = False
    blocked_by: bool = False
    can_message: bool = False


class ContactList(BaseModel):
    data: List[ProfileResponse]
