"""
Profile, friend request, blocking and contact visibility endpoints.
"""
from typing import Annotated

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from vchats.core.database import get_db
from vchats.core.security import get_current_user_id
from vchats.models.social import FriendshipStatus
from vchats.schemas.message import ErrorResponse, StatusResponse
from vchats.schemas.social import (
    ContactList,
    FriendRequestCreate,
    FriendRequestList,
    FriendRequestResponse,
    FriendshipStatusResponse,
    ProfileResponse,
    ProfileUpdate,
)
from vchats.services.social import FriendService

router = APIRouter(tags=["Friends"])

CurrentUser = Annotated[str, Depends(get_current_user_id)]


def get_friend_service(db: Annotated[Session, Depends(get_db)]) -> FriendService:
    return FriendService(db)


Friends = Annotated[FriendService, Depends(get_friend_service)]


@router.put("/profiles/me", response_model=ProfileResponse, summary="Create or update the caller's profile")
async def upsert_profile(body: ProfileUpdate, user_id: CurrentUser, friends: Friends) -> ProfileResponse:
    profile = friends.profiles.upsert(user_id, email=body.email, name=body.name, avatar_url=body.avatar_url)
    return ProfileResponse.model_validate(profile)


@router.get(
    "/profiles/{profile_id}",
    response_model=ProfileResponse,
    responses={404: {"model": ErrorResponse}},
    summary="Read a profile",
)
async def get_profile(profile_id: str, friends: Friends) -> ProfileResponse:
    return ProfileResponse.model_validate(friends.profiles.get_or_404(profile_id))


@router.post(
    "/friends/requests",
    response_model=FriendRequestResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Send a friend request",
    description="Returns the existing request if the pair already has one, in either direction.",
)
async def send_request(body: FriendRequestCreate, user_id: CurrentUser, friends: Friends) -> FriendRequestResponse:
    return FriendRequestResponse.model_validate(friends.send_request(user_id, body.receiver_id))


@router.get("/friends/requests/pending", response_model=FriendRequestList, summary="Requests awaiting the caller")
async def pending_requests(user_id: CurrentUser, friends: Friends) -> FriendRequestList:
    return FriendRequestList(
        data=[FriendRequestResponse.model_validate(request) for request in friends.pending_for(user_id)]
    )


@router.post(
    "/friends/requests/{request_id}/accept",
    response_model=FriendRequestResponse,
    responses={403: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
    summary="Accept a friend request",
)
async def accept_request(request_id: str, user_id: CurrentUser, friends: Friends) -> FriendRequestResponse:
    return FriendRequestResponse.model_validate(friends.accept(request_id, user_id))


@router.post(
    "/friends/requests/{request_id}/reject",
    response_model=FriendRequestResponse,
    responses={403: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
    summary="Reject a friend request",
)
async def reject_request(request_id: str, user_id: CurrentUser, friends: Friends) -> FriendRequestResponse:
    return FriendRequestResponse.model_validate(friends.reject(request_id, user_id))


@router.get("/friends", response_model=ContactList, summary="Accepted contacts, hidden ones excluded")
async def list_friends(user_id: CurrentUser, friends: Friends) -> ContactList:
    data = []
    for friend_id in friends.friends_of(user_id):
        profile = friends.profiles.get_or_create(friend_id)
        data.append(ProfileResponse.model_validate(profile))
    friends.db.commit()
    return ContactList(data=data)


@router.get("/friends/status/{peer_id}", response_model=FriendshipStatusResponse, summary="Relationship with peer")
async def friendship_status(peer_id: str, user_id: CurrentUser, friends: Friends) -> FriendshipStatusResponse:
    request = friends.get_status(user_id, peer_id)
    return FriendshipStatusResponse(
        peer_id=peer_id,
        status=FriendshipStatus(request.status) if request else None,
        request=FriendRequestResponse.model_validate(request) if request else None,
        blocked=friends.profiles.is_blocked(user_id, peer_id),
        blocked_by=friends.profiles.is_blocked(peer_id, user_id),
        can_message=friends.can_message(user_id, peer_id),
    )


@router.put("/blocks/{peer_id}", response_model=StatusResponse, summary="Block a user")
async def block_user(peer_id: str, user_id: CurrentUser, friends: Friends) -> StatusResponse:
    friends.profiles.block(user_id, peer_id)
    return StatusResponse()


@router.delete("/blocks/{peer_id}", response_model=StatusResponse, summary="Unblock a user")
async def unblock_user(peer_id: str, user_id: CurrentUser, friends: Friends) -> StatusResponse:
    friends.profiles.unblock(user_id, peer_id)
    return StatusResponse()


@router.put("/contacts/{peer_id}/hidden", response_model=StatusResponse, summary="Hide a contact")
async def hide_contact(peer_id: str, user_id: CurrentUser, friends: Friends) -> StatusResponse:
    friends.profiles.hide_contact(user_id, peer_id)
    return StatusResponse()


@router.delete("/contacts/{peer_id}/hidden", response_model=StatusResponse, summary="Unhide a contact")
async def unhide_contact(peer_id: str, user_id: CurrentUser, friends: Friends) -> StatusResponse:
    friends.profiles.unhide_contact(user_id, peer_id)
    return StatusResponse()
