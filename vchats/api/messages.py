"""
Conversation and message endpoints.
"""
from typing import Annotated, Literal

from fastapi import APIRouter, BackgroundTasks, Depends, Query, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from vchats.api.deps import get_broadcast, get_dispatcher, get_presence, get_push_transport
from vchats.core.config import Settings, get_settings
from vchats.core.database import get_db, get_session_factory, session_scope
from vchats.core.exceptions import ChatError, TransientStoreError
from vchats.core.logging import get_logger
from vchats.core.security import get_current_user_id
from vchats.models.social import Profile
from vchats.schemas.events import MessageSnapshot
from vchats.schemas.message import (
    ConversationPreview,
    ErrorResponse,
    LatestMessagesResponse,
    MessageResponse,
    MessagesListResponse,
    ReactionRequest,
    SeenRequest,
    SeenResponse,
    SendMessageRequest,
    StatusResponse,
    UnreadCountResponse,
)
from vchats.schemas.notification import DeviceClass, FocusState
from vchats.services.channels import BroadcastChannel
from vchats.services.messaging import MessageService, format_chat_preview
from vchats.services.notifications import NotificationDispatcher
from vchats.services.push import PushService, PushTransport
from vchats.services.session import PresenceRegistry

logger = get_logger(__name__)

router = APIRouter(tags=["Messages"])

CurrentUser = Annotated[str, Depends(get_current_user_id)]


def get_message_service(
    db: Annotated[Session, Depends(get_db)],
    broadcast: Annotated[BroadcastChannel, Depends(get_broadcast)],
) -> MessageService:
    return MessageService(db, broadcast)


Messages = Annotated[MessageService, Depends(get_message_service)]


def push_new_message(
    session_factory: sessionmaker,
    transport: PushTransport,
    dispatcher: NotificationDispatcher,
    message: MessageSnapshot,
) -> None:
    """Background task: relay a push for ``message`` to its receiver."""
    with session_scope(session_factory) as db:
        sender = db.get(Profile, message.sender_id)
        decision = dispatcher.dispatch(message, sender, FocusState(), DeviceClass.DESKTOP)
        payload = dispatcher.push_payload(decision)
        if payload is None:
            return
        result = PushService(db, transport).send(message.receiver_id, payload)
    logger.debug(
        "New message push relayed",
        extra={"extra_data": {"message_id": message.id, "result": result.value}},
    )


@router.get(
    "/conversations/latest",
    response_model=LatestMessagesResponse,
    summary="Latest message per conversation",
)
async def latest_messages(
    user_id: CurrentUser,
    service: Messages,
    settings: Annotated[Settings, Depends(get_settings)],
) -> LatestMessagesResponse:
    data = [
        ConversationPreview(
            peer_id=message.other_party(user_id),
            preview=format_chat_preview(message, settings.chat_preview_length),
            message=MessageResponse.model_validate(message),
        )
        for message in service.latest_messages(user_id)
    ]
    return LatestMessagesResponse(data=data)


@router.get(
    "/conversations/{peer_id}/messages",
    response_model=MessagesListResponse,
    responses={503: {"model": ErrorResponse, "description": "Store unavailable, retry"}},
    summary="List conversation messages",
    description="Messages between the caller and peer, oldest first. Empty when the two may not message each other.",
)
async def list_messages(peer_id: str, user_id: CurrentUser, service: Messages) -> MessagesListResponse:
    messages = service.get_messages(user_id, peer_id)
    data = [MessageResponse.model_validate(message) for message in messages]
    return MessagesListResponse(data=data, total=len(data))


@router.post(
    "/conversations/{peer_id}/messages",
    response_model=MessageResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        403: {"model": ErrorResponse, "description": "Not friends or blocked; draft echoed back"},
        503: {"model": ErrorResponse, "description": "Store unavailable; draft echoed back"},
    },
    summary="Send a message",
)
async def send_message(
    peer_id: str,
    body: SendMessageRequest,
    user_id: CurrentUser,
    service: Messages,
    background_tasks: BackgroundTasks,
    session_factory: Annotated[sessionmaker, Depends(get_session_factory)],
    transport: Annotated[PushTransport, Depends(get_push_transport)],
    dispatcher: Annotated[NotificationDispatcher, Depends(get_dispatcher)],
    presence: Annotated[PresenceRegistry, Depends(get_presence)],
) -> MessageResponse:
    draft = body.model_dump(mode="json")
    try:
        message = service.send_message(user_id, peer_id, body.content, body.kind, body.image_url)
    except ChatError as e:
        e.details.setdefault("draft", draft)
        raise
    except SQLAlchemyError as e:
        service.db.rollback()
        raise TransientStoreError("Message could not be stored, try again", details={"draft": draft}) from e

    if not presence.is_connected(peer_id):
        background_tasks.add_task(
            push_new_message,
            session_factory,
            transport,
            dispatcher,
            MessageSnapshot.model_validate(message),
        )
    return MessageResponse.model_validate(message)


@router.delete(
    "/conversations/{peer_id}",
    response_model=StatusResponse,
    summary="Delete the whole conversation",
)
async def delete_chat(peer_id: str, user_id: CurrentUser, service: Messages) -> StatusResponse:
    service.delete_chat(user_id, peer_id)
    return StatusResponse()


@router.get(
    "/conversations/{peer_id}/unread",
    response_model=UnreadCountResponse,
    summary="Unread message count from peer",
)
async def unread_count(peer_id: str, user_id: CurrentUser, service: Messages) -> UnreadCountResponse:
    return UnreadCountResponse(peer_id=peer_id, count=service.unread_count(user_id, peer_id))


@router.post(
    "/conversations/{peer_id}/seen",
    response_model=SeenResponse,
    summary="Mark messages from peer as seen",
)
async def mark_seen(peer_id: str, body: SeenRequest, user_id: CurrentUser, service: Messages) -> SeenResponse:
    ids = service.mark_seen(user_id, body.message_ids, peer_id=peer_id)
    return SeenResponse(message_ids=ids)


@router.delete(
    "/messages/{message_id}",
    response_model=StatusResponse,
    responses={403: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
    summary="Delete a message for everyone or for the caller only",
)
async def delete_message(
    message_id: str,
    user_id: CurrentUser,
    service: Messages,
    scope: Annotated[Literal["everyone", "self"], Query(description="everyone tombstones, self hides")] = "self",
) -> StatusResponse:
    service.delete_message(message_id, user_id, scope)
    return StatusResponse()


@router.put(
    "/messages/{message_id}/reactions",
    response_model=MessageResponse,
    responses={403: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
    summary="Set the caller's reaction",
)
async def react(message_id: str, body: ReactionRequest, user_id: CurrentUser, service: Messages) -> MessageResponse:
    message = service.react(message_id, user_id, body.emoji)
    return MessageResponse.model_validate(message)
