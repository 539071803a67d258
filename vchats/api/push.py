"""
Push relay endpoints.
"""
import json
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import ValidationError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from vchats.api.deps import get_push_transport
from vchats.core.config import Settings, get_settings
from vchats.core.database import get_db
from vchats.core.logging import get_logger
from vchats.core.security import get_current_user_id, get_signed_body
from vchats.schemas.message import ErrorResponse, StatusResponse
from vchats.schemas.push import PushSendRequest, PushSendResponse, SubscribeRequest, VapidKeyResponse
from vchats.services.push import PushService, PushTransport

logger = get_logger(__name__)

router = APIRouter(prefix="/api/push", tags=["Push"])


def get_push_service(
    db: Annotated[Session, Depends(get_db)],
    transport: Annotated[PushTransport, Depends(get_push_transport)],
) -> PushService:
    return PushService(db, transport)


@router.get("/vapid-public-key", response_model=VapidKeyResponse, summary="VAPID application server key")
async def vapid_public_key(settings: Annotated[Settings, Depends(get_settings)]) -> VapidKeyResponse:
    return VapidKeyResponse(key=settings.vapid_public_key)


@router.post(
    "/subscribe",
    response_model=StatusResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Store the caller's push subscription",
)
async def subscribe(
    body: SubscribeRequest,
    user_id: Annotated[str, Depends(get_current_user_id)],
    service: Annotated[PushService, Depends(get_push_service)],
) -> StatusResponse:
    service.subscribe(user_id, body.subscription)
    return StatusResponse(status="subscribed")


@router.delete("/subscribe", response_model=StatusResponse, summary="Remove the caller's push subscription")
async def unsubscribe(
    user_id: Annotated[str, Depends(get_current_user_id)],
    service: Annotated[PushService, Depends(get_push_service)],
) -> StatusResponse:
    removed = service.unsubscribe(user_id)
    return StatusResponse(status="removed" if removed else "not_found")


@router.post(
    "/send",
    response_model=PushSendResponse,
    responses={
        401: {"model": ErrorResponse, "description": "Invalid signature"},
        422: {"model": ErrorResponse, "description": "Validation error"},
    },
    summary="Relay a push notification",
    description="Server-to-server. Requires a valid HMAC-SHA256 X-Signature over the body.",
)
async def send_push(
    signed_body: Annotated[bytes, Depends(get_signed_body)],
    service: Annotated[PushService, Depends(get_push_service)],
) -> PushSendResponse:
    try:
        request = PushSendRequest.model_validate(json.loads(signed_body))
    except json.JSONDecodeError as e:
        logger.warning(f"Invalid JSON in relay request: {e}")
        raise HTTPException(status_code=422, detail="Invalid JSON")
    except ValidationError as e:
        logger.warning(f"Validation error in relay request: {e}")
        raise HTTPException(status_code=422, detail=str(e))

    result = await run_in_threadpool(service.send, request.user_id, request.payload)
    return PushSendResponse(status=result.value)
