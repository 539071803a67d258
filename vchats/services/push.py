"""
Web Push relay.

Subscriptions are stored one per user. Delivery is best effort: a push that
fails is logged and reported back as a status, never raised. Endpoints the
push service reports as gone (HTTP 404/410) are pruned.
"""
import enum
import json
from typing import Optional, Protocol

from pywebpush import WebPushException, webpush
from sqlalchemy.orm import Session

from vchats.core.config import Settings
from vchats.core.logging import get_logger
from vchats.models.push import PushSubscription
from vchats.schemas.push import BrowserPushSubscription, PushPayload

logger = get_logger(__name__)

GONE_STATUSES = frozenset({404, 410})


class PushResult(str, enum.Enum):
    SENT = "sent"
    NO_SUBSCRIPTION = "no_subscription"
    PRUNED = "pruned"
    FAILED = "failed"


class PushTransport(Protocol):
    def send(self, subscription_info: dict, data: str) -> None:
        """Deliver one push; raises ``WebPushException`` on rejection."""


class WebPushTransport:
    """``pywebpush`` signed with the relay's VAPID key."""

    def __init__(self, settings: Settings):
        self.private_key = settings.vapid_private_key
        self.claims_email = settings.vapid_claims_email
        self.ttl = settings.push_ttl

    def send(self, subscription_info: dict, data: str) -> None:
        webpush(
            subscription_info=subscription_info,
            data=data,
            vapid_private_key=self.private_key,
            vapid_claims={"sub": self.claims_email},
            ttl=self.ttl,
        )


def _status_code(error: WebPushException) -> Optional[int]:
    response = getattr(error, "response", None)
    return getattr(response, "status_code", None)


class PushService:
    def __init__(self, db: Session, transport: PushTransport):
        self.db = db
        self.transport = transport

    def subscribe(self, user_id: str, subscription: BrowserPushSubscription) -> PushSubscription:
        """Store (or replace) ``user_id``'s subscription."""
        record = self.db.get(PushSubscription, user_id)
        if record is None:
            record = PushSubscription(user_id=user_id)
            self.db.add(record)
        record.endpoint = subscription.endpoint
        record.p256dh = subscription.keys.p256dh
        record.auth = subscription.keys.auth
        self.db.commit()
        logger.info("Push subscription stored", extra={"extra_data": {"user_id": user_id}})
        return record

    def unsubscribe(self, user_id: str) -> bool:
        record = self.db.get(PushSubscription, user_id)
        if record is None:
            return False
        self.db.delete(record)
        self.db.commit()
        return True

    def send(self, user_id: str, payload: PushPayload) -> PushResult:
        record = self.db.get(PushSubscription, user_id)
        if record is None:
            return PushResult.NO_SUBSCRIPTION

        data = json.dumps(payload.model_dump(exclude_none=True))
        try:
            self.transport.send(record.to_subscription_info(), data)
        except WebPushException as e:
            status_code = _status_code(e)
            if status_code in GONE_STATUSES:
                self.db.delete(record)
                self.db.commit()
                logger.info(
                    "Pruned expired push subscription",
                    extra={"extra_data": {"user_id": user_id, "status_code": status_code}},
                )
                return PushResult.PRUNED
            logger.warning(
                "Push delivery failed",
                extra={"extra_data": {"user_id": user_id, "status_code": status_code, "error": str(e)}},
            )
            return PushResult.FAILED

        logger.debug("Push delivered", extra={"extra_data": {"user_id": user_id}})
        return PushResult.SENT
