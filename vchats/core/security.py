"""
Request identity and relay signature checks.

Authentication itself is delegated to the hosting platform: the gateway in
front of this service forwards the authenticated user id in ``X-User-Id``.
Server-to-server push relay calls are signed with HMAC-SHA256 over the raw
body using ``RELAY_SECRET``.
"""
import hashlib
import hmac
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request

from vchats.core.config import Settings, get_settings
from vchats.core.logging import get_logger

logger = get_logger(__name__)

SIGNATURE_HEADER = "X-Signature"


def compute_signature(secret: str, body: bytes) -> str:
    """Hex-encoded HMAC-SHA256 of ``body``."""
    return hmac.new(
        key=secret.encode("utf-8"),
        msg=body,
        digestmod=hashlib.sha256,
    ).hexdigest()


def verify_signature(secret: str, body: bytes, signature: str) -> bool:
    return hmac.compare_digest(compute_signature(secret, body), signature)


async def get_current_user_id(
    x_user_id: Optional[str] = Header(default=None, alias="X-User-Id"),
) -> str:
    """The caller's user id, as forwarded by the platform gateway."""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="missing user identity")
    return x_user_id.strip()


async def get_signed_body(
    request: Request,
    settings: Settings = Depends(get_settings),
) -> bytes:
    """
    Return the raw body of a relay call after checking its signature.

    Raises:
        HTTPException: 401 if the secret is unset, or the signature is
            missing or wrong
    """
    signature = request.headers.get(SIGNATURE_HEADER)
    if not signature:
        logger.warning("Relay request missing signature header")
        raise HTTPException(status_code=401, detail="invalid signature")

    if not settings.is_relay_secret_configured:
        logger.error("RELAY_SECRET not configured, rejecting relay request")
        raise HTTPException(status_code=401, detail="invalid signature")

    body = await request.body()
    if not verify_signature(settings.relay_secret, body, signature):
        logger.warning(
            "Relay signature verification failed",
            extra={"extra_data": {"received_signature": signature[:16] + "..."}},
        )
        raise HTTPException(status_code=401, detail="invalid signature")

    return body
