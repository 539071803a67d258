"""
Health check endpoints for liveness and readiness probes.
"""
from typing import Annotated

from fastapi import APIRouter, Depends, Response
from sqlalchemy.orm import sessionmaker

from vchats.core.config import Settings, get_settings
from vchats.core.database import check_db_connection, get_session_factory
from vchats.core.logging import get_logger
from vchats.schemas.message import HealthResponse

logger = get_logger(__name__)

router = APIRouter(prefix="/health", tags=["Health"])


@router.get(
    "/live",
    response_model=HealthResponse,
    summary="Liveness probe",
    description="Always returns 200 to indicate the service is alive."
)
async def liveness() -> HealthResponse:
    return HealthResponse(status="ok")


@router.get(
    "/ready",
    response_model=HealthResponse,
    summary="Readiness probe",
    description="Returns 200 if the store is reachable and push relay keys are configured."
)
async def readiness(
    response: Response,
    settings: Annotated[Settings, Depends(get_settings)],
    session_factory: Annotated[sessionmaker, Depends(get_session_factory)],
) -> HealthResponse:
    """
    Readiness probe.

    Checks:
    - the database is reachable
    - both VAPID keys are configured, so pushes can be signed
    """
    checks = {}
    is_ready = True

    db_ok = check_db_connection(session_factory)
    checks["database"] = "ok" if db_ok else "failed"
    if not db_ok:
        is_ready = False
        logger.warning("Readiness check failed: database not reachable")

    vapid_ok = settings.is_vapid_configured
    checks["vapid_keys"] = "ok" if vapid_ok else "not configured"
    if not vapid_ok:
        is_ready = False
        logger.warning("Readiness check failed: VAPID keys not configured")

    checks["relay_secret"] = "ok" if settings.is_relay_secret_configured else "not configured"

    if is_ready:
        return HealthResponse(status="ok", checks=checks)
    response.status_code = 503
    return HealthResponse(status="not ready", checks=checks)
