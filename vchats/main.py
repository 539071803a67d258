"""
FastAPI application factory and configuration.
"""
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from vchats.core.config import get_settings
from vchats.core.database import init_db
from vchats.core.exceptions import ChatError, TransientStoreError
from vchats.core.logging import setup_logging, get_logger
from vchats.api import friends, health, messages, push, realtime
from vchats.services.channels import BroadcastChannel
from vchats.services.session import PresenceRegistry


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    logger = get_logger(__name__)
    logger.info("Starting application...")

    init_db()
    logger.info("Database initialized")

    yield

    logger.info(
        "Shutting down application...",
        extra={"extra_data": {"listeners": app.state.broadcast.listener_count()}},
    )


async def chat_error_handler(request: Request, exc: ChatError) -> JSONResponse:
    logger = get_logger(__name__)
    logger.info(
        "Request rejected",
        extra={"extra_data": {"path": request.url.path, "error_code": exc.error_code}},
    )
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


async def store_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    logger = get_logger(__name__)
    logger.error(
        "Store error",
        exc_info=exc,
        extra={"extra_data": {"path": request.url.path}},
    )
    error = TransientStoreError("Store unavailable, try again")
    return JSONResponse(status_code=error.http_status, content=error.to_dict())


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    setup_logging()
    logger = get_logger(__name__)

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Realtime chat relay: messages, friendships, live sessions and web push",
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # Process-wide realtime collaborators
    app.state.broadcast = BroadcastChannel()
    app.state.presence = PresenceRegistry()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.app_origin],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(ChatError, chat_error_handler)
    app.add_exception_handler(SQLAlchemyError, store_error_handler)

    app.include_router(health.router)
    app.include_router(messages.router)
    app.include_router(friends.router)
    app.include_router(push.router)
    app.include_router(realtime.router)

    logger.info(
        "Application created",
        extra={
            "extra_data": {
                "app_name": settings.app_name,
                "version": settings.app_version,
                "debug": settings.debug,
            }
        }
    )

    return app


# Create the application instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run("vchats.main:app", host=settings.host, port=settings.port, reload=settings.debug)
