"""
Shared FastAPI dependencies for the realtime collaborators.

The broadcast channel and presence registry live on ``app.state`` for the
lifetime of the process; the change feed belongs to the session factory in
``vchats.core.database``. Each is exposed through a dependency so tests can
swap it.
"""
from fastapi import Depends
from fastapi.requests import HTTPConnection

from vchats.core.config import Settings, get_settings
from vchats.core.database import get_change_feed
from vchats.services.channels import BroadcastChannel, ChangeFeed
from vchats.services.notifications import NotificationDispatcher
from vchats.services.push import PushTransport, WebPushTransport
from vchats.services.session import PresenceRegistry
from vchats.services.subscriber import DualChannelSubscriber


def get_broadcast(connection: HTTPConnection) -> BroadcastChannel:
    return connection.app.state.broadcast


def get_presence(connection: HTTPConnection) -> PresenceRegistry:
    return connection.app.state.presence


def get_push_transport(settings: Settings = Depends(get_settings)) -> PushTransport:
    return WebPushTransport(settings)


def get_dispatcher(settings: Settings = Depends(get_settings)) -> NotificationDispatcher:
    return NotificationDispatcher(
        origin=settings.app_origin,
        preview_length=settings.notification_preview_length,
    )


def get_subscriber(
    broadcast: BroadcastChannel = Depends(get_broadcast),
    feed: ChangeFeed = Depends(get_change_feed),
) -> DualChannelSubscriber:
    return DualChannelSubscriber(broadcast, feed)
