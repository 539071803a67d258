"""
Stored Web Push subscriptions, one per user.
"""
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, String, Text

from vchats.core.database import Base


class PushSubscription(Base):
    __tablename__ = "push_subscriptions"

    user_id = Column(String(64), primary_key=True)
    endpoint = Column(Text, nullable=False)
    p256dh = Column(Text, nullable=False)
    auth = Column(Text, nullable=False)
    created_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<PushSubscription(user_id={self.user_id})>"

    def to_subscription_info(self) -> dict:
        """Shape expected by the browser PushSubscription / pywebpush."""
        return {
            "endpoint": self.endpoint,
            "keys": {"p256dh": self.p256dh, "auth": self.auth},
        }
