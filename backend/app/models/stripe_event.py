"""
Processed Stripe event register.

Lets the webhook endpoint acknowledge an exact redelivery without
re-running its handler.
"""

from sqlalchemy import Column, Integer, String, DateTime
from backend.app.db.session import Base
from backend.app.core.timeutils import utc_now


class StripeEvent(Base):
    __tablename__ = "stripe_events"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    stripe_event_id = Column(String(255), unique=True, nullable=False, index=True)
    type = Column(String(100), nullable=False, index=True)
    processed_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)

    def __repr__(self):
        return f"<StripeEvent(id={self.stripe_event_id}, type='{self.type}')>"
