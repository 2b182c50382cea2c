"""
Payment link database model.

Single-use, time-boxed pointer to a hosted Stripe checkout session.
"""

from sqlalchemy import Column, Integer, String, DateTime, Enum, ForeignKey, Text
from backend.app.db.session import Base
from backend.app.models.purchase_enums import PaymentLinkStatus, enum_values
from backend.app.core.timeutils import utc_now


class PaymentLink(Base):
    """
    Payment link model.

    ACTIVE -> USED is permanent. Expiry is advisory: Stripe refuses an
    expired session, and the stale-link sweep marks it EXPIRED.
    """
    __tablename__ = "payment_links"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    purchase_id = Column(Integer, ForeignKey('purchases.id'), nullable=False, index=True)

    url = Column(Text, nullable=False)
    stripe_checkout_session_id = Column(String(255), unique=True, nullable=False, index=True)

    status = Column(
        Enum(PaymentLinkStatus, values_callable=enum_values),
        default=PaymentLinkStatus.ACTIVE,
        nullable=False,
        index=True,
    )
    expires_at = Column(DateTime(timezone=True), nullable=False)
    used_at = Column(DateTime(timezone=True), nullable=True)

    created_by = Column(Integer, ForeignKey('users.id'), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)

    def __repr__(self):
        return f"<PaymentLink(id={self.id}, purchase_id={self.purchase_id}, status='{self.status.value}')>"
