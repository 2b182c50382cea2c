"""
Purchase database model.

One billing arrangement between a client and a trainer. Rows are never
deleted: cancellation and failure are statuses.
"""

from sqlalchemy import Column, Integer, String, Boolean, DateTime, Date, Enum, ForeignKey, Numeric, inspect
from sqlalchemy.orm import validates
from backend.app.db.session import Base
from backend.app.models.purchase_enums import PurchaseStatus, enum_values
from backend.app.core.exceptions import CommissionSnapshotImmutableError
from backend.app.core.timeutils import utc_now

COMMISSION_FIELDS = ("trainer_commission_rate", "trainer_amount", "owner_amount")


class Purchase(Base):
    """
    Purchase model.

    The commission snapshot (rate, trainer_amount, owner_amount) is stamped
    once when the purchase is created and can never be reassigned, so
    history reflects the deal terms in force at charge time.
    """
    __tablename__ = "purchases"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    # Parties (immutable)
    client_id = Column(Integer, ForeignKey('clients.id'), nullable=False, index=True)
    trainer_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)

    # Commercial terms
    program_id = Column(Integer, ForeignKey('programs.id'), nullable=True)
    custom_program_name = Column(String(255), nullable=True)
    amount = Column(Numeric(10, 2), nullable=False)
    is_recurring = Column(Boolean, default=True, nullable=False)
    duration_months = Column(Integer, nullable=True)  # None = ongoing
    start_date = Column(Date, nullable=True)
    end_date = Column(Date, nullable=True)

    # Commission snapshot (write-once)
    trainer_commission_rate = Column(Numeric(4, 2), nullable=False)
    trainer_amount = Column(Numeric(10, 2), nullable=False)
    owner_amount = Column(Numeric(10, 2), nullable=False)

    # Processor correlation
    stripe_subscription_id = Column(String(255), nullable=True, index=True)
    stripe_payment_intent_id = Column(String(255), nullable=True)
    stripe_checkout_session_id = Column(String(255), nullable=True, index=True)
    payment_link_id = Column(Integer, nullable=True)

    status = Column(
        Enum(PurchaseStatus, values_callable=enum_values),
        default=PurchaseStatus.PENDING,
        nullable=False,
        index=True,
    )

    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False, index=True)
    updated_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)

    @validates(*COMMISSION_FIELDS)
    def _write_once(self, key, value):
        state = inspect(self)
        if state.persistent or state.detached or self.__dict__.get(key) is not None:
            raise CommissionSnapshotImmutableError(key)
        return value

    def __repr__(self):
        return f"<Purchase(id={self.id}, status='{self.status.value}', amount={self.amount})>"
