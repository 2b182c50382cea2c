"""
Client database model.

A gym member who buys programs. Stripe customer id is cached here once a
checkout completes so saved cards can be charged directly later.
"""

from sqlalchemy import Column, Integer, String, Boolean, DateTime, ForeignKey, Text
from backend.app.db.session import Base
from backend.app.core.timeutils import utc_now


class Client(Base):
    __tablename__ = "clients"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    email = Column(String(255), unique=True, index=True, nullable=False)
    phone = Column(String(50), nullable=True)

    stripe_customer_id = Column(String(255), nullable=True, index=True)
    assigned_trainer_id = Column(Integer, ForeignKey('users.id'), nullable=True, index=True)

    notes = Column(Text, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False)

    def __repr__(self):
        return f"<Client(id={self.id}, email='{self.email}')>"
