"""
Program catalog model.

Read-only to billing: prices and durations only prefill a checkout.
"""

from sqlalchemy import Column, Integer, String, Boolean, DateTime, Numeric, Text
from backend.app.db.session import Base
from backend.app.core.timeutils import utc_now


class Program(Base):
    __tablename__ = "programs"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    default_price = Column(Numeric(10, 2), nullable=True)
    default_duration_months = Column(Integer, nullable=True)
    is_recurring = Column(Boolean, default=True, nullable=False)
    is_addon = Column(Boolean, default=False, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False)

    def __repr__(self):
        return f"<Program(id={self.id}, name='{self.name}')>"
