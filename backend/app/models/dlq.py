"""
Dead Letter Queue (DLQ) Model.

Stores webhook events whose processing failed, for operator visibility
while Stripe redelivers them.
"""

from sqlalchemy import Column, Integer, String, Text, DateTime, JSON, Enum
from backend.app.db.session import Base
from backend.app.core.timeutils import utc_now
import enum


class DLQStatus(str, enum.Enum):
    FAILED = "FAILED"
    RETRYING = "RETRYING"  # Failed again on a redelivery
    PROCESSED = "PROCESSED"  # A later redelivery succeeded
    ARCHIVED = "ARCHIVED"  # Gave up


class DeadLetterQueue(Base):
    """
    Dead Letter Queue table.
    One row per failing Stripe event id.
    """
    __tablename__ = "dead_letter_queue"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    task_name = Column(String(100), nullable=False, index=True)  # Stripe event type
    stripe_event_id = Column(String(255), nullable=True, unique=True, index=True)
    error_message = Column(Text, nullable=False)
    payload = Column(JSON, nullable=True)

    status = Column(Enum(DLQStatus), default=DLQStatus.FAILED, nullable=False, index=True)
    retry_count = Column(Integer, default=0)

    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    last_retry_at = Column(DateTime(timezone=True), nullable=True)

    def __repr__(self):
        return f"<DLQ(id={self.id}, task='{self.task_name}', status='{self.status}')>"
