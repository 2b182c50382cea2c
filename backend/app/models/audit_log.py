"""
Audit Log Database Model.

Append-only trail of every mutating billing operation.
"""

from sqlalchemy import Column, Integer, String, DateTime, JSON
from backend.app.db.session import Base
from backend.app.core.timeutils import utc_now


class AuditLog(Base):
    """
    Audit log entry.

    Entries are never updated or deleted. actor_user_id is None for events
    applied on behalf of the payment processor (webhooks).
    """
    __tablename__ = "audit_log"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    actor_user_id = Column(Integer, index=True, nullable=True)
    action = Column(String(100), nullable=False, index=True)

    entity_type = Column(String(50), nullable=True, index=True)
    entity_id = Column(String(64), nullable=True, index=True)

    details = Column(JSON, nullable=True)
    ip_address = Column(String(50), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False, index=True)

    def __repr__(self):
        return f"<AuditLog(id={self.id}, action='{self.action}', entity={self.entity_type}:{self.entity_id})>"
