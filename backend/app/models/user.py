"""
User database model.

Team members (admin, managers, trainers). Accounts are managed by the
identity service; billing reads them for authorization and commission roles.
"""

from sqlalchemy import Column, Integer, String, Boolean, DateTime, Enum
from backend.app.db.session import Base
from backend.app.models.enums import UserRole
from backend.app.models.purchase_enums import enum_values
from backend.app.core.timeutils import utc_now


class User(Base):
    """Team member who can sell programs and earn commission."""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    name = Column(String(255), nullable=False)
    role = Column(Enum(UserRole, values_callable=enum_values), default=UserRole.TRAINER, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False)

    def __repr__(self):
        return f"<User(id={self.id}, email='{self.email}', role='{self.role.value}')>"
