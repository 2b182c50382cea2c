"""
Purchase Pydantic schemas.
"""

from pydantic import BaseModel
from datetime import datetime, date
from typing import Optional, List
from backend.app.models.purchase_enums import PurchaseStatus


class PurchaseResponse(BaseModel):
    """Schema for a purchase record."""
    id: int
    client_id: int
    trainer_id: int
    program_id: Optional[int]
    custom_program_name: Optional[str]
    amount: float
    is_recurring: bool
    duration_months: Optional[int]
    start_date: Optional[date]
    end_date: Optional[date]
    trainer_commission_rate: float
    trainer_amount: float
    owner_amount: float
    stripe_subscription_id: Optional[str]
    stripe_checkout_session_id: Optional[str]
    payment_link_id: Optional[int]
    status: PurchaseStatus
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class PurchaseListResponse(BaseModel):
    """Schema for a page of purchases."""
    purchases: List[PurchaseResponse]
    total: int
