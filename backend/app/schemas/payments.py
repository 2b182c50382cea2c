"""
Payment Pydantic schemas.

Request and response models for checkout links, direct charges, retries,
subscription actions and the stale-link sweep.
"""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, EmailStr, Field, model_validator

from backend.app.models.purchase_enums import PurchaseStatus


class NewClient(BaseModel):
    """Client created inline with a checkout link."""
    name: str = Field(..., min_length=1, max_length=255)
    email: EmailStr
    phone: Optional[str] = Field(None, max_length=50)


class CheckoutRequest(BaseModel):
    """Schema for creating a hosted checkout payment link."""
    client_id: Optional[int] = Field(None, description="Existing client")
    new_client: Optional[NewClient] = Field(None, description="Client to create with this link")
    trainer_id: int
    program_id: Optional[int] = None
    custom_program_name: Optional[str] = Field(None, max_length=255)
    amount: Optional[Decimal] = Field(None, gt=0, max_digits=10, decimal_places=2,
                                      description="Monthly (or one-time) price; defaults to the program price")
    duration_months: Optional[int] = Field(None, ge=1, le=120, description="None = ongoing")
    is_recurring: bool = True

    @model_validator(mode="after")
    def check_references(self):
        if (self.client_id is None) == (self.new_client is None):
            raise ValueError("Provide exactly one of client_id or new_client")
        if self.program_id is None and not self.custom_program_name:
            raise ValueError("Provide program_id or custom_program_name")
        return self


class CheckoutResponse(BaseModel):
    url: str
    session_id: str
    purchase_id: int
    expires_at: datetime


class DirectChargeRequest(BaseModel):
    """Schema for charging a client's saved card."""
    client_id: int
    payment_method_id: str = Field(..., min_length=1)
    program_id: Optional[int] = None
    custom_program_name: Optional[str] = Field(None, max_length=255)
    amount: Decimal = Field(..., gt=0, max_digits=10, decimal_places=2)
    duration_months: int = Field(default=0, ge=0, le=12, description="0 = ongoing")


class DirectChargeResponse(BaseModel):
    purchase_id: int
    subscription_id: str
    amount: float
    duration_months: int
    next_billing_date: Optional[datetime]


class RetryPaymentRequest(BaseModel):
    purchase_id: int


class SubscriptionActionResponse(BaseModel):
    """Result of pause / resume / cancel / retry."""
    purchase_id: int
    status: PurchaseStatus
    message: str


class StaleLinkSweepResponse(BaseModel):
    links_expired: int
    purchases_cancelled: int
    purchase_ids: List[int]
    paid_purchase_ids: List[int] = Field(default_factory=list, description="Sessions already paid; left for the webhook")


class PaymentMethodResponse(BaseModel):
    """Saved card, as listed for a direct charge."""
    id: str
    brand: Optional[str]
    last4: Optional[str]
    exp_month: Optional[int]
    exp_year: Optional[int]
