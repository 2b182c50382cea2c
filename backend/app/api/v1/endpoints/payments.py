"""
Payment API Endpoints.

Checkout links, direct charges on saved cards, failed-payment retry and the
stale payment-link sweep.
"""

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.db.session import get_db
from backend.app.models.enums import UserRole
from backend.app.core.guards import require_role
from backend.app.domain.billing.checkout import CheckoutService
from backend.app.domain.billing.direct_charge import DirectChargeService
from backend.app.domain.billing.subscription_actions import SubscriptionActions
from backend.app.schemas.payments import (
    CheckoutRequest,
    CheckoutResponse,
    DirectChargeRequest,
    DirectChargeResponse,
    RetryPaymentRequest,
    StaleLinkSweepResponse,
    SubscriptionActionResponse,
)
from backend.app.services.audit import AuditAction, log_event
from backend.app.services.stripe_gateway import StripeGateway, get_payment_gateway

router = APIRouter(prefix="/payments", tags=["Payments"])

ALL_STAFF = [UserRole.ADMIN, UserRole.MANAGER, UserRole.TRAINER]


def client_ip(request: Request):
    return request.client.host if request.client else None


@router.post("/checkout", response_model=CheckoutResponse, status_code=status.HTTP_201_CREATED)
async def create_checkout_link(
    payload: CheckoutRequest,
    request: Request,
    current_user: dict = Depends(require_role(ALL_STAFF)),
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_payment_gateway),
):
    """
    Create a pending purchase and a hosted checkout link for it.

    Trainers may only bill their own clients, as themselves.
    """
    return await CheckoutService.create_checkout(db, gateway, payload, current_user, client_ip(request))


@router.post("/charge", response_model=DirectChargeResponse, status_code=status.HTTP_201_CREATED)
async def charge_saved_card(
    payload: DirectChargeRequest,
    request: Request,
    current_user: dict = Depends(require_role(ALL_STAFF)),
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_payment_gateway),
):
    """Start a subscription on the client's saved card. Declines return 400."""
    return await DirectChargeService.charge_saved_card(db, gateway, payload, current_user, client_ip(request))


@router.post("/retry", response_model=SubscriptionActionResponse)
async def retry_failed_payment(
    payload: RetryPaymentRequest,
    request: Request,
    current_user: dict = Depends(require_role(ALL_STAFF)),
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_payment_gateway),
):
    purchase = await SubscriptionActions.retry_payment(
        db, gateway, payload.purchase_id, current_user, client_ip(request)
    )
    return SubscriptionActionResponse(
        purchase_id=purchase.id, status=purchase.status, message="Payment succeeded"
    )


@router.post("/links/expire-stale", response_model=StaleLinkSweepResponse)
async def expire_stale_links(
    request: Request,
    current_user: dict = Depends(require_role([UserRole.ADMIN, UserRole.MANAGER])),
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_payment_gateway),
):
    """Expire unused links past their expiry and cancel their pending purchases."""
    result = await CheckoutService.sweep_stale_links(db, gateway)
    await log_event(
        db,
        action=AuditAction.PAYMENT_LINKS_EXPIRED,
        actor_user_id=current_user["user_id"],
        details={
            "links_expired": result["links_expired"],
            "purchases_cancelled": result["purchase_ids"],
            "paid_purchases_skipped": result["paid_purchase_ids"],
        },
        ip_address=client_ip(request),
        commit=False,
    )
    await db.commit()
    return StaleLinkSweepResponse(**result)
