"""
Subscription API Endpoints.

Manual pause / resume / cancel of a purchase's Stripe subscription.
"""

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.db.session import get_db
from backend.app.core.guards import require_role
from backend.app.api.v1.endpoints.payments import ALL_STAFF, client_ip
from backend.app.domain.billing.subscription_actions import SubscriptionActions
from backend.app.schemas.payments import SubscriptionActionResponse
from backend.app.services.stripe_gateway import StripeGateway, get_payment_gateway

router = APIRouter(prefix="/subscriptions", tags=["Subscriptions"])


@router.post("/{purchase_id}/pause", response_model=SubscriptionActionResponse)
async def pause_subscription(
    purchase_id: int,
    request: Request,
    current_user: dict = Depends(require_role(ALL_STAFF)),
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_payment_gateway),
):
    purchase = await SubscriptionActions.pause(db, gateway, purchase_id, current_user, client_ip(request))
    return SubscriptionActionResponse(purchase_id=purchase.id, status=purchase.status, message="Subscription paused")


@router.post("/{purchase_id}/resume", response_model=SubscriptionActionResponse)
async def resume_subscription(
    purchase_id: int,
    request: Request,
    current_user: dict = Depends(require_role(ALL_STAFF)),
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_payment_gateway),
):
    purchase = await SubscriptionActions.resume(db, gateway, purchase_id, current_user, client_ip(request))
    return SubscriptionActionResponse(purchase_id=purchase.id, status=purchase.status, message="Subscription resumed")


@router.post("/{purchase_id}/cancel", response_model=SubscriptionActionResponse)
async def cancel_subscription(
    purchase_id: int,
    request: Request,
    current_user: dict = Depends(require_role(ALL_STAFF)),
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_payment_gateway),
):
    purchase = await SubscriptionActions.cancel(db, gateway, purchase_id, current_user, client_ip(request))
    return SubscriptionActionResponse(purchase_id=purchase.id, status=purchase.status, message="Subscription cancelled")
