"""
Client API Endpoints.

Saved payment methods, listed so staff can pick a card for a direct charge.
"""

from typing import List

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.db.session import get_db
from backend.app.core.exceptions import ResourceNotFoundError
from backend.app.core.guards import require_role, roster_guard
from backend.app.api.v1.endpoints.payments import ALL_STAFF
from backend.app.models.client import Client
from backend.app.schemas.payments import PaymentMethodResponse
from backend.app.services.stripe_gateway import StripeGateway, get_payment_gateway

router = APIRouter(prefix="/clients", tags=["Clients"])


@router.get("/{client_id}/payment-methods", response_model=List[PaymentMethodResponse])
async def list_payment_methods(
    client_id: int,
    current_user: dict = Depends(require_role(ALL_STAFF)),
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_payment_gateway),
):
    client = await db.get(Client, client_id)
    if not client:
        raise ResourceNotFoundError("Client", client_id)
    roster_guard.enforce(client.assigned_trainer_id, current_user)

    if not client.stripe_customer_id:
        return []

    methods = await gateway.list_card_payment_methods(client.stripe_customer_id)
    return [
        PaymentMethodResponse(
            id=pm["id"],
            brand=(pm.get("card") or {}).get("brand"),
            last4=(pm.get("card") or {}).get("last4"),
            exp_month=(pm.get("card") or {}).get("exp_month"),
            exp_year=(pm.get("card") or {}).get("exp_year"),
        )
        for pm in methods
    ]
