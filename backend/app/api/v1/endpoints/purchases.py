"""
Purchase API Endpoints.

Read-only purchase records. Trainers see only purchases for their roster.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.db.session import get_db
from backend.app.core.guards import require_role, roster_guard
from backend.app.api.v1.endpoints.payments import ALL_STAFF
from backend.app.domain.billing.ledger import PurchaseLedger
from backend.app.models.client import Client
from backend.app.models.purchase_enums import PurchaseStatus
from backend.app.schemas.purchases import PurchaseListResponse, PurchaseResponse

router = APIRouter(prefix="/purchases", tags=["Purchases"])


@router.get("", response_model=PurchaseListResponse)
async def list_purchases(
    status: Optional[PurchaseStatus] = Query(None),
    client_id: Optional[int] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    current_user: dict = Depends(require_role(ALL_STAFF)),
    db: AsyncSession = Depends(get_db),
):
    purchases = await PurchaseLedger.list_purchases(
        db,
        trainer_id=roster_guard.filter_by_roster(current_user),
        client_id=client_id,
        status=status,
        limit=limit,
        offset=offset,
    )
    return PurchaseListResponse(purchases=purchases, total=len(purchases))


@router.get("/{purchase_id}", response_model=PurchaseResponse)
async def get_purchase(
    purchase_id: int,
    current_user: dict = Depends(require_role(ALL_STAFF)),
    db: AsyncSession = Depends(get_db),
):
    purchase = await PurchaseLedger.get(db, purchase_id)
    client = await db.get(Client, purchase.client_id)
    roster_guard.enforce(client.assigned_trainer_id if client else None, current_user, "purchase")
    return purchase
