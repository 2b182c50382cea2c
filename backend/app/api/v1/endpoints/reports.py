"""
Commission Report Endpoint.

Admin and manager only.
"""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.db.session import get_db
from backend.app.models.enums import UserRole
from backend.app.core.guards import require_role
from backend.app.domain.billing.commission_report import CommissionReportService
from backend.app.schemas.reports import CommissionReportResponse

router = APIRouter(prefix="/reports", tags=["Reports"])


@router.get("/commissions", response_model=CommissionReportResponse)
async def commission_report(
    start_date: str = Query(..., description="YYYY-MM-DD, inclusive"),
    end_date: str = Query(..., description="YYYY-MM-DD, inclusive"),
    current_user: dict = Depends(require_role([UserRole.ADMIN, UserRole.MANAGER])),
    db: AsyncSession = Depends(get_db),
):
    """Per-trainer revenue, trainer payout and owner cut for the range."""
    return await CommissionReportService.generate(db, start_date, end_date)
