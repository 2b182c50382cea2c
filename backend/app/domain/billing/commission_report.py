"""
Commission Report Aggregator (Domain Logic).

Per-trainer revenue and payout for purchases created in a date range.
Sums are accumulated as exact Decimals and rounded to cents once, when the
report is rendered.
"""

import re
from datetime import date, datetime, time, timezone
from decimal import Decimal
from typing import Any, Dict, Tuple
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.config import settings
from backend.app.core.exceptions import BusinessValidationError
from backend.app.domain.billing.commission import round_money
from backend.app.models.purchase import Purchase
from backend.app.models.purchase_enums import PurchaseStatus
from backend.app.models.user import User

REPORTABLE_STATUSES = (PurchaseStatus.ACTIVE, PurchaseStatus.COMPLETED)
DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def parse_report_date(value: str, field: str) -> date:
    if not value or not DATE_PATTERN.match(value):
        raise BusinessValidationError(f"{field} must be a date in YYYY-MM-DD format", details={"field": field})
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise BusinessValidationError(f"{field} is not a valid date", details={"field": field})


def report_bounds(start: date, end: date, tz_name: str = None) -> Tuple[datetime, datetime]:
    """UTC instants covering whole business-local days start..end inclusive."""
    tz = ZoneInfo(tz_name or settings.business_timezone)
    lower = datetime.combine(start, time.min, tzinfo=tz).astimezone(timezone.utc)
    upper = datetime.combine(end, time.max, tzinfo=tz).astimezone(timezone.utc)
    return lower, upper


def format_period_label(start: date, end: date) -> str:
    """
    Human-readable range.

    Jan 1-15, 2026 / Jan 20 - Feb 3, 2026 / Dec 20, 2025 - Jan 3, 2026
    """
    if start.year != end.year:
        return f"{start:%b} {start.day}, {start.year} - {end:%b} {end.day}, {end.year}"
    if start.month != end.month:
        return f"{start:%b} {start.day} - {end:%b} {end.day}, {end.year}"
    if start.day == end.day:
        return f"{start:%b} {start.day}, {start.year}"
    return f"{start:%b} {start.day}-{end.day}, {end.year}"


class CommissionReportService:

    @staticmethod
    async def generate(db: AsyncSession, start_date: str, end_date: str) -> Dict[str, Any]:
        """
        Build the commission report for an inclusive date range.

        Raises:
            BusinessValidationError: malformed dates, or start after end
        """
        start = parse_report_date(start_date, "start_date")
        end = parse_report_date(end_date, "end_date")
        if start > end:
            raise BusinessValidationError("start_date must be on or before end_date")

        lower, upper = report_bounds(start, end)
        result = await db.execute(
            select(Purchase, User)
            .join(User, User.id == Purchase.trainer_id)
            .where(
                Purchase.status.in_(REPORTABLE_STATUSES),
                Purchase.created_at >= lower,
                Purchase.created_at <= upper,
            )
            .order_by(Purchase.created_at.asc(), Purchase.id.asc())
        )

        rows: Dict[int, Dict[str, Any]] = {}
        for purchase, trainer in result.all():
            row = rows.get(trainer.id)
            if row is None:
                row = rows[trainer.id] = {
                    "id": trainer.id,
                    "name": trainer.name,
                    "role": trainer.role.value,
                    "clients": set(),
                    "revenue": Decimal("0"),
                    "trainer_amount": Decimal("0"),
                    "owner_amount": Decimal("0"),
                    # Earliest purchase in range
                    "commission_rate": Decimal(purchase.trainer_commission_rate),
                }
            row["clients"].add(purchase.client_id)
            row["revenue"] += Decimal(purchase.amount)
            row["trainer_amount"] += Decimal(purchase.trainer_amount)
            row["owner_amount"] += Decimal(purchase.owner_amount)

        ordered = sorted(rows.values(), key=lambda r: r["revenue"], reverse=True)
        total_revenue = sum((r["revenue"] for r in ordered), Decimal("0"))
        total_payout = sum((r["trainer_amount"] for r in ordered), Decimal("0"))
        total_owner = sum((r["owner_amount"] for r in ordered), Decimal("0"))

        return {
            "summary": {
                "total_revenue": float(round_money(total_revenue)),
                "total_trainer_payout": float(round_money(total_payout)),
                "total_owner_cut": float(round_money(total_owner)),
                "period_label": format_period_label(start, end),
            },
            "trainers": [
                {
                    "id": r["id"],
                    "name": r["name"],
                    "role": r["role"],
                    "client_count": len(r["clients"]),
                    "revenue": float(round_money(r["revenue"])),
                    "trainer_amount": float(round_money(r["trainer_amount"])),
                    "owner_amount": float(round_money(r["owner_amount"])),
                    "commission_rate": float(r["commission_rate"]),
                }
                for r in ordered
            ],
        }
