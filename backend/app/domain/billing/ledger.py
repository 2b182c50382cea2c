"""
Purchase Ledger (Domain Logic).

Owns Purchase and PaymentLink rows. Status changes are narrow single-row
compare-and-set updates, validated by the purchase state machine. The
commission snapshot is never part of an update statement.

Nothing here commits: the calling service owns the transaction.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.exceptions import ConcurrentModificationError, ResourceNotFoundError
from backend.app.core.timeutils import utc_now
from backend.app.domain.billing.commission import CommissionSplit
from backend.app.domain.billing.purchase_state import plan_transition
from backend.app.models.payment_link import PaymentLink
from backend.app.models.purchase import Purchase
from backend.app.models.purchase_enums import PaymentLinkStatus, PurchaseStatus

# Columns a status transition may stamp alongside the new status.
CORRELATION_FIELDS = frozenset({
    "stripe_subscription_id",
    "stripe_payment_intent_id",
    "stripe_checkout_session_id",
    "payment_link_id",
})


def _check_correlation_fields(fields: dict) -> None:
    illegal = set(fields) - CORRELATION_FIELDS
    if illegal:
        raise ValueError(f"Purchase update may not touch: {', '.join(sorted(illegal))}")


class PurchaseLedger:

    @staticmethod
    async def create_purchase(
        db: AsyncSession,
        *,
        client_id: int,
        trainer_id: int,
        amount: Decimal,
        split: CommissionSplit,
        status: PurchaseStatus,
        is_recurring: bool = True,
        program_id: Optional[int] = None,
        custom_program_name: Optional[str] = None,
        duration_months: Optional[int] = None,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        stripe_subscription_id: Optional[str] = None,
    ) -> Purchase:
        """Insert a purchase with its commission snapshot. Flushes to assign the id."""
        purchase = Purchase(
            client_id=client_id,
            trainer_id=trainer_id,
            program_id=program_id,
            custom_program_name=custom_program_name,
            amount=amount,
            is_recurring=is_recurring,
            duration_months=duration_months,
            start_date=start_date,
            end_date=end_date,
            trainer_commission_rate=split.rate,
            trainer_amount=split.trainer_amount,
            owner_amount=split.owner_amount,
            stripe_subscription_id=stripe_subscription_id,
            status=status,
        )
        db.add(purchase)
        await db.flush()
        return purchase

    @staticmethod
    async def get(db: AsyncSession, purchase_id: int) -> Purchase:
        purchase = await db.get(Purchase, purchase_id)
        if not purchase:
            raise ResourceNotFoundError("Purchase", purchase_id)
        return purchase

    @staticmethod
    async def get_by_subscription_id(db: AsyncSession, subscription_id: str) -> Optional[Purchase]:
        result = await db.execute(
            select(Purchase)
            .where(Purchase.stripe_subscription_id == subscription_id)
            .order_by(Purchase.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def list_purchases(
        db: AsyncSession,
        trainer_id: Optional[int] = None,
        client_id: Optional[int] = None,
        status: Optional[PurchaseStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Purchase]:
        query = select(Purchase).order_by(Purchase.created_at.desc(), Purchase.id.desc())
        if trainer_id is not None:
            query = query.where(Purchase.trainer_id == trainer_id)
        if client_id is not None:
            query = query.where(Purchase.client_id == client_id)
        if status is not None:
            query = query.where(Purchase.status == status)
        result = await db.execute(query.limit(limit).offset(offset))
        return list(result.scalars().all())

    @staticmethod
    async def transition(
        db: AsyncSession,
        purchase: Purchase,
        target: PurchaseStatus,
        **correlation,
    ) -> bool:
        """
        Move a purchase to `target`, optionally stamping correlation ids.

        Returns:
            True if the row changed, False for a same-state no-op

        Raises:
            TerminalStateError / InvalidTransitionError: rejected by the state machine
            ConcurrentModificationError: status changed since `purchase` was read
        """
        _check_correlation_fields(correlation)
        observed = purchase.status
        if not plan_transition(purchase.id, observed, target):
            return False

        values = {"status": target, "updated_at": utc_now()}
        values.update({k: v for k, v in correlation.items() if v is not None})

        result = await db.execute(
            update(Purchase)
            .where(Purchase.id == purchase.id, Purchase.status == observed)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise ConcurrentModificationError(purchase.id, PurchaseStatus(observed).value)

        await db.refresh(purchase)
        return True

    @staticmethod
    async def stamp_correlation(db: AsyncSession, purchase: Purchase, **correlation) -> None:
        """Record processor ids on a purchase without changing its status."""
        _check_correlation_fields(correlation)
        values = {k: v for k, v in correlation.items() if v is not None}
        if not values:
            return
        values["updated_at"] = utc_now()
        await db.execute(
            update(Purchase)
            .where(Purchase.id == purchase.id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await db.refresh(purchase)

    @staticmethod
    async def create_payment_link(
        db: AsyncSession,
        purchase_id: int,
        url: str,
        session_id: str,
        expires_at: datetime,
        created_by: Optional[int] = None,
    ) -> PaymentLink:
        link = PaymentLink(
            purchase_id=purchase_id,
            url=url,
            stripe_checkout_session_id=session_id,
            status=PaymentLinkStatus.ACTIVE,
            expires_at=expires_at,
            created_by=created_by,
        )
        db.add(link)
        await db.flush()
        return link

    @staticmethod
    async def get_link_by_session_id(db: AsyncSession, session_id: str) -> Optional[PaymentLink]:
        result = await db.execute(
            select(PaymentLink).where(PaymentLink.stripe_checkout_session_id == session_id)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def mark_link_used(db: AsyncSession, session_id: str) -> bool:
        """
        Consume the payment link for a checkout session.

        Returns:
            True if the link was consumed now; False if it was already used
            (its original used_at is kept) or no link exists for the session
        """
        result = await db.execute(
            update(PaymentLink)
            .where(
                PaymentLink.stripe_checkout_session_id == session_id,
                PaymentLink.status != PaymentLinkStatus.USED,
            )
            .values(status=PaymentLinkStatus.USED, used_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    @staticmethod
    async def stale_links(db: AsyncSession, now: Optional[datetime] = None) -> List[PaymentLink]:
        """Active links past their expiry, oldest first."""
        now = now or utc_now()
        result = await db.execute(
            select(PaymentLink)
            .where(
                PaymentLink.status == PaymentLinkStatus.ACTIVE,
                PaymentLink.expires_at < now,
            )
            .order_by(PaymentLink.expires_at.asc(), PaymentLink.id.asc())
        )
        return list(result.scalars().all())

    @staticmethod
    async def expire_link(db: AsyncSession, link: PaymentLink) -> Optional[int]:
        """
        Mark a link expired and cancel its purchase if still pending.

        Callers must first make sure the checkout session was not paid.

        Returns:
            id of the cancelled purchase, or None
        """
        link.status = PaymentLinkStatus.EXPIRED
        cancelled = None
        purchase = await db.get(Purchase, link.purchase_id)
        if purchase and purchase.status == PurchaseStatus.PENDING:
            if await PurchaseLedger.transition(db, purchase, PurchaseStatus.CANCELLED):
                cancelled = purchase.id
        await db.flush()
        return cancelled
