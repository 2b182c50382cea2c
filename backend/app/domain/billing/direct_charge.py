"""
Direct Charge Processor (Domain Logic).

Charges a client's saved card by creating a Stripe subscription directly.
The charge is synchronous, so the purchase starts ACTIVE; a decline leaves
no purchase row at all.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.exceptions import (
    BusinessValidationError,
    PaymentProcessorError,
    ResourceNotFoundError,
)
from backend.app.core.guards import roster_guard
from backend.app.core.timeutils import term_end, utc_now
from backend.app.domain.billing.checkout import resolve_program
from backend.app.domain.billing.commission import calc_commission
from backend.app.domain.billing.ledger import PurchaseLedger
from backend.app.models.client import Client
from backend.app.models.purchase_enums import PurchaseStatus
from backend.app.models.user import User
from backend.app.schemas.payments import DirectChargeRequest
from backend.app.services.audit import AuditAction, EntityType, log_event
from backend.app.services.stripe_gateway import StripeGateway, current_period_end, to_cents

logger = logging.getLogger(__name__)


class DirectChargeService:

    @staticmethod
    async def charge_saved_card(
        db: AsyncSession,
        gateway: StripeGateway,
        request: DirectChargeRequest,
        current_user: dict,
        ip_address: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Start a monthly subscription on a client's saved card.

        Flow:
        1. Validate client, access, saved card and assigned trainer
        2. Compute the commission split from the trainer's role
        3. Create price + subscription (declines raise PaymentDeclinedError)
        4. Insert the ACTIVE purchase; cancel the subscription if that fails
        5. Audit

        Returns:
            {purchase_id, subscription_id, amount, duration_months, next_billing_date}
        """
        client = await db.get(Client, request.client_id)
        if not client:
            raise ResourceNotFoundError("Client", request.client_id)
        roster_guard.enforce(client.assigned_trainer_id, current_user)

        if not client.stripe_customer_id:
            raise BusinessValidationError(
                "Client has no saved payment method. Use a payment link instead."
            )
        if client.assigned_trainer_id is None:
            raise BusinessValidationError("Client has no assigned trainer")
        trainer = await db.get(User, client.assigned_trainer_id)
        if not trainer:
            raise ResourceNotFoundError("Trainer", client.assigned_trainer_id)

        program = await resolve_program(db, request.program_id)
        split = calc_commission(request.amount, trainer.role)

        now = utc_now()
        is_ongoing = request.duration_months == 0
        end = None if is_ongoing else term_end(now, request.duration_months)
        product_name = (program.name if program else None) or request.custom_program_name or "Custom Program"

        metadata = {
            "client_id": str(client.id),
            "trainer_id": str(trainer.id),
            "duration_months": str(request.duration_months),
        }
        price_id = await gateway.create_recurring_price(
            to_cents(request.amount),
            product_name,
            {"client_id": str(client.id), "trainer_id": str(trainer.id)},
        )
        subscription = await gateway.create_subscription(
            customer_id=client.stripe_customer_id,
            price_id=price_id,
            payment_method_id=request.payment_method_id,
            metadata=metadata,
            cancel_at=int(end.timestamp()) if end else None,
        )
        subscription_id = subscription["id"]
        client_id = client.id

        try:
            purchase = await PurchaseLedger.create_purchase(
                db,
                client_id=client.id,
                trainer_id=trainer.id,
                program_id=program.id if program else None,
                custom_program_name=request.custom_program_name,
                amount=request.amount,
                split=split,
                status=PurchaseStatus.ACTIVE,
                is_recurring=True,
                duration_months=None if is_ongoing else request.duration_months,
                start_date=now.date(),
                end_date=end.date() if end else None,
                stripe_subscription_id=subscription_id,
            )
            await log_event(
                db,
                action=AuditAction.SAVED_CARD_CHARGED,
                entity_type=EntityType.PURCHASE,
                entity_id=purchase.id,
                actor_user_id=current_user["user_id"],
                details={
                    "client_id": client.id,
                    "subscription_id": subscription_id,
                    "amount": str(request.amount),
                    "program": product_name,
                    "duration_months": request.duration_months,
                    "trainer_amount": str(split.trainer_amount),
                    "owner_amount": str(split.owner_amount),
                },
                ip_address=ip_address,
                commit=False,
            )
            await db.commit()
        except Exception as e:
            await db.rollback()
            logger.error("Recording purchase for subscription %s failed: %s", subscription_id, e)
            await DirectChargeService._compensate(db, gateway, subscription_id, client_id, current_user)
            raise PaymentProcessorError(
                "Failed to create purchase record",
                details={"subscription_id": subscription_id},
            ) from e

        period_end = current_period_end(subscription)
        return {
            "purchase_id": purchase.id,
            "subscription_id": subscription_id,
            "amount": float(request.amount),
            "duration_months": request.duration_months,
            "next_billing_date": (
                datetime.fromtimestamp(period_end, tz=timezone.utc) if period_end else None
            ),
        }

    @staticmethod
    async def _compensate(
        db: AsyncSession,
        gateway: StripeGateway,
        subscription_id: str,
        client_id: int,
        current_user: dict,
    ) -> None:
        """Cancel a subscription we could not record, so it never bills unseen."""
        cancelled = True
        try:
            await gateway.cancel_subscription(subscription_id)
        except Exception as e:
            cancelled = False
            logger.critical("Compensating cancel of subscription %s failed: %s", subscription_id, e)

        try:
            await log_event(
                db,
                action=AuditAction.SUBSCRIPTION_COMPENSATED,
                entity_type=EntityType.CLIENT,
                entity_id=client_id,
                actor_user_id=current_user["user_id"],
                details={"subscription_id": subscription_id, "cancelled": cancelled},
            )
        except Exception as e:
            await db.rollback()
            logger.error("Could not audit compensating cancel for %s: %s", subscription_id, e)
