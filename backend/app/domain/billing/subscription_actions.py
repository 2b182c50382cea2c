"""
Subscription Actions (Domain Logic).

Manual pause / resume / cancel / retry on a purchase's Stripe subscription.
The state machine is consulted before Stripe is called, so a rejected
transition never leaves Stripe and the ledger disagreeing.
"""

import logging
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.exceptions import BusinessValidationError, PaymentDeclinedError, TerminalStateError
from backend.app.core.guards import roster_guard
from backend.app.domain.billing.ledger import PurchaseLedger
from backend.app.domain.billing.purchase_state import is_terminal, plan_transition
from backend.app.models.client import Client
from backend.app.models.purchase import Purchase
from backend.app.models.purchase_enums import PurchaseStatus
from backend.app.services.audit import AuditAction, EntityType, log_event
from backend.app.services.stripe_gateway import StripeGateway

logger = logging.getLogger(__name__)


class SubscriptionActions:

    @staticmethod
    async def _load(db: AsyncSession, purchase_id: int, current_user: dict) -> Purchase:
        purchase = await PurchaseLedger.get(db, purchase_id)
        client = await db.get(Client, purchase.client_id)
        roster_guard.enforce(client.assigned_trainer_id if client else None, current_user, "purchase")
        if not purchase.stripe_subscription_id:
            raise BusinessValidationError("Purchase has no Stripe subscription")
        return purchase

    @staticmethod
    def _plan(purchase: Purchase, target: PurchaseStatus) -> bool:
        """
        Like plan_transition, but a terminal purchase is a conflict even when
        the request names its current status.
        """
        if is_terminal(purchase.status):
            raise TerminalStateError(purchase.id, purchase.status.value, PurchaseStatus(target).value)
        return plan_transition(purchase.id, purchase.status, target)

    @staticmethod
    async def _finish(
        db: AsyncSession,
        purchase: Purchase,
        target: PurchaseStatus,
        action: str,
        current_user: dict,
        ip_address: Optional[str],
        details: Optional[Dict[str, Any]] = None,
    ) -> Purchase:
        previous = purchase.status
        await PurchaseLedger.transition(db, purchase, target)
        await log_event(
            db,
            action=action,
            entity_type=EntityType.PURCHASE,
            entity_id=purchase.id,
            actor_user_id=current_user["user_id"],
            details={
                "subscription_id": purchase.stripe_subscription_id,
                "from": previous.value,
                "to": target.value,
                **(details or {}),
            },
            ip_address=ip_address,
            commit=False,
        )
        await db.commit()
        return purchase

    @staticmethod
    async def pause(
        db: AsyncSession, gateway: StripeGateway, purchase_id: int, current_user: dict, ip_address: str = None
    ) -> Purchase:
        purchase = await SubscriptionActions._load(db, purchase_id, current_user)
        if not SubscriptionActions._plan(purchase, PurchaseStatus.PAUSED):
            return purchase
        await gateway.pause_subscription(purchase.stripe_subscription_id)
        return await SubscriptionActions._finish(
            db, purchase, PurchaseStatus.PAUSED, AuditAction.SUBSCRIPTION_PAUSED, current_user, ip_address
        )

    @staticmethod
    async def resume(
        db: AsyncSession, gateway: StripeGateway, purchase_id: int, current_user: dict, ip_address: str = None
    ) -> Purchase:
        purchase = await SubscriptionActions._load(db, purchase_id, current_user)
        if not SubscriptionActions._plan(purchase, PurchaseStatus.ACTIVE):
            return purchase
        # failed -> active belongs to retry_payment
        if purchase.status != PurchaseStatus.PAUSED:
            raise BusinessValidationError("Only paused subscriptions can be resumed")
        await gateway.resume_subscription(purchase.stripe_subscription_id)
        return await SubscriptionActions._finish(
            db, purchase, PurchaseStatus.ACTIVE, AuditAction.SUBSCRIPTION_RESUMED, current_user, ip_address
        )

    @staticmethod
    async def cancel(
        db: AsyncSession, gateway: StripeGateway, purchase_id: int, current_user: dict, ip_address: str = None
    ) -> Purchase:
        purchase = await SubscriptionActions._load(db, purchase_id, current_user)
        if not SubscriptionActions._plan(purchase, PurchaseStatus.CANCELLED):
            return purchase
        await gateway.cancel_subscription(purchase.stripe_subscription_id)
        return await SubscriptionActions._finish(
            db, purchase, PurchaseStatus.CANCELLED, AuditAction.SUBSCRIPTION_CANCEL_REQUESTED,
            current_user, ip_address
        )

    @staticmethod
    async def retry_payment(
        db: AsyncSession, gateway: StripeGateway, purchase_id: int, current_user: dict, ip_address: str = None
    ) -> Purchase:
        """
        Retry the latest invoice of a failed subscription.

        An open invoice is paid now; one already paid (Stripe's own retry got
        there first) just reactivates the purchase. A decline is audited and
        raised as PaymentDeclinedError.
        """
        purchase = await SubscriptionActions._load(db, purchase_id, current_user)
        if purchase.status != PurchaseStatus.FAILED:
            raise BusinessValidationError("Only failed payments can be retried")

        invoice = await gateway.retrieve_latest_invoice(purchase.stripe_subscription_id)
        if not invoice:
            raise BusinessValidationError("No invoice found for this subscription")

        invoice_status = invoice.get("status")
        if invoice_status == "open":
            try:
                invoice = await gateway.pay_invoice(invoice["id"])
            except PaymentDeclinedError as e:
                await log_event(
                    db,
                    action=AuditAction.RETRY_PAYMENT_FAILED,
                    entity_type=EntityType.PURCHASE,
                    entity_id=purchase.id,
                    actor_user_id=current_user["user_id"],
                    details={"invoice_id": invoice["id"], "error": e.message},
                    ip_address=ip_address,
                )
                raise
        elif invoice_status != "paid":
            raise BusinessValidationError(f"Invoice is {invoice_status}; it cannot be retried")

        if invoice.get("status") != "paid":
            raise BusinessValidationError("Payment was not completed")

        logger.info("Retry succeeded for purchase %s (invoice %s)", purchase.id, invoice.get("id"))
        return await SubscriptionActions._finish(
            db, purchase, PurchaseStatus.ACTIVE, AuditAction.RETRY_PAYMENT_SUCCESS, current_user, ip_address,
            details={"invoice_id": invoice.get("id"), "amount_paid": invoice.get("amount_paid")},
        )
