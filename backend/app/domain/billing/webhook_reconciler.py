"""
Webhook Reconciler (Domain Logic).

Applies verified Stripe events to the purchase ledger.

Each event runs in two phases:
1. Critical: ledger writes, the audit entry and the processed-event record,
   committed together. Any failure rolls back, lands in the dead-letter
   queue and is raised as ReconciliationError so Stripe redelivers.
2. Best-effort: caching the Stripe customer id and the welcome email, run
   after the commit. Failures are logged and never propagate.

Terminal purchases are never moved again; events that would do so are
acknowledged without change.
"""

import enum
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.exceptions import (
    InvalidTransitionError,
    ReconciliationError,
    TerminalStateError,
)
from backend.app.core.timeutils import utc_now
from backend.app.domain.billing.ledger import PurchaseLedger
from backend.app.domain.billing.purchase_state import can_transition
from backend.app.models.client import Client
from backend.app.models.dlq import DeadLetterQueue, DLQStatus
from backend.app.models.program import Program
from backend.app.models.purchase import Purchase
from backend.app.models.purchase_enums import PurchaseStatus
from backend.app.models.stripe_event import StripeEvent
from backend.app.models.user import User
from backend.app.services.audit import AuditAction, EntityType, log_event
from backend.app.services.email_service import EmailService

logger = logging.getLogger(__name__)


class WebhookEventType(str, enum.Enum):
    CHECKOUT_COMPLETED = "checkout.session.completed"
    INVOICE_PAID = "invoice.paid"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"


class WebhookOutcome(str, enum.Enum):
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"


def invoice_subscription_id(invoice: Dict[str, Any]) -> Optional[str]:
    """Subscription id of an invoice, across Stripe API versions."""
    subscription = invoice.get("subscription")
    if isinstance(subscription, dict):
        subscription = subscription.get("id")
    if subscription:
        return subscription
    parent = invoice.get("parent") or {}
    details = parent.get("subscription_details") or {}
    return details.get("subscription")


def _subscription_ran_its_term(subscription: Dict[str, Any]) -> bool:
    cancel_at = subscription.get("cancel_at")
    ended_at = subscription.get("ended_at") or subscription.get("canceled_at")
    return bool(cancel_at and ended_at and ended_at >= cancel_at)


class WebhookReconciler:
    """Dispatches one Stripe event to its handler."""

    HANDLERS: Dict[WebhookEventType, Callable[..., Awaitable[Optional[dict]]]] = {}

    def __init__(self, db: AsyncSession, email_service: EmailService):
        self.db = db
        self.email_service = email_service

    async def process(self, event: Dict[str, Any]) -> WebhookOutcome:
        event_id = event.get("id")
        event_type = event.get("type")
        try:
            kind = WebhookEventType(event_type)
        except ValueError:
            logger.info("Unhandled Stripe event type: %s", event_type)
            return WebhookOutcome.IGNORED

        if event_id and await self._already_processed(event_id):
            logger.info("Stripe event %s already processed", event_id)
            return WebhookOutcome.DUPLICATE

        obj = (event.get("data") or {}).get("object") or {}
        try:
            follow_up = await self.HANDLERS[kind](self, obj)
            if event_id:
                await self._record_processed(event_id, event_type)
            await self.db.commit()
        except Exception as e:
            await self.db.rollback()
            logger.error("Stripe event %s (%s) failed: %s", event_id, event_type, e)
            await self._dead_letter(event, e)
            if isinstance(e, ReconciliationError):
                raise
            raise ReconciliationError(
                "Webhook processing failed",
                details={"event_id": event_id, "type": event_type},
            ) from e

        if follow_up:
            await self._checkout_side_effects(**follow_up)
        return WebhookOutcome.PROCESSED

    # Critical phase

    async def _on_checkout_completed(self, session: Dict[str, Any]) -> Optional[dict]:
        metadata = session.get("metadata") or {}
        purchase_id = metadata.get("purchase_id")
        client_id = metadata.get("client_id")
        if not purchase_id or not client_id:
            raise ReconciliationError(
                "Missing purchase_id or client_id in checkout metadata",
                details={"session_id": session.get("id")},
            )

        purchase = await self.db.get(Purchase, int(purchase_id))
        if not purchase:
            raise ReconciliationError("Purchase not found", details={"purchase_id": purchase_id})

        changed = False
        if purchase.status == PurchaseStatus.PENDING:
            target = PurchaseStatus.ACTIVE if purchase.is_recurring else PurchaseStatus.COMPLETED
            changed = await PurchaseLedger.transition(
                self.db,
                purchase,
                target,
                stripe_subscription_id=session.get("subscription"),
                stripe_payment_intent_id=session.get("payment_intent"),
            )
        else:
            logger.info("Purchase %s already %s; checkout event acknowledged", purchase.id, purchase.status.value)

        link_consumed = False
        if session.get("id"):
            link_consumed = await PurchaseLedger.mark_link_used(self.db, session["id"])

        if changed:
            await log_event(
                self.db,
                action=AuditAction.CHECKOUT_COMPLETED,
                entity_type=EntityType.PURCHASE,
                entity_id=purchase.id,
                details={
                    "session_id": session.get("id"),
                    "subscription_id": session.get("subscription"),
                    "payment_intent_id": session.get("payment_intent"),
                    "amount_total": session.get("amount_total"),
                    "link_consumed": link_consumed,
                },
                commit=False,
            )

        return {
            "purchase_id": purchase.id,
            "client_id": int(client_id),
            "customer_id": session.get("customer"),
            "send_welcome": changed,
        }

    async def _on_invoice_paid(self, invoice: Dict[str, Any]) -> None:
        billing_reason = invoice.get("billing_reason")
        # The first invoice is covered by checkout.session.completed
        if billing_reason == "subscription_create":
            return None

        purchase = await self._purchase_for_invoice(invoice)
        if not purchase:
            return None

        await log_event(
            self.db,
            action=AuditAction.SUBSCRIPTION_RENEWED,
            entity_type=EntityType.PURCHASE,
            entity_id=purchase.id,
            details={
                "invoice_id": invoice.get("id"),
                "amount_paid": invoice.get("amount_paid"),
                "billing_reason": billing_reason,
            },
            commit=False,
        )
        return None

    async def _on_invoice_payment_failed(self, invoice: Dict[str, Any]) -> None:
        purchase = await self._purchase_for_invoice(invoice)
        if not purchase:
            return None

        if await self._apply(purchase, PurchaseStatus.FAILED):
            await log_event(
                self.db,
                action=AuditAction.PAYMENT_FAILED,
                entity_type=EntityType.PURCHASE,
                entity_id=purchase.id,
                details={
                    "invoice_id": invoice.get("id"),
                    "amount_due": invoice.get("amount_due"),
                    "attempt_count": invoice.get("attempt_count"),
                },
                commit=False,
            )
        return None

    async def _on_subscription_deleted(self, subscription: Dict[str, Any]) -> None:
        subscription_id = subscription.get("id")
        purchase = await PurchaseLedger.get_by_subscription_id(self.db, subscription_id) if subscription_id else None
        if not purchase:
            logger.info("Subscription %s is not tracked; ignoring deletion", subscription_id)
            return None

        # A term that ran out while paused or failed still ends as cancelled
        if _subscription_ran_its_term(subscription) and can_transition(purchase.status, PurchaseStatus.COMPLETED):
            target, action = PurchaseStatus.COMPLETED, AuditAction.SUBSCRIPTION_COMPLETED
        else:
            target, action = PurchaseStatus.CANCELLED, AuditAction.SUBSCRIPTION_CANCELLED

        if await self._apply(purchase, target):
            await log_event(
                self.db,
                action=action,
                entity_type=EntityType.PURCHASE,
                entity_id=purchase.id,
                details={
                    "subscription_id": subscription_id,
                    "cancel_at": subscription.get("cancel_at"),
                    "ended_at": subscription.get("ended_at"),
                },
                commit=False,
            )
        return None

    async def _purchase_for_invoice(self, invoice: Dict[str, Any]) -> Optional[Purchase]:
        subscription_id = invoice_subscription_id(invoice)
        if not subscription_id:
            return None
        purchase = await PurchaseLedger.get_by_subscription_id(self.db, subscription_id)
        if not purchase:
            logger.info("Invoice %s is for untracked subscription %s", invoice.get("id"), subscription_id)
        return purchase

    async def _apply(self, purchase: Purchase, target: PurchaseStatus) -> bool:
        """Transition, acknowledging events the state machine rejects."""
        try:
            return await PurchaseLedger.transition(self.db, purchase, target)
        except (TerminalStateError, InvalidTransitionError) as e:
            logger.warning("Ignoring event for purchase %s: %s", purchase.id, e.message)
            return False

    # Processed-event register and dead-letter queue

    async def _already_processed(self, event_id: str) -> bool:
        result = await self.db.execute(select(StripeEvent.id).where(StripeEvent.stripe_event_id == event_id))
        return result.scalar_one_or_none() is not None

    async def _record_processed(self, event_id: str, event_type: str) -> None:
        self.db.add(StripeEvent(stripe_event_id=event_id, type=event_type))
        result = await self.db.execute(
            select(DeadLetterQueue).where(DeadLetterQueue.stripe_event_id == event_id)
        )
        entry = result.scalar_one_or_none()
        if entry:
            entry.status = DLQStatus.PROCESSED
            entry.last_retry_at = utc_now()

    async def _dead_letter(self, event: Dict[str, Any], error: Exception) -> None:
        event_id = event.get("id")
        message = getattr(error, "message", None) or str(error) or type(error).__name__
        try:
            entry = None
            if event_id:
                result = await self.db.execute(
                    select(DeadLetterQueue).where(DeadLetterQueue.stripe_event_id == event_id)
                )
                entry = result.scalar_one_or_none()
            if entry:
                entry.status = DLQStatus.RETRYING
                entry.retry_count = (entry.retry_count or 0) + 1
                entry.error_message = message
                entry.last_retry_at = utc_now()
            else:
                self.db.add(DeadLetterQueue(
                    task_name=event.get("type") or "unknown",
                    stripe_event_id=event_id,
                    error_message=message,
                    payload=event,
                    status=DLQStatus.FAILED,
                    retry_count=0,
                ))
            await self.db.commit()
        except Exception as e:
            await self.db.rollback()
            logger.critical("Could not dead-letter Stripe event %s: %s", event_id, e)

    # Best-effort phase

    async def _checkout_side_effects(
        self,
        purchase_id: int,
        client_id: int,
        customer_id: Optional[str],
        send_welcome: bool,
    ) -> None:
        if customer_id:
            await self._save_customer_id(client_id, customer_id)
        if send_welcome:
            await self._send_welcome(purchase_id)

    async def _save_customer_id(self, client_id: int, customer_id: str) -> None:
        try:
            client = await self.db.get(Client, client_id)
            if client and client.stripe_customer_id != customer_id:
                client.stripe_customer_id = customer_id
                await self.db.commit()
        except Exception as e:
            await self.db.rollback()
            logger.error("Failed to save Stripe customer %s on client %s: %s", customer_id, client_id, e)
            try:
                await log_event(
                    self.db,
                    action=AuditAction.CUSTOMER_ID_SAVE_FAILED,
                    entity_type=EntityType.CLIENT,
                    entity_id=client_id,
                    details={"customer_id": customer_id, "error": str(e)},
                )
            except Exception as audit_error:
                await self.db.rollback()
                logger.error("Could not audit customer id failure: %s", audit_error)

    async def _send_welcome(self, purchase_id: int) -> None:
        try:
            purchase = await self.db.get(Purchase, purchase_id)
            client = await self.db.get(Client, purchase.client_id)
            trainer = await self.db.get(User, purchase.trainer_id)
            program = await self.db.get(Program, purchase.program_id) if purchase.program_id else None
            program_name = (program.name if program else None) or purchase.custom_program_name or "Custom Program"
            await self.email_service.send_welcome_receipt(
                to_email=client.email,
                client_name=client.name,
                program_name=program_name,
                trainer_name=trainer.name if trainer else "your trainer",
                amount=purchase.amount,
                duration_months=purchase.duration_months,
                start_date=purchase.start_date,
            )
        except Exception as e:
            logger.error("Welcome email for purchase %s failed: %s", purchase_id, e)


WebhookReconciler.HANDLERS = {
    WebhookEventType.CHECKOUT_COMPLETED: WebhookReconciler._on_checkout_completed,
    WebhookEventType.INVOICE_PAID: WebhookReconciler._on_invoice_paid,
    WebhookEventType.INVOICE_PAYMENT_FAILED: WebhookReconciler._on_invoice_payment_failed,
    WebhookEventType.SUBSCRIPTION_DELETED: WebhookReconciler._on_subscription_deleted,
}

_unhandled = set(WebhookEventType) - set(WebhookReconciler.HANDLERS)
if _unhandled:
    raise RuntimeError(f"Webhook event types without a handler: {sorted(t.value for t in _unhandled)}")
