"""
Checkout Session Manager (Domain Logic).

Creates a pending purchase and a single-use hosted Stripe checkout link for
it. The purchase is committed before Stripe is called so its id can travel
in the session metadata; if Stripe then fails the purchase stays pending
until the stale-link sweep cancels it.
"""

import logging
from datetime import timedelta
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.config import settings
from backend.app.core.exceptions import (
    BusinessValidationError,
    ConflictError,
    InsufficientPermissionsError,
    PaymentProcessorError,
    ResourceNotFoundError,
)
from backend.app.core.guards import is_admin_or_manager, roster_guard
from backend.app.core.timeutils import term_end, utc_now
from backend.app.domain.billing.commission import calc_commission
from backend.app.domain.billing.ledger import PurchaseLedger
from backend.app.models.client import Client
from backend.app.models.program import Program
from backend.app.models.purchase_enums import PurchaseStatus
from backend.app.models.user import User
from backend.app.schemas.payments import CheckoutRequest
from backend.app.services.audit import AuditAction, EntityType, log_event
from backend.app.services.stripe_gateway import StripeGateway, to_cents

logger = logging.getLogger(__name__)


def correlation_metadata(purchase_id: int, client_id: int, trainer_id: int) -> Dict[str, str]:
    """Metadata round-tripped through Stripe to find the purchase again."""
    return {
        "purchase_id": str(purchase_id),
        "client_id": str(client_id),
        "trainer_id": str(trainer_id),
    }


async def resolve_trainer(db: AsyncSession, trainer_id: int) -> User:
    trainer = await db.get(User, trainer_id)
    if not trainer or not trainer.is_active:
        raise ResourceNotFoundError("Trainer", trainer_id)
    return trainer


async def resolve_program(db: AsyncSession, program_id: Optional[int]) -> Optional[Program]:
    if program_id is None:
        return None
    program = await db.get(Program, program_id)
    if not program or not program.is_active:
        raise ResourceNotFoundError("Program", program_id)
    return program


class CheckoutService:

    @staticmethod
    async def _resolve_client(
        db: AsyncSession,
        request: CheckoutRequest,
        trainer: User,
        current_user: dict,
    ) -> Client:
        if request.client_id is not None:
            client = await db.get(Client, request.client_id)
            if not client:
                raise ResourceNotFoundError("Client", request.client_id)
            roster_guard.enforce(client.assigned_trainer_id, current_user)
            return client

        email = request.new_client.email.lower()
        existing = await db.execute(select(Client.id).where(Client.email == email))
        if existing.scalar_one_or_none() is not None:
            raise ConflictError(
                "A client with this email already exists",
                details={"email": email},
            )

        client = Client(
            name=request.new_client.name,
            email=email,
            phone=request.new_client.phone,
            assigned_trainer_id=trainer.id,
        )
        db.add(client)
        await db.flush()
        return client

    @staticmethod
    async def create_checkout(
        db: AsyncSession,
        gateway: StripeGateway,
        request: CheckoutRequest,
        current_user: dict,
        ip_address: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Create a pending purchase and its hosted checkout link.

        Flow:
        1. Authorize caller and resolve trainer / program
        2. Resolve or create the client
        3. Stamp the commission split and term dates
        4. Commit the pending purchase
        5. Create the Stripe checkout session
        6. Record the PaymentLink, correlate it to the purchase, audit

        Returns:
            {url, session_id, purchase_id, expires_at}
        """
        if not is_admin_or_manager(current_user) and request.trainer_id != current_user["user_id"]:
            raise InsufficientPermissionsError("Trainers can only create payment links for themselves")

        trainer = await resolve_trainer(db, request.trainer_id)
        program = await resolve_program(db, request.program_id)

        amount = request.amount
        duration_months = request.duration_months
        if program is not None:
            if amount is None:
                amount = program.default_price
            if duration_months is None:
                duration_months = program.default_duration_months
        if amount is None or Decimal(amount) <= 0:
            raise BusinessValidationError("Amount must be greater than 0")
        amount = Decimal(amount)

        client = await CheckoutService._resolve_client(db, request, trainer, current_user)

        split = calc_commission(amount, trainer.role)
        now = utc_now()
        end_date = None
        if request.is_recurring and duration_months:
            end_date = term_end(now, duration_months).date()

        purchase = await PurchaseLedger.create_purchase(
            db,
            client_id=client.id,
            trainer_id=trainer.id,
            program_id=program.id if program else None,
            custom_program_name=request.custom_program_name,
            amount=amount,
            split=split,
            status=PurchaseStatus.PENDING,
            is_recurring=request.is_recurring,
            duration_months=duration_months,
            start_date=now.date(),
            end_date=end_date,
        )
        await db.commit()

        product_name = (program.name if program else None) or request.custom_program_name or "Custom Program"
        metadata = correlation_metadata(purchase.id, client.id, trainer.id)
        params = CheckoutService._session_params(
            product_name, amount, request.is_recurring, duration_months, metadata, client
        )

        try:
            session = await gateway.create_checkout_session(**params)
        except Exception:
            logger.error("Checkout session creation failed; purchase %s left pending", purchase.id)
            raise

        expires_at = now + timedelta(hours=settings.payment_link_ttl_hours)
        link = await PurchaseLedger.create_payment_link(
            db,
            purchase_id=purchase.id,
            url=session["url"],
            session_id=session["id"],
            expires_at=expires_at,
            created_by=current_user["user_id"],
        )
        await PurchaseLedger.stamp_correlation(
            db, purchase, stripe_checkout_session_id=session["id"], payment_link_id=link.id
        )
        await log_event(
            db,
            action=AuditAction.PAYMENT_LINK_CREATED,
            entity_type=EntityType.PURCHASE,
            entity_id=purchase.id,
            actor_user_id=current_user["user_id"],
            details={
                "client_id": client.id,
                "trainer_id": trainer.id,
                "amount": str(amount),
                "is_recurring": request.is_recurring,
                "payment_link_id": link.id,
                "session_id": session["id"],
            },
            ip_address=ip_address,
            commit=False,
        )
        await db.commit()

        logger.info("Payment link %s created for purchase %s", link.id, purchase.id)
        return {
            "url": session["url"],
            "session_id": session["id"],
            "purchase_id": purchase.id,
            "expires_at": expires_at,
        }

    @staticmethod
    def _session_params(
        product_name: str,
        amount: Decimal,
        is_recurring: bool,
        duration_months: Optional[int],
        metadata: Dict[str, str],
        client: Client,
    ) -> Dict[str, Any]:
        price_data = {
            "currency": settings.currency,
            "product_data": {"name": product_name},
            "unit_amount": to_cents(amount),
        }
        params = {
            "mode": "subscription" if is_recurring else "payment",
            "line_items": [{"price_data": price_data, "quantity": 1}],
            "metadata": metadata,
            "success_url": f"{settings.app_url}/payments/success?session_id={{CHECKOUT_SESSION_ID}}",
            "cancel_url": f"{settings.app_url}/payments/cancelled",
        }
        if client.stripe_customer_id:
            params["customer"] = client.stripe_customer_id
        else:
            params["customer_email"] = client.email

        if is_recurring:
            price_data["recurring"] = {"interval": "month"}
            price_data["product_data"]["description"] = (
                f"{duration_months} month{'s' if duration_months > 1 else ''}"
                if duration_months else "Ongoing subscription"
            )
            subscription_metadata = dict(metadata)
            if duration_months:
                subscription_metadata["duration_months"] = str(duration_months)
            params["subscription_data"] = {"metadata": subscription_metadata}
        else:
            # Keep the card on file for later direct charges
            params["payment_intent_data"] = {
                "setup_future_usage": "off_session",
                "metadata": dict(metadata),
            }
            if not client.stripe_customer_id:
                params["customer_creation"] = "always"
        return params

    @staticmethod
    async def sweep_stale_links(db: AsyncSession, gateway: StripeGateway, now=None) -> Dict[str, Any]:
        """
        Expire active links past their expiry and cancel their pending purchases.

        Each session is expired at Stripe first. A session Stripe reports as
        complete was paid and its webhook has not been applied yet, so the
        link and purchase are left for the webhook. Sessions Stripe cannot be
        asked about are skipped until the next sweep.

        Does not commit.
        """
        expired = 0
        cancelled = []
        paid = []
        for link in await PurchaseLedger.stale_links(db, now):
            session_id = link.stripe_checkout_session_id
            try:
                session = await gateway.expire_checkout_session(session_id)
            except (BusinessValidationError, PaymentProcessorError) as e:
                logger.warning("Could not expire checkout session %s: %s", session_id, e.message)
                continue

            if session.get("status") == "complete":
                logger.warning(
                    "Checkout session %s was paid; purchase %s left for its webhook",
                    session_id, link.purchase_id,
                )
                paid.append(link.purchase_id)
                continue

            expired += 1
            purchase_id = await PurchaseLedger.expire_link(db, link)
            if purchase_id is not None:
                cancelled.append(purchase_id)

        return {
            "links_expired": expired,
            "purchases_cancelled": len(cancelled),
            "purchase_ids": cancelled,
            "paid_purchase_ids": paid,
        }
