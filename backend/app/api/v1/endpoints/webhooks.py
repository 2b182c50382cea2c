"""
Stripe Webhook Endpoint.

Nothing touches the ledger until the signature has been verified.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.config import settings
from backend.app.db.session import get_db
from backend.app.domain.billing.webhook_reconciler import WebhookReconciler
from backend.app.services.email_service import EmailService, get_email_service
from backend.app.services.stripe_gateway import InvalidWebhookError, verify_webhook_signature

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    email_service: EmailService = Depends(get_email_service),
):
    """
    Receive a Stripe event.

    400 for a missing or invalid signature; 500 when processing fails so
    Stripe redelivers; 200 otherwise, including ignored and duplicate events.
    """
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")
    if not sig_header:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing signature")

    if not settings.stripe_webhook_secret:
        logger.error("STRIPE_WEBHOOK_SECRET is not configured")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Webhook not configured")

    try:
        event = verify_webhook_signature(payload, sig_header, settings.stripe_webhook_secret)
    except InvalidWebhookError as e:
        logger.warning("Rejected Stripe webhook: %s", e)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    outcome = await WebhookReconciler(db, email_service).process(event)
    return {"received": True, "outcome": outcome.value}
