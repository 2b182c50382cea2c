"""
Audit logging service for billing operations.

Every mutating operation in the payment core writes one entry here.
"""

from typing import Optional, Dict, Any
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, desc
from backend.app.models.audit_log import AuditLog


class AuditAction:
    """Standardized audit action constants."""
    # Checkout
    PAYMENT_LINK_CREATED = "create_payment_link"
    CHECKOUT_COMPLETED = "checkout_completed"
    PAYMENT_LINKS_EXPIRED = "payment_links_expired"

    # Direct charge
    SAVED_CARD_CHARGED = "charge_saved_card"
    SUBSCRIPTION_COMPENSATED = "subscription_compensating_cancel"

    # Webhook-driven lifecycle
    SUBSCRIPTION_RENEWED = "subscription_renewed"
    PAYMENT_FAILED = "payment_failed"
    SUBSCRIPTION_CANCELLED = "subscription_cancelled"
    SUBSCRIPTION_COMPLETED = "subscription_completed"
    CUSTOMER_ID_SAVE_FAILED = "customer_id_save_failed"

    # Manual subscription actions
    SUBSCRIPTION_PAUSED = "pause_subscription"
    SUBSCRIPTION_RESUMED = "resume_subscription"
    SUBSCRIPTION_CANCEL_REQUESTED = "cancel_subscription"
    RETRY_PAYMENT_SUCCESS = "retry_payment_success"
    RETRY_PAYMENT_FAILED = "retry_payment_failed"


class EntityType:
    PURCHASE = "purchase"
    PAYMENT_LINK = "payment_link"
    CLIENT = "client"


async def log_event(
    db: AsyncSession,
    action: str,
    entity_type: Optional[str] = None,
    entity_id: Optional[Any] = None,
    actor_user_id: Optional[int] = None,
    details: Optional[Dict[str, Any]] = None,
    ip_address: Optional[str] = None,
    commit: bool = True
) -> AuditLog:
    """
    Append an entry to the audit log.

    Args:
        db: Database session
        action: Action being performed (use AuditAction constants)
        entity_type: Kind of row acted upon (use EntityType constants)
        entity_id: Primary key of that row
        actor_user_id: Team member performing the action, None for processor events
        details: Additional context as JSON
        ip_address: IP address of the request
        commit: Commit immediately; pass False to join the caller's transaction

    Returns:
        Created AuditLog instance
    """
    audit_log = AuditLog(
        actor_user_id=actor_user_id,
        action=action,
        entity_type=entity_type,
        entity_id=str(entity_id) if entity_id is not None else None,
        details=details,
        ip_address=ip_address
    )

    db.add(audit_log)
    if commit:
        await db.commit()
    else:
        await db.flush()

    return audit_log


async def get_audit_trail(
    db: AsyncSession,
    entity_type: Optional[str] = None,
    entity_id: Optional[Any] = None,
    action: Optional[str] = None,
    limit: int = 100
) -> list[AuditLog]:
    """
    Retrieve audit trail with optional filtering, most recent first.
    """
    query = select(AuditLog).order_by(desc(AuditLog.created_at), desc(AuditLog.id))

    if entity_type:
        query = query.where(AuditLog.entity_type == entity_type)

    if entity_id is not None:
        query = query.where(AuditLog.entity_id == str(entity_id))

    if action:
        query = query.where(AuditLog.action == action)

    query = query.limit(limit)

    result = await db.execute(query)
    return list(result.scalars().all())
