"""
Purchase ledger tests: compare-and-set transitions, the write-once
commission snapshot and payment link consumption.
"""

from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select, update

from backend.app.core.exceptions import (
    CommissionSnapshotImmutableError,
    ConcurrentModificationError,
    TerminalStateError,
)
from backend.app.core.timeutils import utc_now
from backend.app.domain.billing.ledger import PurchaseLedger
from backend.app.models.payment_link import PaymentLink
from backend.app.models.purchase import Purchase
from backend.app.models.purchase_enums import PaymentLinkStatus, PurchaseStatus

from conftest import fetch, fetch_all, make_purchase


@pytest.mark.asyncio
async def test_create_purchase_stamps_commission_snapshot(db_session, roster_client, trainer):
    purchase = await make_purchase(db_session, roster_client, trainer, PurchaseStatus.PENDING, amount="700.00")

    stored = await fetch(Purchase, purchase.id)
    assert stored.status == PurchaseStatus.PENDING
    assert stored.trainer_commission_rate == Decimal("0.70")
    assert stored.trainer_amount == Decimal("490.00")
    assert stored.owner_amount == Decimal("210.00")


@pytest.mark.asyncio
async def test_transition_stamps_correlation_ids_and_keeps_snapshot(db_session, roster_client, trainer):
    purchase = await make_purchase(db_session, roster_client, trainer, PurchaseStatus.PENDING, amount="700.00")

    changed = await PurchaseLedger.transition(
        db_session, purchase, PurchaseStatus.ACTIVE, stripe_subscription_id="sub_123"
    )
    await db_session.commit()

    assert changed is True
    stored = await fetch(Purchase, purchase.id)
    assert stored.status == PurchaseStatus.ACTIVE
    assert stored.stripe_subscription_id == "sub_123"
    assert stored.trainer_amount == Decimal("490.00")
    assert stored.owner_amount == Decimal("210.00")
    assert stored.trainer_commission_rate == Decimal("0.70")


@pytest.mark.asyncio
async def test_same_state_transition_is_a_no_op(db_session, roster_client, trainer):
    purchase = await make_purchase(db_session, roster_client, trainer, PurchaseStatus.ACTIVE)

    assert await PurchaseLedger.transition(db_session, purchase, PurchaseStatus.ACTIVE) is False


@pytest.mark.asyncio
async def test_commission_fields_are_write_once(db_session, roster_client, trainer):
    purchase = await make_purchase(db_session, roster_client, trainer, PurchaseStatus.ACTIVE)

    for field in ("trainer_amount", "owner_amount", "trainer_commission_rate"):
        with pytest.raises(CommissionSnapshotImmutableError):
            setattr(purchase, field, Decimal("1.00"))


@pytest.mark.asyncio
async def test_transition_refuses_commission_fields(db_session, roster_client, trainer):
    purchase = await make_purchase(db_session, roster_client, trainer, PurchaseStatus.PENDING)

    with pytest.raises(ValueError):
        await PurchaseLedger.transition(
            db_session, purchase, PurchaseStatus.ACTIVE, trainer_amount=Decimal("500.00")
        )

    stored = await fetch(Purchase, purchase.id)
    assert stored.status == PurchaseStatus.PENDING
    assert stored.trainer_amount == Decimal("350.00")


@pytest.mark.asyncio
async def test_cancelled_purchase_cannot_be_reactivated(db_session, roster_client, trainer):
    purchase = await make_purchase(db_session, roster_client, trainer, PurchaseStatus.CANCELLED)

    with pytest.raises(TerminalStateError):
        await PurchaseLedger.transition(db_session, purchase, PurchaseStatus.ACTIVE)

    assert (await fetch(Purchase, purchase.id)).status == PurchaseStatus.CANCELLED


@pytest.mark.asyncio
async def test_stale_read_raises_concurrent_modification(db_session, roster_client, trainer):
    purchase = await make_purchase(db_session, roster_client, trainer, PurchaseStatus.PENDING)

    # Another writer cancels the purchase behind this session's back
    await db_session.execute(
        update(Purchase)
        .where(Purchase.id == purchase.id)
        .values(status=PurchaseStatus.CANCELLED)
        .execution_options(synchronize_session=False)
    )
    await db_session.commit()
    assert purchase.status == PurchaseStatus.PENDING

    with pytest.raises(ConcurrentModificationError):
        await PurchaseLedger.transition(db_session, purchase, PurchaseStatus.ACTIVE)
    await db_session.rollback()

    assert (await fetch(Purchase, purchase.id)).status == PurchaseStatus.CANCELLED


@pytest.mark.asyncio
async def test_mark_link_used_keeps_first_timestamp(db_session, roster_client, trainer):
    purchase = await make_purchase(db_session, roster_client, trainer, PurchaseStatus.PENDING)
    link = await PurchaseLedger.create_payment_link(
        db_session, purchase.id, "https://checkout.stripe.com/c/pay/cs_1", "cs_1", utc_now() + timedelta(hours=24)
    )
    await db_session.commit()

    assert await PurchaseLedger.mark_link_used(db_session, "cs_1") is True
    await db_session.commit()
    first = await fetch(PaymentLink, link.id)

    assert await PurchaseLedger.mark_link_used(db_session, "cs_1") is False
    await db_session.commit()
    second = await fetch(PaymentLink, link.id)

    assert first.status == PaymentLinkStatus.USED
    assert second.used_at == first.used_at


@pytest.mark.asyncio
async def test_mark_link_used_unknown_session(db_session):
    assert await PurchaseLedger.mark_link_used(db_session, "cs_missing") is False


@pytest.mark.asyncio
async def test_expire_link_cancels_pending_purchase(db_session, roster_client, trainer):
    stale = await make_purchase(db_session, roster_client, trainer, PurchaseStatus.PENDING)
    fresh = await make_purchase(db_session, roster_client, trainer, PurchaseStatus.PENDING)
    await PurchaseLedger.create_payment_link(
        db_session, stale.id, "https://checkout.stripe.com/c/pay/cs_old", "cs_old", utc_now() - timedelta(hours=1)
    )
    await PurchaseLedger.create_payment_link(
        db_session, fresh.id, "https://checkout.stripe.com/c/pay/cs_new", "cs_new", utc_now() + timedelta(hours=23)
    )
    await db_session.commit()

    [link] = await PurchaseLedger.stale_links(db_session)
    assert link.stripe_checkout_session_id == "cs_old"

    assert await PurchaseLedger.expire_link(db_session, link) == stale.id
    await db_session.commit()

    assert (await fetch(Purchase, stale.id)).status == PurchaseStatus.CANCELLED
    assert (await fetch(Purchase, fresh.id)).status == PurchaseStatus.PENDING

    links = {
        link.stripe_checkout_session_id: link.status
        for link in await fetch_all(select(PaymentLink))
    }
    assert links == {"cs_old": PaymentLinkStatus.EXPIRED, "cs_new": PaymentLinkStatus.ACTIVE}
