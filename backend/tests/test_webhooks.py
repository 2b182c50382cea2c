"""
Stripe webhook reconciliation tests.

Payloads are signed with the real Stripe signature scheme.
"""

import time
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select, update

from backend.app.core.config import settings
from backend.app.core.exceptions import PaymentProcessorError
from backend.app.core.timeutils import utc_now
from backend.app.models.audit_log import AuditLog
from backend.app.models.client import Client
from backend.app.models.dlq import DeadLetterQueue, DLQStatus
from backend.app.models.payment_link import PaymentLink
from backend.app.models.purchase import Purchase
from backend.app.models.purchase_enums import PaymentLinkStatus, PurchaseStatus
from backend.app.models.stripe_event import StripeEvent

from conftest import auth_headers, fetch, fetch_all, make_purchase, post_webhook, sign_webhook, stripe_event


async def create_link(client, trainer, roster_client, is_recurring=True, amount="700.00"):
    response = await client.post(
        "/v1/payments/checkout",
        json={
            "client_id": roster_client.id,
            "trainer_id": trainer.id,
            "custom_program_name": "Strength Block",
            "amount": amount,
            "is_recurring": is_recurring,
        },
        headers=auth_headers(trainer),
    )
    assert response.status_code == 201
    return response.json()


def checkout_completed(link, roster_client, trainer, event_id="evt_checkout_1", **session):
    obj = {
        "id": link["session_id"],
        "object": "checkout.session",
        "customer": "cus_new_123",
        "subscription": "sub_new_123",
        "payment_intent": None,
        "amount_total": 70000,
        "metadata": {
            "purchase_id": str(link["purchase_id"]),
            "client_id": str(roster_client.id),
            "trainer_id": str(trainer.id),
        },
    }
    obj.update(session)
    return stripe_event("checkout.session.completed", obj, event_id=event_id)


async def audit_actions(action):
    return await fetch_all(select(AuditLog).where(AuditLog.action == action))


# Signature verification

@pytest.mark.asyncio
async def test_missing_signature_is_rejected(client):
    response = await client.post("/v1/webhooks/stripe", content=b"{}")

    assert response.status_code == 400
    assert response.json()["message"] == "Missing signature"


@pytest.mark.asyncio
async def test_bad_signature_does_not_touch_ledger(client, trainer, roster_client, db_session):
    purchase = await make_purchase(db_session, roster_client, trainer, PurchaseStatus.ACTIVE, subscription_id="sub_1")
    event = stripe_event("customer.subscription.deleted", {"id": "sub_1", "object": "subscription"})
    payload, headers = sign_webhook(event, secret="whsec_wrong")

    response = await client.post("/v1/webhooks/stripe", content=payload, headers=headers)

    assert response.status_code == 400
    assert (await fetch(Purchase, purchase.id)).status == PurchaseStatus.ACTIVE
    assert await fetch_all(select(StripeEvent)) == []


@pytest.mark.asyncio
async def test_unconfigured_secret_is_a_server_error(client, monkeypatch):
    monkeypatch.setattr(settings, "stripe_webhook_secret", "")
    payload, headers = sign_webhook(stripe_event("invoice.paid", {"id": "in_1"}))

    response = await client.post("/v1/webhooks/stripe", content=payload, headers=headers)

    assert response.status_code == 500


@pytest.mark.asyncio
async def test_unknown_event_type_is_acknowledged(client):
    response = await post_webhook(client, stripe_event("customer.created", {"id": "cus_1"}))

    assert response.status_code == 200
    assert response.json() == {"received": True, "outcome": "ignored"}


# checkout.session.completed

@pytest.mark.asyncio
async def test_checkout_completed_activates_purchase(client, trainer, roster_client, fake_email):
    link = await create_link(client, trainer, roster_client)

    response = await post_webhook(client, checkout_completed(link, roster_client, trainer))

    assert response.status_code == 200
    assert response.json()["outcome"] == "processed"

    purchase = await fetch(Purchase, link["purchase_id"])
    assert purchase.status == PurchaseStatus.ACTIVE
    assert purchase.stripe_subscription_id == "sub_new_123"
    assert purchase.trainer_amount == Decimal("490.00")

    [payment_link] = await fetch_all(select(PaymentLink))
    assert payment_link.status == PaymentLinkStatus.USED
    assert payment_link.used_at is not None

    assert (await fetch(Client, roster_client.id)).stripe_customer_id == "cus_new_123"
    assert len(fake_email.sent) == 1
    assert fake_email.sent[0]["to_email"] == roster_client.email
    assert len(await audit_actions("checkout_completed")) == 1


@pytest.mark.asyncio
async def test_one_time_checkout_completes_purchase(client, trainer, roster_client):
    link = await create_link(client, trainer, roster_client, is_recurring=False, amount="150")

    response = await post_webhook(
        client,
        checkout_completed(link, roster_client, trainer, subscription=None, payment_intent="pi_123"),
    )

    assert response.status_code == 200
    purchase = await fetch(Purchase, link["purchase_id"])
    assert purchase.status == PurchaseStatus.COMPLETED
    assert purchase.stripe_payment_intent_id == "pi_123"
    assert purchase.stripe_subscription_id is None


@pytest.mark.asyncio
async def test_exact_redelivery_is_short_circuited(client, trainer, roster_client, fake_email):
    link = await create_link(client, trainer, roster_client)
    event = checkout_completed(link, roster_client, trainer)

    first = await post_webhook(client, event)
    second = await post_webhook(client, event)

    assert first.json()["outcome"] == "processed"
    assert second.status_code == 200
    assert second.json()["outcome"] == "duplicate"
    assert len(fake_email.sent) == 1
    assert len(await fetch_all(select(StripeEvent))) == 1


@pytest.mark.asyncio
async def test_second_completion_for_same_session_is_idempotent(client, trainer, roster_client, fake_email):
    link = await create_link(client, trainer, roster_client)

    await post_webhook(client, checkout_completed(link, roster_client, trainer, event_id="evt_a"))
    [first_link] = await fetch_all(select(PaymentLink))
    response = await post_webhook(client, checkout_completed(link, roster_client, trainer, event_id="evt_b"))

    assert response.status_code == 200
    [second_link] = await fetch_all(select(PaymentLink))
    assert second_link.used_at == first_link.used_at
    assert len(await fetch_all(select(Purchase))) == 1
    assert len(await audit_actions("checkout_completed")) == 1
    assert len(fake_email.sent) == 1


@pytest.mark.asyncio
async def test_missing_metadata_is_retried_and_dead_lettered(client):
    event = stripe_event(
        "checkout.session.completed",
        {"id": "cs_orphan", "object": "checkout.session", "metadata": {}},
        event_id="evt_orphan",
    )

    response = await post_webhook(client, event)

    assert response.status_code == 500
    assert response.json()["error_code"] == "ERR_WEBHOOK_001"
    [entry] = await fetch_all(select(DeadLetterQueue))
    assert entry.stripe_event_id == "evt_orphan"
    assert entry.task_name == "checkout.session.completed"
    assert entry.status == DLQStatus.FAILED
    assert await fetch_all(select(StripeEvent)) == []


@pytest.mark.asyncio
async def test_redelivery_after_failure_marks_dead_letter_processed(client, trainer, roster_client, db_session):
    event = stripe_event(
        "checkout.session.completed",
        {
            "id": "cs_late",
            "object": "checkout.session",
            "subscription": "sub_late",
            "metadata": {"purchase_id": "1", "client_id": str(roster_client.id)},
        },
        event_id="evt_late",
    )

    first = await post_webhook(client, event)
    assert first.status_code == 500

    purchase = await make_purchase(db_session, roster_client, trainer, PurchaseStatus.PENDING)
    assert purchase.id == 1
    second = await post_webhook(client, event)

    assert second.status_code == 200
    [entry] = await fetch_all(select(DeadLetterQueue))
    assert entry.status == DLQStatus.PROCESSED
    assert (await fetch(Purchase, purchase.id)).status == PurchaseStatus.ACTIVE


@pytest.mark.asyncio
async def test_email_failure_does_not_fail_webhook(client, trainer, roster_client, fake_email):
    fake_email.fail = True
    link = await create_link(client, trainer, roster_client)

    response = await post_webhook(client, checkout_completed(link, roster_client, trainer))

    assert response.status_code == 200
    assert (await fetch(Purchase, link["purchase_id"])).status == PurchaseStatus.ACTIVE


# invoice.paid

@pytest.mark.asyncio
async def test_first_invoice_is_skipped(client, trainer, roster_client, db_session):
    await make_purchase(db_session, roster_client, trainer, PurchaseStatus.ACTIVE, subscription_id="sub_1")

    response = await post_webhook(client, stripe_event("invoice.paid", {
        "id": "in_1", "subscription": "sub_1", "billing_reason": "subscription_create",
    }))

    assert response.status_code == 200
    assert await audit_actions("subscription_renewed") == []


@pytest.mark.asyncio
async def test_renewal_is_audited_without_status_change(client, trainer, roster_client, db_session):
    purchase = await make_purchase(db_session, roster_client, trainer, PurchaseStatus.ACTIVE, subscription_id="sub_1")

    response = await post_webhook(client, stripe_event("invoice.paid", {
        "id": "in_2",
        "billing_reason": "subscription_cycle",
        "amount_paid": 50000,
        "parent": {"subscription_details": {"subscription": "sub_1"}},
    }))

    assert response.status_code == 200
    [entry] = await audit_actions("subscription_renewed")
    assert entry.entity_id == str(purchase.id)
    assert (await fetch(Purchase, purchase.id)).status == PurchaseStatus.ACTIVE


@pytest.mark.asyncio
async def test_untracked_subscription_is_ignored(client):
    response = await post_webhook(client, stripe_event("invoice.payment_failed", {
        "id": "in_3", "subscription": "sub_unknown",
    }))

    assert response.status_code == 200
    assert await fetch_all(select(AuditLog)) == []


# invoice.payment_failed

@pytest.mark.asyncio
async def test_payment_failure_marks_purchase_failed(client, trainer, roster_client, db_session):
    purchase = await make_purchase(db_session, roster_client, trainer, PurchaseStatus.ACTIVE, subscription_id="sub_1")

    response = await post_webhook(client, stripe_event("invoice.payment_failed", {
        "id": "in_4", "subscription": "sub_1", "amount_due": 50000, "attempt_count": 1,
    }))

    assert response.status_code == 200
    assert (await fetch(Purchase, purchase.id)).status == PurchaseStatus.FAILED
    assert len(await audit_actions("payment_failed")) == 1


@pytest.mark.asyncio
async def test_late_failure_after_cancellation_keeps_cancelled(client, trainer, roster_client, db_session):
    purchase = await make_purchase(db_session, roster_client, trainer, PurchaseStatus.ACTIVE, subscription_id="sub_1")

    cancelled = await post_webhook(client, stripe_event("customer.subscription.deleted", {
        "id": "sub_1", "object": "subscription", "cancel_at": None,
    }))
    assert (await fetch(Purchase, purchase.id)).status == PurchaseStatus.CANCELLED

    late = await post_webhook(client, stripe_event("invoice.payment_failed", {
        "id": "in_5", "subscription": "sub_1",
    }))

    assert cancelled.status_code == 200
    assert late.status_code == 200
    assert (await fetch(Purchase, purchase.id)).status == PurchaseStatus.CANCELLED
    assert await audit_actions("payment_failed") == []


@pytest.mark.asyncio
async def test_late_renewal_after_cancellation_keeps_cancelled(client, trainer, roster_client, db_session):
    purchase = await make_purchase(db_session, roster_client, trainer, PurchaseStatus.CANCELLED, subscription_id="sub_1")

    response = await post_webhook(client, stripe_event("invoice.paid", {
        "id": "in_6", "subscription": "sub_1", "billing_reason": "subscription_cycle",
    }))

    assert response.status_code == 200
    assert (await fetch(Purchase, purchase.id)).status == PurchaseStatus.CANCELLED


# customer.subscription.deleted

@pytest.mark.asyncio
async def test_subscription_deleted_cancels(client, trainer, roster_client, db_session):
    purchase = await make_purchase(db_session, roster_client, trainer, PurchaseStatus.PAUSED, subscription_id="sub_1")

    response = await post_webhook(client, stripe_event("customer.subscription.deleted", {
        "id": "sub_1", "object": "subscription", "ended_at": int(time.time()),
    }))

    assert response.status_code == 200
    assert (await fetch(Purchase, purchase.id)).status == PurchaseStatus.CANCELLED
    assert len(await audit_actions("subscription_cancelled")) == 1


@pytest.mark.asyncio
async def test_fixed_term_that_ran_out_completes(client, trainer, roster_client, db_session):
    purchase = await make_purchase(db_session, roster_client, trainer, PurchaseStatus.ACTIVE, subscription_id="sub_1")
    cancel_at = int(time.time()) - 60

    response = await post_webhook(client, stripe_event("customer.subscription.deleted", {
        "id": "sub_1", "object": "subscription", "cancel_at": cancel_at, "ended_at": cancel_at,
    }))

    assert response.status_code == 200
    assert (await fetch(Purchase, purchase.id)).status == PurchaseStatus.COMPLETED
    assert len(await audit_actions("subscription_completed")) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [PurchaseStatus.PAUSED, PurchaseStatus.FAILED])
async def test_fixed_term_ending_while_not_active_cancels(client, trainer, roster_client, db_session, status):
    purchase = await make_purchase(db_session, roster_client, trainer, status, subscription_id="sub_1")
    cancel_at = int(time.time()) - 60

    response = await post_webhook(client, stripe_event("customer.subscription.deleted", {
        "id": "sub_1", "object": "subscription", "cancel_at": cancel_at, "ended_at": cancel_at,
    }))

    assert response.status_code == 200
    assert (await fetch(Purchase, purchase.id)).status == PurchaseStatus.CANCELLED
    [entry] = await audit_actions("subscription_cancelled")
    assert entry.details["cancel_at"] == cancel_at


async def backdate_links(db_session):
    await db_session.execute(update(PaymentLink).values(expires_at=utc_now() - timedelta(hours=1)))
    await db_session.commit()


@pytest.mark.asyncio
async def test_sweep_leaves_paid_session_for_late_webhook(
    client, manager, trainer, roster_client, db_session, fake_gateway
):
    link = await create_link(client, trainer, roster_client)
    await backdate_links(db_session)
    fake_gateway.session_status[link["session_id"]] = "complete"

    sweep = await client.post("/v1/payments/links/expire-stale", headers=auth_headers(manager))

    assert sweep.status_code == 200
    assert sweep.json()["purchases_cancelled"] == 0
    assert sweep.json()["paid_purchase_ids"] == [link["purchase_id"]]
    assert fake_gateway.called("expire_checkout_session") == [{"session_id": link["session_id"]}]
    assert (await fetch(Purchase, link["purchase_id"])).status == PurchaseStatus.PENDING

    response = await post_webhook(
        client, checkout_completed(link, roster_client, trainer, subscription="sub_live")
    )

    assert response.status_code == 200
    purchase = await fetch(Purchase, link["purchase_id"])
    assert purchase.status == PurchaseStatus.ACTIVE
    assert purchase.stripe_subscription_id == "sub_live"
    [payment_link] = await fetch_all(select(PaymentLink))
    assert payment_link.status == PaymentLinkStatus.USED


@pytest.mark.asyncio
async def test_sweep_skips_links_when_stripe_is_unavailable(
    client, manager, trainer, roster_client, db_session, fake_gateway
):
    link = await create_link(client, trainer, roster_client)
    await backdate_links(db_session)
    fake_gateway.fail_with["expire_checkout_session"] = PaymentProcessorError(
        "Payment processor temporarily unavailable"
    )

    sweep = await client.post("/v1/payments/links/expire-stale", headers=auth_headers(manager))

    assert sweep.status_code == 200
    assert sweep.json()["links_expired"] == 0
    assert (await fetch(Purchase, link["purchase_id"])).status == PurchaseStatus.PENDING
    [payment_link] = await fetch_all(select(PaymentLink))
    assert payment_link.status == PaymentLinkStatus.ACTIVE
