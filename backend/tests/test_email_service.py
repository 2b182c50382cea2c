"""
Welcome email tests. SendGrid is never contacted.
"""

from datetime import date
from decimal import Decimal

import pytest

from backend.app.services.email_service import EmailService


def receipt_kwargs(**overrides):
    kwargs = dict(
        to_email="casey@example.com",
        client_name="Casey Client",
        program_name="12-Week Transformation",
        trainer_name="Tom Trainer",
        amount=Decimal("700.00"),
        duration_months=3,
        start_date=date(2026, 1, 5),
    )
    kwargs.update(overrides)
    return kwargs


@pytest.mark.asyncio
async def test_welcome_receipt_is_sent(mocker):
    service = EmailService(api_key="SG.test-key")
    send = mocker.patch.object(service.client, "send", return_value=mocker.Mock(status_code=202))

    assert await service.send_welcome_receipt(**receipt_kwargs()) is True

    message = send.call_args.args[0].get()
    assert message["personalizations"][0]["to"][0]["email"] == "casey@example.com"
    assert message["subject"] == f"Welcome to {service.from_name}!"
    body = message["content"][0]["value"]
    assert "12-Week Transformation" in body
    assert "$700.00" in body
    assert "3 month(s)" in body
    assert "January 05, 2026" in body


@pytest.mark.asyncio
async def test_ongoing_program_without_start_date(mocker):
    service = EmailService(api_key="SG.test-key")
    send = mocker.patch.object(service.client, "send", return_value=mocker.Mock(status_code=202))

    await service.send_welcome_receipt(**receipt_kwargs(duration_months=None, start_date=None))

    body = send.call_args.args[0].get()["content"][0]["value"]
    assert "Ongoing" in body
    assert "today" in body


@pytest.mark.asyncio
async def test_sendgrid_failure_is_swallowed(mocker):
    service = EmailService(api_key="SG.test-key")
    mocker.patch.object(service.client, "send", side_effect=RuntimeError("connection reset"))

    assert await service.send_welcome_receipt(**receipt_kwargs()) is False


@pytest.mark.asyncio
async def test_rejected_status_is_reported(mocker):
    service = EmailService(api_key="SG.test-key")
    mocker.patch.object(service.client, "send", return_value=mocker.Mock(status_code=400))

    assert await service.send_email("casey@example.com", "Hi", "Hello") is False


@pytest.mark.asyncio
async def test_unconfigured_service_sends_nothing():
    service = EmailService(api_key="")

    assert service.client is None
    assert await service.send_email("casey@example.com", "Hi", "Hello") is False
