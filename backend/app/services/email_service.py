"""
SendGrid email service.

Client-facing mail is best-effort: a failure is logged and reported as False,
never raised into the payment flow.
"""

import logging
from typing import Optional

from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import Content, Email, Mail, To
from starlette.concurrency import run_in_threadpool

from backend.app.core.config import settings

logger = logging.getLogger(__name__)


class EmailService:
    """Service for sending emails via SendGrid"""

    def __init__(self, api_key: Optional[str] = None):
        self.api_key = api_key if api_key is not None else settings.sendgrid_api_key
        self.from_email = settings.email_from
        self.from_name = settings.email_from_name

        if not self.api_key:
            logger.warning("SENDGRID_API_KEY not set - emails will not be sent")
            self.client = None
        else:
            self.client = SendGridAPIClient(self.api_key)

    def _send(self, to_email: str, subject: str, text_content: str) -> bool:
        message = Mail(
            from_email=Email(self.from_email, self.from_name),
            to_emails=To(to_email),
            subject=subject,
            plain_text_content=Content("text/plain", text_content),
        )
        response = self.client.send(message)
        if response.status_code in (200, 201, 202):
            logger.info("Email sent to %s: %s", to_email, subject)
            return True
        logger.error("SendGrid rejected email to %s: %s", to_email, response.status_code)
        return False

    async def send_email(self, to_email: str, subject: str, text_content: str) -> bool:
        """
        Send a plain-text email.

        Returns:
            True if SendGrid accepted the message, False otherwise
        """
        if not self.client:
            logger.info("Skipping email to %s - SendGrid not configured", to_email)
            return False
        try:
            return await run_in_threadpool(self._send, to_email, subject, text_content)
        except Exception as e:
            logger.error("Failed to send email to %s: %s", to_email, e)
            return False

    async def send_welcome_receipt(
        self,
        to_email: str,
        client_name: str,
        program_name: str,
        trainer_name: str,
        amount,
        duration_months: Optional[int],
        start_date,
    ) -> bool:
        """Welcome/receipt message sent once a client's checkout completes."""
        subject = f"Welcome to {self.from_name}!"
        term = f"{duration_months} month(s)" if duration_months else "Ongoing"
        starts = f"{start_date:%B %d, %Y}" if start_date else "today"
        body = (
            f"Hi {client_name},\n\n"
            f"Thanks for joining. Here is your receipt:\n\n"
            f"  Program: {program_name}\n"
            f"  Trainer: {trainer_name}\n"
            f"  Amount:  ${amount:,.2f}\n"
            f"  Term:    {term}\n"
            f"  Starts:  {starts}\n\n"
            "Your trainer will be in touch to schedule your first session.\n\n"
            f"{self.from_name}"
        )
        return await self.send_email(to_email, subject, body)


email_service = EmailService()


def get_email_service() -> EmailService:
    """FastAPI dependency returning the shared email sender."""
    return email_service
