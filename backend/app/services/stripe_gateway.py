"""
Stripe gateway.

The only module that talks to Stripe. The SDK is synchronous, so every call
runs in Starlette's threadpool; Stripe exceptions are translated into the
application's payment errors here and nowhere else.
"""

import json
import logging
from typing import Any, Dict, List, Optional

import stripe
from starlette.concurrency import run_in_threadpool

from backend.app.core.config import settings
from backend.app.core.exceptions import BusinessValidationError, PaymentDeclinedError, PaymentProcessorError
from backend.app.core.reliability import CircuitBreaker, CircuitOpenError

logger = logging.getLogger(__name__)

DECLINE_MESSAGES = {
    "card_declined": "The card was declined. Please try a different payment method.",
    "insufficient_funds": "Insufficient funds. Please try a different payment method.",
    "expired_card": "The card has expired. Please update the payment method.",
    "incorrect_cvc": "The card's security code is incorrect.",
}
GENERIC_DECLINE_MESSAGE = "Payment failed. Please try again."


class InvalidWebhookError(Exception):
    """Webhook payload or signature could not be verified."""


def to_cents(amount) -> int:
    """Convert a Decimal dollar amount to integer minor units."""
    return int((amount * 100).to_integral_value())


def _to_dict(obj: Any) -> Any:
    if obj is None or isinstance(obj, (str, int, float, bool)):
        return obj
    to_dict_recursive = getattr(obj, "to_dict_recursive", None)
    if callable(to_dict_recursive):
        return to_dict_recursive()
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    return dict(obj)


def decline_from_card_error(exc: "stripe.CardError") -> PaymentDeclinedError:
    """Map a Stripe card error to a caller-facing decline message."""
    error = getattr(exc, "error", None)
    decline_code = getattr(error, "decline_code", None) if error is not None else None
    code = getattr(exc, "code", None)
    for candidate in (decline_code, code):
        if candidate in DECLINE_MESSAGES:
            return PaymentDeclinedError(DECLINE_MESSAGES[candidate], decline_code=candidate)
    message = getattr(exc, "user_message", None) or GENERIC_DECLINE_MESSAGE
    return PaymentDeclinedError(message, decline_code=decline_code or code)


def verify_webhook_signature(payload: bytes, sig_header: Optional[str], secret: str) -> Dict[str, Any]:
    """
    Verify a webhook delivery and return the event as a plain dict.

    Raises:
        InvalidWebhookError: missing header, bad signature, or malformed JSON
    """
    if not sig_header:
        raise InvalidWebhookError("Missing signature")
    try:
        stripe.Webhook.construct_event(payload, sig_header, secret)
    except ValueError as e:
        raise InvalidWebhookError("Invalid payload") from e
    except stripe.SignatureVerificationError as e:
        raise InvalidWebhookError("Webhook signature verification failed") from e
    return json.loads(payload)


class StripeGateway:
    """Async facade over the Stripe SDK for the billing core."""

    def __init__(self, api_key: str = None, api_version: str = None, breaker: CircuitBreaker = None):
        self.api_key = api_key if api_key is not None else settings.stripe_secret_key
        self.api_version = api_version if api_version is not None else settings.stripe_api_version
        self.breaker = breaker or CircuitBreaker(
            failure_threshold=5,
            reset_timeout=30,
            ignored=(PaymentDeclinedError, BusinessValidationError),
        )

    def _request_options(self) -> Dict[str, Any]:
        options = {"api_key": self.api_key}
        if self.api_version:
            options["stripe_version"] = self.api_version
        return options

    async def _call(self, func, *args, **kwargs) -> Any:
        async def invoke():
            try:
                return await run_in_threadpool(func, *args, **kwargs, **self._request_options())
            except stripe.CardError as e:
                logger.info("Stripe card error: code=%s", getattr(e, "code", None))
                raise decline_from_card_error(e) from e
            except stripe.InvalidRequestError as e:
                # Bad caller input, e.g. an unknown payment method id
                logger.warning("Stripe rejected request: param=%s %s", getattr(e, "param", None), e)
                message = getattr(e, "user_message", None) or "Invalid payment request"
                raise BusinessValidationError(message, details={"param": getattr(e, "param", None)}) from e
            except stripe.StripeError as e:
                logger.error("Stripe API error: %s", e)
                message = getattr(e, "user_message", None) or "Payment processor request failed"
                raise PaymentProcessorError(message) from e

        try:
            return await self.breaker.call(invoke)
        except CircuitOpenError as e:
            raise PaymentProcessorError("Payment processor temporarily unavailable") from e

    async def create_checkout_session(self, **params) -> Dict[str, Any]:
        session = await self._call(stripe.checkout.Session.create, **params)
        return _to_dict(session)

    async def expire_checkout_session(self, session_id: str) -> Dict[str, Any]:
        """
        Expire an open checkout session so it can no longer be paid.

        Stripe refuses to expire a session that is not open; the session is
        then retrieved so the caller can see whether it was paid.
        """
        try:
            session = await self._call(stripe.checkout.Session.expire, session_id)
        except BusinessValidationError:
            session = await self._call(stripe.checkout.Session.retrieve, session_id)
        return _to_dict(session)

    async def create_recurring_price(
        self, amount_cents: int, product_name: str, metadata: Dict[str, str]
    ) -> str:
        price = await self._call(
            stripe.Price.create,
            currency=settings.currency,
            unit_amount=amount_cents,
            recurring={"interval": "month"},
            product_data={"name": product_name, "metadata": metadata},
        )
        return price["id"]

    async def create_subscription(
        self,
        customer_id: str,
        price_id: str,
        payment_method_id: str,
        metadata: Dict[str, str],
        cancel_at: Optional[int] = None,
    ) -> Dict[str, Any]:
        params = {
            "customer": customer_id,
            "items": [{"price": price_id}],
            "default_payment_method": payment_method_id,
            # Declines raise synchronously instead of leaving an incomplete subscription
            "payment_behavior": "error_if_incomplete",
            "metadata": metadata,
        }
        if cancel_at is not None:
            params["cancel_at"] = cancel_at
        subscription = await self._call(stripe.Subscription.create, **params)
        return _to_dict(subscription)

    async def cancel_subscription(self, subscription_id: str) -> Dict[str, Any]:
        subscription = await self._call(stripe.Subscription.cancel, subscription_id)
        return _to_dict(subscription)

    async def pause_subscription(self, subscription_id: str) -> Dict[str, Any]:
        subscription = await self._call(
            stripe.Subscription.modify, subscription_id, pause_collection={"behavior": "void"}
        )
        return _to_dict(subscription)

    async def resume_subscription(self, subscription_id: str) -> Dict[str, Any]:
        # An empty string unsets pause_collection
        subscription = await self._call(stripe.Subscription.modify, subscription_id, pause_collection="")
        return _to_dict(subscription)

    async def retrieve_latest_invoice(self, subscription_id: str) -> Optional[Dict[str, Any]]:
        subscription = await self._call(
            stripe.Subscription.retrieve, subscription_id, expand=["latest_invoice"]
        )
        invoice = _to_dict(subscription).get("latest_invoice")
        return invoice if isinstance(invoice, dict) else None

    async def pay_invoice(self, invoice_id: str) -> Dict[str, Any]:
        invoice = await self._call(stripe.Invoice.pay, invoice_id)
        return _to_dict(invoice)

    async def list_card_payment_methods(self, customer_id: str) -> List[Dict[str, Any]]:
        result = _to_dict(await self._call(stripe.PaymentMethod.list, customer=customer_id, type="card"))
        return result.get("data", [])


def current_period_end(subscription: Dict[str, Any]) -> Optional[int]:
    """Period end lives on the subscription, or on its items in newer API versions."""
    if subscription.get("current_period_end"):
        return subscription["current_period_end"]
    items = (subscription.get("items") or {}).get("data") or []
    if items:
        return items[0].get("current_period_end")
    return None


stripe_gateway = StripeGateway()


def get_payment_gateway() -> StripeGateway:
    """FastAPI dependency returning the shared Stripe gateway."""
    return stripe_gateway
