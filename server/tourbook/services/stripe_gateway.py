"""Stripe implementation of the payment gateway."""

import asyncio
import json
import logging
from datetime import datetime, timezone
from functools import partial
from typing import Any, Callable, Optional

import stripe

from ..core.exceptions import ExternalServiceError, ValidationError
from .payment_gateway import InvoiceInfo, PaymentIntentInfo, RefundInfo

logger = logging.getLogger(__name__)


class WebhookSignatureError(ValidationError):
    """Exception when a webhook body does not carry a valid processor signature."""

    def __init__(self, detail: str = "Invalid webhook signature"):
        super().__init__(detail=detail, code="INVALID_SIGNATURE")


def parse_webhook_event(
    payload: bytes,
    signature: Optional[str],
    secret: str,
    tolerance: int = stripe.Webhook.DEFAULT_TOLERANCE,
) -> dict[str, Any]:
    """
    Verify a Stripe-Signature header against the raw body, then decode it.

    Raises:
        WebhookSignatureError: If the secret or header is missing, the
            signature does not match, or the body is not a JSON event
    """
    if not secret:
        logger.error("Webhook received but no webhook secret is configured")
        raise WebhookSignatureError("Webhook verification is not configured")
    if not signature:
        raise WebhookSignatureError("Missing Stripe-Signature header")

    try:
        body = payload.decode("utf-8")
        stripe.WebhookSignature.verify_header(body, signature, secret, tolerance)
        event = json.loads(body)
    except stripe.SignatureVerificationError as e:
        logger.warning("Webhook signature verification failed", extra={"reason": str(e)})
        raise WebhookSignatureError()
    except (UnicodeDecodeError, ValueError):
        raise WebhookSignatureError("Webhook body is not valid JSON")

    if not isinstance(event, dict) or "type" not in event:
        raise WebhookSignatureError("Webhook body is not an event")
    return event


def _field(obj, key: str, default=None):
    """Read an optional field from a Stripe object."""
    try:
        value = obj[key]
    except KeyError:
        return default
    return default if value is None else value


def _plain(obj) -> dict[str, Any]:
    if isinstance(obj, dict):
        return dict(obj)
    return {key: obj[key] for key in obj.keys()}


def _intent_info(intent) -> PaymentIntentInfo:
    return PaymentIntentInfo(
        id=intent["id"],
        status=intent["status"],
        amount=intent["amount"],
        currency=str(intent["currency"]).upper(),
        client_secret=_field(intent, "client_secret"),
        payment_method_types=tuple(_field(intent, "payment_method_types", ())),
        latest_charge=_field(intent, "latest_charge"),
        metadata=_plain(_field(intent, "metadata", {})),
    )


class StripePaymentGateway:
    """
    Payment gateway backed by the Stripe API.

    The Stripe client is synchronous, so each call runs in a worker thread
    bounded by the configured timeout. Calls are not retried.
    """

    def __init__(self, api_key: str, webhook_secret: str, timeout_seconds: float = 10.0):
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.timeout_seconds = timeout_seconds

    async def _call(self, operation: str, func: Callable, *args, **kwargs):
        if not self.api_key:
            logger.error("Payment processor call attempted without an API key", extra={"operation": operation})
            raise ExternalServiceError(detail="The payment processor is not configured")

        call = partial(func, *args, api_key=self.api_key, **kwargs)
        try:
            return await asyncio.wait_for(asyncio.to_thread(call), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            logger.error(
                "Payment processor call timed out",
                extra={"operation": operation, "timeout_seconds": self.timeout_seconds}
            )
            raise ExternalServiceError(detail="The payment processor did not respond in time. Please retry.")
        except stripe.StripeError as e:
            logger.error(
                "Payment processor call failed",
                extra={
                    "operation": operation,
                    "stripe_code": getattr(e, "code", None),
                    "http_status": getattr(e, "http_status", None),
                    "request_id": getattr(e, "request_id", None),
                }
            )
            raise ExternalServiceError()

    async def create_payment_intent(
        self,
        *,
        amount: int,
        currency: str,
        payment_method_type: str,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> PaymentIntentInfo:
        intent = await self._call(
            "payment_intent.create",
            stripe.PaymentIntent.create,
            amount=amount,
            currency=currency.lower(),
            payment_method_types=[payment_method_type],
            metadata=metadata,
            idempotency_key=idempotency_key,
        )
        return _intent_info(intent)

    async def retrieve_payment_intent(self, intent_id: str) -> PaymentIntentInfo:
        intent = await self._call("payment_intent.retrieve", stripe.PaymentIntent.retrieve, intent_id)
        return _intent_info(intent)

    async def update_payment_intent_amount(self, intent_id: str, amount: int) -> PaymentIntentInfo:
        intent = await self._call("payment_intent.modify", stripe.PaymentIntent.modify, intent_id, amount=amount)
        return _intent_info(intent)

    async def cancel_payment_intent(self, intent_id: str) -> PaymentIntentInfo:
        intent = await self._call("payment_intent.cancel", stripe.PaymentIntent.cancel, intent_id)
        return _intent_info(intent)

    async def create_bank_transfer_invoice(
        self,
        *,
        email: Optional[str],
        name: Optional[str],
        amount: int,
        currency: str,
        description: str,
        metadata: dict[str, str],
        days_until_due: int,
        idempotency_key: str,
    ) -> InvoiceInfo:
        customer = await self._call(
            "customer.create",
            stripe.Customer.create,
            email=email,
            name=name,
            metadata=metadata,
            idempotency_key=f"{idempotency_key}:customer",
        )
        invoice = await self._call(
            "invoice.create",
            stripe.Invoice.create,
            customer=customer["id"],
            collection_method="send_invoice",
            days_until_due=days_until_due,
            payment_settings={"payment_method_types": ["us_bank_account", "customer_balance"]},
            metadata=metadata,
            idempotency_key=f"{idempotency_key}:invoice",
        )
        await self._call(
            "invoice_item.create",
            stripe.InvoiceItem.create,
            customer=customer["id"],
            invoice=invoice["id"],
            amount=amount,
            currency=currency.lower(),
            description=description,
            idempotency_key=f"{idempotency_key}:item",
        )
        invoice = await self._call("invoice.finalize", stripe.Invoice.finalize_invoice, invoice["id"])

        due_date = _field(invoice, "due_date")
        return InvoiceInfo(
            id=invoice["id"],
            customer_id=customer["id"],
            status=_field(invoice, "status") or "open",
            amount_due=_field(invoice, "amount_due", amount),
            currency=str(_field(invoice, "currency") or currency).upper(),
            hosted_invoice_url=_field(invoice, "hosted_invoice_url"),
            due_date=datetime.fromtimestamp(due_date, tz=timezone.utc) if due_date else None,
        )

    async def refund_payment_intent(
        self,
        *,
        intent_id: str,
        amount: int,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> RefundInfo:
        refund = await self._call(
            "refund.create",
            stripe.Refund.create,
            payment_intent=intent_id,
            amount=amount,
            reason="requested_by_customer",
            metadata=metadata,
            idempotency_key=idempotency_key,
        )
        return RefundInfo(id=refund["id"], status=refund["status"], amount=refund["amount"])

    def parse_webhook_event(self, payload: bytes, signature: Optional[str]) -> dict[str, Any]:
        return parse_webhook_event(payload, signature, self.webhook_secret)
