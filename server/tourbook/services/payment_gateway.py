"""Payment processor capability used by the payment and confirmation services."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional, Protocol

# Processor payment intent statuses the services act on
INTENT_SUCCEEDED = "succeeded"
INTENT_CANCELED = "canceled"
INTENT_REQUIRES_PAYMENT_METHOD = "requires_payment_method"
INTENT_PROCESSING = "processing"

# Statuses in which an intent can still be cancelled
CANCELABLE_INTENT_STATUSES = frozenset({
    "requires_payment_method",
    "requires_confirmation",
    "requires_action",
    "requires_capture",
})

EVENT_PAYMENT_SUCCEEDED = "payment_intent.succeeded"
EVENT_PAYMENT_FAILED = "payment_intent.payment_failed"

# Kinds of processor object a payment's external_reference names
REFERENCE_PAYMENT_INTENT = "payment_intent"
REFERENCE_INVOICE = "invoice"


@dataclass(frozen=True)
class PaymentIntentInfo:
    """The fields of a processor payment intent the service relies on."""

    id: str
    status: str
    amount: int
    currency: str
    client_secret: Optional[str] = None
    payment_method_types: tuple[str, ...] = ()
    latest_charge: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.status == INTENT_SUCCEEDED


@dataclass(frozen=True)
class InvoiceInfo:
    """A processor invoice for a bank transfer."""

    id: str
    customer_id: str
    status: str
    amount_due: int
    currency: str
    hosted_invoice_url: Optional[str] = None
    due_date: Optional[datetime] = None


@dataclass(frozen=True)
class RefundInfo:
    id: str
    status: str
    amount: int


class PaymentGateway(Protocol):
    """
    Operations the service needs from a payment processor.

    Every method raises ExternalServiceError when the processor rejects the
    call, is unreachable or does not answer in time.
    """

    async def create_payment_intent(
        self,
        *,
        amount: int,
        currency: str,
        payment_method_type: str,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> PaymentIntentInfo:
        ...

    async def retrieve_payment_intent(self, intent_id: str) -> PaymentIntentInfo:
        ...

    async def update_payment_intent_amount(self, intent_id: str, amount: int) -> PaymentIntentInfo:
        ...

    async def cancel_payment_intent(self, intent_id: str) -> PaymentIntentInfo:
        ...

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
        ...

    async def refund_payment_intent(
        self,
        *,
        intent_id: str,
        amount: int,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> RefundInfo:
        ...

    def parse_webhook_event(self, payload: bytes, signature: Optional[str]) -> dict[str, Any]:
        """Verify the signature over the raw body and return the decoded event."""
        ...
