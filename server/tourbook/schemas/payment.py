"""Payment-related Pydantic schemas."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ..models.payment import PaymentMethod, PaymentStatus
from .booking import Booking


class CreatePaymentIntentRequest(BaseModel):
    """
    Request schema for creating or reusing a payment intent.

    The optional amount is what the client displayed; it is checked against
    the server-computed charge and never used as the charge itself.
    """

    booking_id: str = Field(..., description="Booking to pay for")
    payment_method: PaymentMethod = Field(PaymentMethod.CARD, description="Payment method")
    amount: Optional[int] = Field(None, description="Client-displayed amount in minor units")


class ChargeBreakdown(BaseModel):
    """How the charged amount was derived."""

    base_amount: int = Field(..., ge=0, description="Deposit or full total, before fees")
    fee_amount: int = Field(..., ge=0, description="Card surcharge")
    fee_rate: str = Field(..., description="Surcharge rate applied, as a decimal string")
    total_charged: int = Field(..., ge=0, description="Amount charged to the traveler")
    currency: str = Field(..., description="ISO 4217 currency code")
    is_deposit_payment: bool = Field(..., description="Whether only the deposit is charged")


class PaymentIntentResponse(BaseModel):
    """Response schema for create-intent."""

    client_secret: str = Field(..., description="Secret the client uses to confirm the intent")
    payment_intent_id: str = Field(..., description="Processor payment intent ID")
    payment_id: str = Field(..., description="Local payment ID")
    payment_number: str = Field(..., description="Human-readable payment number")
    amount: int = Field(..., ge=0, description="Charged amount in minor units")
    currency: str = Field(..., description="ISO 4217 currency code")
    status: PaymentStatus = Field(..., description="Local payment status")
    breakdown: ChargeBreakdown = Field(..., description="Fee breakdown")


class ConfirmPaymentRequest(BaseModel):
    """Request schema for a client-side confirmation."""

    payment_intent_id: str = Field(..., description="Processor payment intent ID")
    booking_id: str = Field(..., description="Booking the intent belongs to")


class Payment(BaseModel):
    """Payment response schema."""

    id: str = Field(..., description="Unique payment ID")
    payment_number: str = Field(..., description="Human-readable payment number")
    booking_id: str = Field(..., description="Booking paid for")
    user_id: str = Field(..., description="Payer")
    amount: int = Field(..., ge=0, description="Charged amount in minor units")
    currency: str = Field(..., description="ISO 4217 currency code")
    payment_method: PaymentMethod = Field(..., description="Payment method")
    status: PaymentStatus = Field(..., description="Payment status")
    external_reference: Optional[str] = Field(None, description="Processor intent or invoice ID")
    receipt_filename: Optional[str] = Field(None, description="Uploaded bank transfer receipt")
    details: Dict[str, Any] = Field(default_factory=dict, description="Fee, rejection and refund data")
    paid_at: Optional[datetime] = Field(None)
    refunded_at: Optional[datetime] = Field(None)
    refund_amount: Optional[int] = Field(None)
    created_at: datetime = Field(..., description="Payment creation time (ISO 8601)")

    class Config:
        from_attributes = True


class ConfirmPaymentResponse(BaseModel):
    """Booking and payment state after a confirmation attempt."""

    booking: Booking = Field(..., description="Booking after confirmation")
    payment: Payment = Field(..., description="Payment after confirmation")
    transitioned: bool = Field(..., description="False when another trigger had already confirmed the payment")


class CreateBankTransferRequest(BaseModel):
    """Request schema for creating a bank transfer invoice."""

    booking_id: str = Field(..., description="Booking to invoice")


class BankDetailsRequest(BaseModel):
    """Request schema for bank details; the booking number becomes the reference."""

    booking_number: Optional[str] = Field(None, description="Booking number to quote")


class BankDetails(BaseModel):
    """Beneficiary details for a bank transfer."""

    account_name: str = Field(..., description="Beneficiary account name")
    bank_name: str = Field(..., description="Beneficiary bank")
    account_number: str = Field(..., description="Account number")
    routing_number: str = Field(..., description="Routing number")
    swift_code: str = Field(..., description="SWIFT/BIC code")
    instructions: str = Field(..., description="Transfer instructions")
    reference: Optional[str] = Field(None, description="Reference to quote on the transfer")


class BankTransferInvoice(BaseModel):
    """Response schema for create-bank-transfer."""

    invoice_id: str = Field(..., description="Processor invoice ID")
    hosted_invoice_url: Optional[str] = Field(None, description="Processor-hosted invoice page")
    due_date: Optional[datetime] = Field(None, description="When the invoice falls due")
    payment_id: str = Field(..., description="Local payment ID")
    payment_number: str = Field(..., description="Human-readable payment number")
    amount: int = Field(..., ge=0, description="Invoiced amount in minor units")
    currency: str = Field(..., description="ISO 4217 currency code")
    bank_details: BankDetails = Field(..., description="Where to send the transfer")


class GetPaymentRequest(BaseModel):
    """Request schema for getting a payment."""

    payment_id: str = Field(..., description="Payment to retrieve")


class RefundPaymentRequest(BaseModel):
    """Request schema for refunding a completed payment."""

    payment_id: str = Field(..., description="Payment to refund")
    amount: Optional[int] = Field(None, ge=1, description="Partial refund in minor units; full when omitted")
    reason: Optional[str] = Field(None, max_length=1000, description="Refund reason")


class ApproveBankTransferRequest(BaseModel):
    """Request schema for approving a bank transfer."""

    payment_id: str = Field(..., description="Payment awaiting verification")


class RejectBankTransferRequest(BaseModel):
    """Request schema for rejecting a bank transfer."""

    payment_id: str = Field(..., description="Payment awaiting verification")
    reason: str = Field(..., min_length=1, max_length=1000, description="Shown to the traveler")


class PendingBankTransfer(BaseModel):
    """A bank transfer waiting for an administrator."""

    payment: Payment = Field(..., description="Payment awaiting verification")
    booking_number: str = Field(..., description="Booking number quoted as the reference")
    tour_title: Optional[str] = Field(None, description="Tour title")


class PendingBankTransferList(BaseModel):
    """Bank transfers awaiting verification, oldest first."""

    items: List[PendingBankTransfer] = Field(..., description="Pending transfers")


class WebhookAck(BaseModel):
    """Acknowledgement returned to the processor."""

    received: bool = Field(True, description="Event accepted")
    event_type: Optional[str] = Field(None, description="Event type")
    handled: bool = Field(..., description="Whether the event changed local state")
