"""Bank transfer service: invoices, receipt uploads and the verification queue."""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import settings
from ..core.exceptions import AuthorizationError, ValidationError
from ..core.identifiers import parse_uuid
from ..models.booking import Booking, BookingStatus
from ..models.payment import Payment, PaymentMethod, PaymentStatus
from ..schemas.payment import BankDetails, CreateBankTransferRequest
from . import notification_service as notifications
from .notification_service import NotificationService
from .payment_gateway import REFERENCE_INVOICE, InvoiceInfo, PaymentGateway
from .payment_service import (
    BookingAlreadyPaidError,
    BookingNotPayableError,
    PaymentService,
)
from .pricing import charge_breakdown

logger = logging.getLogger(__name__)


class InvalidReceiptError(ValidationError):
    """Exception for an unusable bank transfer receipt."""

    def __init__(self, detail: str, code: str, errors: Optional[dict] = None):
        super().__init__(detail=detail, errors=errors, code=code)


@dataclass
class BankTransferInvoiceResult:
    invoice: InvoiceInfo
    payment: Payment
    bank_details: BankDetails


@dataclass
class PendingTransfer:
    payment: Payment
    booking_number: str
    tour_title: Optional[str]


def get_bank_details(reference: Optional[str] = None) -> BankDetails:
    """Configured beneficiary details, with the reference the traveler should quote."""
    return BankDetails(
        account_name=settings.bank_account_name,
        bank_name=settings.bank_name,
        account_number=settings.bank_account_number,
        routing_number=settings.bank_routing_number,
        swift_code=settings.bank_swift_code,
        instructions=settings.bank_transfer_instructions,
        reference=reference,
    )


def validate_receipt(filename: Optional[str], content_type: Optional[str], data: bytes) -> None:
    """
    Raises:
        InvalidReceiptError: For a disallowed type, an empty file or an oversized file
    """
    if content_type not in settings.receipt_allowed_content_types:
        raise InvalidReceiptError(
            detail="Receipt must be an image or a PDF",
            code="INVALID_RECEIPT_TYPE",
            errors={"content_type": content_type, "allowed": settings.receipt_allowed_content_types},
        )
    if not data:
        raise InvalidReceiptError(detail="Receipt file is empty", code="EMPTY_RECEIPT")
    if len(data) > settings.receipt_max_bytes:
        raise InvalidReceiptError(
            detail="Receipt file is too large",
            code="RECEIPT_TOO_LARGE",
            errors={"size": len(data), "max_bytes": settings.receipt_max_bytes},
        )
    if not filename:
        raise InvalidReceiptError(detail="Receipt filename is missing", code="INVALID_RECEIPT_NAME")


class BankTransferService:
    """Service for paying bookings by bank transfer."""

    def __init__(self, db: AsyncSession, gateway: PaymentGateway):
        self.db = db
        self.gateway = gateway
        self.payment_service = PaymentService(db, gateway)
        self.notifications = NotificationService(db)

    async def create_bank_transfer_invoice(
        self, request: CreateBankTransferRequest, current_user: dict
    ) -> BankTransferInvoiceResult:
        """
        Issue a processor invoice for paying a booking by bank transfer.

        The invoice covers the deposit or the full total, with no card fee.
        A card intent already open on the booking is cancelled first.

        Raises:
            NotFoundError, AuthorizationError, BookingNotPayableError,
            BookingAlreadyPaidError: See PaymentService.load_payable_booking
            ExternalServiceError: If the processor call fails
            ConflictError: If a card payment for the booking is still processing
        """
        booking = await self.payment_service.load_payable_booking(request.booking_id, current_user)
        booking_id = booking.id
        booking_number = booking.booking_number
        currency = booking.currency
        tour_title = booking.tour.title if booking.tour else None

        breakdown = charge_breakdown(
            booking.total_price,
            booking.is_deposit_payment,
            booking.deposit_amount,
            with_card_fee=False,
            fee_rate=settings.card_fee_rate,
        )

        payment = booking.payment
        if payment is not None:
            await self.payment_service.retire_prior_intent(payment)

        invoice = await self.gateway.create_bank_transfer_invoice(
            email=current_user.get("email"),
            name=current_user.get("name"),
            amount=breakdown.total_charged,
            currency=currency,
            description=f"Booking {booking_number}" + (f" - {tour_title}" if tour_title else ""),
            metadata={
                "booking_id": str(booking_id),
                "booking_number": booking_number,
                "user_id": current_user["user_id"],
            },
            days_until_due=settings.bank_invoice_days_until_due,
            idempotency_key=f"invoice:{booking_id}:{breakdown.total_charged}",
        )

        details = {
            **breakdown.as_details(),
            "reference_type": REFERENCE_INVOICE,
            "hosted_invoice_url": invoice.hosted_invoice_url,
            "customer_id": invoice.customer_id,
        }
        payment_id = await self.payment_service.upsert_payment(
            payment,
            booking_id=booking_id,
            user_id=current_user["user_id"],
            method=PaymentMethod.BANK_TRANSFER,
            amount=breakdown.total_charged,
            currency=currency,
            external_reference=invoice.id,
            details=details,
        )

        logger.info(
            "Bank transfer invoice created",
            extra={
                "booking_id": str(booking_id),
                "payment_id": str(payment_id),
                "invoice_id": invoice.id,
                "amount": breakdown.total_charged,
            }
        )
        return BankTransferInvoiceResult(
            invoice=invoice,
            payment=await self.payment_service.get_payment_by_id_or_raise(payment_id),
            bank_details=get_bank_details(booking_number),
        )

    async def submit_bank_transfer(
        self,
        booking_id: str,
        current_user: dict,
        filename: Optional[str],
        content_type: Optional[str],
        data: bytes,
    ) -> Payment:
        """
        Attach a transfer receipt to a booking and queue it for verification.

        A receipt may replace one still awaiting verification or follow a
        rejected one.

        Raises:
            InvalidReceiptError: For an unusable receipt
            NotFoundError: If booking not found
            AuthorizationError: If the caller does not own the booking
            BookingNotPayableError: If the booking is cancelled
            BookingAlreadyPaidError: If the booking is already paid
            ConflictError: If a card payment for the booking is still processing
        """
        validate_receipt(filename, content_type, data)

        booking = await self.payment_service.booking_service.get_booking_by_id_or_raise(
            parse_uuid(booking_id, "booking")
        )
        if booking.user_id != current_user["user_id"]:
            raise AuthorizationError("You can only pay for your own bookings")
        booking_uuid = booking.id
        booking_number = booking.booking_number

        if booking.status == BookingStatus.CANCELLED:
            raise BookingNotPayableError(
                str(booking_uuid),
                f"Booking {booking_number} is cancelled",
                code="BOOKING_CANCELLED",
            )
        payment = booking.payment
        if payment is not None and payment.status in (PaymentStatus.COMPLETED, PaymentStatus.REFUNDED):
            raise BookingAlreadyPaidError(str(booking_uuid), payment.payment_number)
        if booking.status != BookingStatus.PENDING:
            raise BookingAlreadyPaidError(str(booking_uuid))

        breakdown = charge_breakdown(
            booking.total_price,
            booking.is_deposit_payment,
            booking.deposit_amount,
            with_card_fee=False,
            fee_rate=settings.card_fee_rate,
        )

        details = {**breakdown.as_details(), "reference_type": REFERENCE_INVOICE}
        external_reference = None
        if payment is not None:
            await self.payment_service.retire_prior_intent(payment)
            previous = dict(payment.details or {})
            if previous.get("reference_type") == REFERENCE_INVOICE:
                external_reference = payment.external_reference
                for key in ("hosted_invoice_url", "customer_id"):
                    if key in previous:
                        details[key] = previous[key]
            if "rejection" in previous:
                details["previous_rejection"] = previous["rejection"]

        payment_id = await self.payment_service.upsert_payment(
            payment,
            booking_id=booking_uuid,
            user_id=current_user["user_id"],
            method=PaymentMethod.BANK_TRANSFER,
            amount=breakdown.total_charged,
            currency=booking.currency,
            external_reference=external_reference,
            details=details,
            status=PaymentStatus.AWAITING_VERIFICATION,
            receipt_data=data,
            receipt_filename=filename,
            receipt_content_type=content_type,
        )

        logger.info(
            "Bank transfer receipt submitted",
            extra={
                "booking_id": str(booking_uuid),
                "payment_id": str(payment_id),
                "size": len(data),
                "content_type": content_type,
            }
        )
        await self.notifications.notify(
            current_user["user_id"],
            notifications.BANK_TRANSFER_SUBMITTED,
            "Bank transfer received",
            f"We received your transfer receipt for booking {booking_number} and will verify it shortly.",
            link=f"/bookings/{booking_uuid}",
        )
        return await self.payment_service.get_payment_by_id_or_raise(payment_id)

    async def list_pending_bank_transfers(self) -> list[PendingTransfer]:
        """Payments awaiting verification, oldest first."""
        stmt = (
            select(Payment)
            .where(Payment.status == PaymentStatus.AWAITING_VERIFICATION)
            .order_by(Payment.updated_at.asc(), Payment.payment_number.asc())
            .execution_options(populate_existing=True)
        )
        payments = (await self.db.execute(stmt)).scalars().all()

        items = []
        for payment in payments:
            booking: Booking = payment.booking
            items.append(PendingTransfer(
                payment=payment,
                booking_number=booking.booking_number,
                tour_title=booking.tour.title if booking.tour else None,
            ))
        return items
