"""Payment service: payment intent lifecycle, lookups and refunds."""

import logging
from dataclasses import dataclass
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import settings
from ..core.database import utcnow
from ..core.exceptions import AuthorizationError, ConflictError, NotFoundError, ValidationError
from ..core.identifiers import generate_reference, parse_uuid
from ..core.observability import metrics_collector
from ..core.security import ensure_owner_or_admin
from ..models.booking import Booking, BookingStatus
from ..models.payment import Payment, PaymentMethod, PaymentStatus, statuses_leading_to
from ..schemas.payment import CreatePaymentIntentRequest, GetPaymentRequest, RefundPaymentRequest
from . import notification_service as notifications
from .booking_service import BookingService
from .confirmation_service import PROCESSOR_SOURCE_STATUSES, ConfirmationService
from .notification_service import NotificationService
from .payment_gateway import (
    CANCELABLE_INTENT_STATUSES,
    INTENT_CANCELED,
    INTENT_PROCESSING,
    REFERENCE_PAYMENT_INTENT,
    PaymentGateway,
    PaymentIntentInfo,
)
from .pricing import ChargeBreakdown, charge_breakdown, max_client_amount

logger = logging.getLogger(__name__)


class BookingAlreadyPaidError(ConflictError):
    """Exception when a booking's payment has already completed."""

    def __init__(self, booking_id: str, payment_number: Optional[str] = None):
        super().__init__(
            detail=f"Booking {booking_id} has already been paid",
            conflicting_resource={"booking_id": booking_id, "payment_number": payment_number},
            code="BOOKING_ALREADY_PAID",
        )


class BookingNotPayableError(ConflictError):
    """Exception when a booking is in a state that cannot take a payment."""

    def __init__(self, booking_id: str, reason: str, code: str):
        super().__init__(
            detail=reason,
            conflicting_resource={"booking_id": booking_id},
            code=code,
        )


class AmountOutOfBoundsError(ValidationError):
    """Exception when a client-declared amount is outside the accepted range."""

    def __init__(self, amount: int, minimum: int, maximum: int):
        super().__init__(
            detail=f"Amount {amount} is outside the accepted range {minimum}..{maximum}",
            errors={"amount": amount, "minimum": minimum, "maximum": maximum},
            code="AMOUNT_OUT_OF_BOUNDS",
        )


class StaleAmountError(ValidationError):
    """Exception when the client displayed a different amount than will be charged."""

    def __init__(self, client_amount: int, server_amount: int):
        super().__init__(
            detail="The amount shown no longer matches the booking. Refresh and try again.",
            errors={"amount": client_amount, "expected_amount": server_amount},
            code="STALE_AMOUNT",
        )


@dataclass
class PaymentIntentResult:
    payment: Payment
    intent: PaymentIntentInfo
    breakdown: ChargeBreakdown
    action: str


class PaymentService:
    """Service for payment intents and payment records."""

    def __init__(self, db: AsyncSession, gateway: PaymentGateway):
        self.db = db
        self.gateway = gateway
        self.booking_service = BookingService(db, gateway)
        self.confirmation_service = ConfirmationService(db, gateway)
        self.notifications = NotificationService(db)

    async def _generate_payment_number(self) -> str:
        """Generate a payment number not used by any payment."""
        while True:
            payment_number = generate_reference("PAY")
            stmt = select(Payment.id).where(Payment.payment_number == payment_number)
            if (await self.db.execute(stmt)).first() is None:
                return payment_number

    async def get_payment_by_id(self, payment_id: UUID) -> Payment | None:
        stmt = (
            select(Payment)
            .where(Payment.id == payment_id)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_payment_by_id_or_raise(self, payment_id: UUID) -> Payment:
        """
        Raises:
            NotFoundError: If payment not found
        """
        payment = await self.get_payment_by_id(payment_id)
        if not payment:
            logger.warning("Payment not found", extra={"payment_id": str(payment_id)})
            raise NotFoundError(resource_type="payment", resource_id=str(payment_id))
        return payment

    async def get_payment(self, request: GetPaymentRequest, current_user: dict) -> Payment:
        """Get a payment visible to the caller."""
        payment = await self.get_payment_by_id_or_raise(parse_uuid(request.payment_id, "payment"))
        ensure_owner_or_admin(payment.user_id, current_user, "payment")
        return payment

    async def load_payable_booking(self, booking_id: str, current_user: dict) -> Booking:
        """
        Load a booking the caller may pay for now.

        Raises:
            NotFoundError: If booking not found
            AuthorizationError: If the caller does not own the booking
            BookingNotPayableError: If the booking is cancelled or awaiting verification
            BookingAlreadyPaidError: If the booking's payment has completed
        """
        booking = await self.booking_service.get_booking_by_id_or_raise(parse_uuid(booking_id, "booking"))
        if booking.user_id != current_user["user_id"]:
            raise AuthorizationError("You can only pay for your own bookings")

        if booking.status == BookingStatus.CANCELLED:
            raise BookingNotPayableError(
                str(booking.id),
                f"Booking {booking.booking_number} is cancelled",
                code="BOOKING_CANCELLED",
            )

        payment = booking.payment
        if payment is not None:
            if payment.status in (PaymentStatus.COMPLETED, PaymentStatus.REFUNDED):
                raise BookingAlreadyPaidError(str(booking.id), payment.payment_number)
            if payment.status == PaymentStatus.AWAITING_VERIFICATION:
                raise BookingNotPayableError(
                    str(booking.id),
                    "A bank transfer for this booking is awaiting verification",
                    code="PAYMENT_AWAITING_VERIFICATION",
                )

        if booking.status != BookingStatus.PENDING:
            raise BookingAlreadyPaidError(str(booking.id))

        return booking

    def check_client_amount(self, client_amount: Optional[int], server_amount: int, total_price: int) -> None:
        """
        Compare a client-declared amount with the amount that will be charged.

        Raises:
            AmountOutOfBoundsError: Below the processor minimum or above the sanity bound
            StaleAmountError: In range but not matching the server amount
        """
        if client_amount is None:
            return

        minimum = settings.stripe_min_charge_amount
        maximum = max_client_amount(
            total_price,
            settings.client_amount_max_multiplier,
            settings.client_amount_floor,
        )
        if client_amount < minimum or client_amount > maximum:
            logger.warning(
                "Rejected client amount outside accepted range",
                extra={"client_amount": client_amount, "minimum": minimum, "maximum": maximum}
            )
            raise AmountOutOfBoundsError(client_amount, minimum, maximum)

        if abs(client_amount - server_amount) > settings.client_amount_tolerance:
            logger.info(
                "Client amount differs from server amount",
                extra={"client_amount": client_amount, "server_amount": server_amount}
            )
            raise StaleAmountError(client_amount, server_amount)

    async def retire_prior_intent(self, payment: Payment, keep_method_type: Optional[str] = None) -> Optional[PaymentIntentInfo]:
        """
        Deal with the payment intent already recorded on a payment.

        Returns the prior intent when it can be reused for `keep_method_type`.
        An intent that has already succeeded is recorded through the
        confirmation transition and BookingAlreadyPaidError is raised. Any
        other open intent is cancelled at the processor; one that is still
        processing blocks the switch.
        """
        if payment.details.get("reference_type") != REFERENCE_PAYMENT_INTENT or not payment.external_reference:
            return None

        payment_id = payment.id
        booking_id = payment.booking_id
        payment_number = payment.payment_number
        prior = await self.gateway.retrieve_payment_intent(payment.external_reference)

        if prior.succeeded:
            logger.info(
                "Prior payment intent already succeeded",
                extra={"payment_intent_id": prior.id, "payment_id": str(payment_id)}
            )
            await self.confirmation_service.mark_payment_succeeded(
                payment_id,
                source="create_intent",
                allowed_from=PROCESSOR_SOURCE_STATUSES,
                charge_reference=prior.latest_charge,
            )
            raise BookingAlreadyPaidError(str(booking_id), payment_number)

        if keep_method_type and keep_method_type in prior.payment_method_types and prior.status != INTENT_CANCELED:
            return prior

        if prior.status == INTENT_PROCESSING:
            logger.info(
                "Prior payment intent is still processing",
                extra={"payment_intent_id": prior.id, "payment_id": str(payment_id)}
            )
            raise ConflictError(
                detail="A payment for this booking is being processed. Please wait for its outcome.",
                conflicting_resource={"booking_id": str(booking_id), "payment_intent_id": prior.id},
                code="PAYMENT_IN_PROGRESS",
            )

        if prior.status in CANCELABLE_INTENT_STATUSES:
            await self.gateway.cancel_payment_intent(prior.id)
            logger.info(
                "Cancelled superseded payment intent",
                extra={"payment_intent_id": prior.id, "payment_id": str(payment_id), "intent_status": prior.status}
            )
        return None

    async def create_payment_intent(self, request: CreatePaymentIntentRequest, current_user: dict) -> PaymentIntentResult:
        """
        Create, reuse or replace the payment intent for a booking.

        The charged amount is always computed here from the booking; the
        client's amount is only checked against it.

        Raises:
            NotFoundError, AuthorizationError, BookingNotPayableError,
            BookingAlreadyPaidError: See load_payable_booking
            AmountOutOfBoundsError, StaleAmountError: For a bad client amount
            ExternalServiceError: If the processor call fails
            ConflictError: If the prior intent is still processing
        """
        booking = await self.load_payable_booking(request.booking_id, current_user)
        booking_id = booking.id
        booking_number = booking.booking_number
        currency = booking.currency
        method = request.payment_method

        breakdown = charge_breakdown(
            booking.total_price,
            booking.is_deposit_payment,
            booking.deposit_amount,
            with_card_fee=method == PaymentMethod.CARD,
            fee_rate=settings.card_fee_rate,
        )
        self.check_client_amount(request.amount, breakdown.total_charged, booking.total_price)

        if breakdown.total_charged < settings.stripe_min_charge_amount:
            raise ValidationError(
                detail="The amount due is below the processor minimum charge",
                errors={"amount": breakdown.total_charged, "minimum": settings.stripe_min_charge_amount},
                code="AMOUNT_BELOW_MINIMUM",
            )

        payment = booking.payment
        prior_intent_id = None
        intent = None
        if payment is not None:
            prior_intent_id = (
                payment.external_reference
                if payment.details.get("reference_type") == REFERENCE_PAYMENT_INTENT
                else None
            )
            intent = await self.retire_prior_intent(payment, keep_method_type=method.processor_type)

        if intent is not None:
            action = "reused"
            if intent.amount != breakdown.total_charged:
                intent = await self.gateway.update_payment_intent_amount(intent.id, breakdown.total_charged)
        else:
            action = "replaced" if prior_intent_id else "created"
            intent = await self.gateway.create_payment_intent(
                amount=breakdown.total_charged,
                currency=currency,
                payment_method_type=method.processor_type,
                metadata={
                    "booking_id": str(booking_id),
                    "booking_number": booking_number,
                    "user_id": current_user["user_id"],
                },
                idempotency_key=(
                    f"pi:{booking_id}:{method.processor_type}:{breakdown.total_charged}:{prior_intent_id or 'none'}"
                ),
            )

        details = {**breakdown.as_details(), "reference_type": REFERENCE_PAYMENT_INTENT}
        try:
            payment_id = await self.upsert_payment(
                payment,
                booking_id=booking_id,
                user_id=current_user["user_id"],
                method=method,
                amount=breakdown.total_charged,
                currency=currency,
                external_reference=intent.id,
                details=details,
            )
        except ConflictError:
            if action != "reused":
                await self.booking_service.cancel_open_intent(intent.id, booking_id)
            raise

        metrics_collector.record_payment_intent(action)
        logger.info(
            "Payment intent ready",
            extra={
                "booking_id": str(booking_id),
                "payment_id": str(payment_id),
                "payment_intent_id": intent.id,
                "action": action,
                "amount": breakdown.total_charged,
                "fee_amount": breakdown.fee_amount,
                "payment_method": method.value,
            }
        )

        return PaymentIntentResult(
            payment=await self.get_payment_by_id_or_raise(payment_id),
            intent=intent,
            breakdown=breakdown,
            action=action,
        )

    async def upsert_payment(
        self,
        payment: Optional[Payment],
        *,
        booking_id: UUID,
        user_id: str,
        method: PaymentMethod,
        amount: int,
        currency: str,
        external_reference: Optional[str],
        details: dict,
        status: PaymentStatus = PaymentStatus.PENDING,
        **columns,
    ) -> UUID:
        """
        Create or rewrite the booking's single payment row and commit.

        An existing row is only rewritten while its stored status may still
        move to `status`, so a payment completed by another trigger since it
        was loaded is left alone.

        Raises:
            BookingAlreadyPaidError: If the payment completed in the meantime
            BookingNotPayableError: If a bank transfer is now awaiting verification
            ConflictError: If another request created the payment concurrently
        """
        try:
            if payment is None:
                payment_id = uuid4()
                self.db.add(Payment(
                    id=payment_id,
                    payment_number=await self._generate_payment_number(),
                    booking_id=booking_id,
                    user_id=user_id,
                    amount=amount,
                    currency=currency,
                    payment_method=method,
                    status=status,
                    external_reference=external_reference,
                    details=details,
                    **columns,
                ))
            else:
                payment_id = payment.id
                result = await self.db.execute(
                    update(Payment)
                    .where(Payment.id == payment_id, Payment.status.in_(statuses_leading_to(status)))
                    .values(
                        payment_method=method,
                        amount=amount,
                        currency=currency,
                        status=status,
                        external_reference=external_reference,
                        details=details,
                        updated_at=utcnow(),
                        **columns,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 0:
                    await self.db.rollback()
                    await self._raise_payment_moved_on(payment_id, booking_id)
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            logger.warning(
                "Concurrent payment setup for booking",
                extra={"booking_id": str(booking_id)}
            )
            raise ConflictError(
                detail="Another payment for this booking is being set up. Please retry.",
                conflicting_resource={"booking_id": str(booking_id)},
                code="PAYMENT_IN_PROGRESS",
            )
        return payment_id

    async def _raise_payment_moved_on(self, payment_id: UUID, booking_id: UUID) -> None:
        latest = await self.get_payment_by_id_or_raise(payment_id)
        logger.warning(
            "Payment changed while being set up",
            extra={"payment_id": str(payment_id), "booking_id": str(booking_id), "payment_status": latest.status.value}
        )
        if latest.status == PaymentStatus.AWAITING_VERIFICATION:
            raise BookingNotPayableError(
                str(booking_id),
                "A bank transfer for this booking is awaiting verification",
                code="PAYMENT_AWAITING_VERIFICATION",
            )
        raise BookingAlreadyPaidError(str(booking_id), latest.payment_number)

    async def refund_payment(self, request: RefundPaymentRequest, admin: dict) -> Payment:
        """
        Refund a completed payment, fully or partially.

        Card payments are refunded through the processor; bank transfers are
        settled outside the system and only recorded here.

        Raises:
            NotFoundError: If payment not found
            ConflictError: If the payment is not COMPLETED
            ValidationError: If the amount exceeds what was charged
            ExternalServiceError: If the processor refund fails
        """
        payment = await self.get_payment_by_id_or_raise(parse_uuid(request.payment_id, "payment"))
        payment_id = payment.id
        user_id = payment.user_id
        payment_number = payment.payment_number

        if payment.status != PaymentStatus.COMPLETED:
            raise ConflictError(
                detail=f"Payment {payment_number} is {payment.status.value} and cannot be refunded",
                conflicting_resource={"payment_id": str(payment_id), "status": payment.status.value},
                code="PAYMENT_NOT_REFUNDABLE",
            )

        amount = request.amount or payment.amount
        if amount > payment.amount:
            raise ValidationError(
                detail="Refund amount exceeds the amount charged",
                errors={"amount": amount, "charged": payment.amount},
                code="REFUND_EXCEEDS_PAYMENT",
            )

        refund_record = {
            "amount": amount,
            "reason": request.reason,
            "refunded_by": admin["user_id"],
        }
        if (
            payment.payment_method == PaymentMethod.CARD
            and payment.details.get("reference_type") == REFERENCE_PAYMENT_INTENT
            and payment.external_reference
        ):
            refund = await self.gateway.refund_payment_intent(
                intent_id=payment.external_reference,
                amount=amount,
                metadata={"payment_id": str(payment_id), "reason": request.reason or ""},
                idempotency_key=f"refund:{payment_id}:{amount}",
            )
            refund_record["refund_id"] = refund.id
            refund_record["refund_status"] = refund.status

        now = utcnow()
        stmt = (
            update(Payment)
            .where(Payment.id == payment_id, Payment.status == PaymentStatus.COMPLETED)
            .values(
                status=PaymentStatus.REFUNDED,
                refunded_at=now,
                refund_amount=amount,
                details={**payment.details, "refund": refund_record},
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        if result.rowcount == 0:
            await self.db.rollback()
            raise ConflictError(
                detail=f"Payment {payment_number} changed while being refunded",
                conflicting_resource={"payment_id": str(payment_id)},
                code="PAYMENT_NOT_REFUNDABLE",
            )
        await self.db.commit()

        logger.info(
            "Payment refunded",
            extra={"payment_id": str(payment_id), "amount": amount, "actor": admin["user_id"]}
        )
        await self.notifications.notify(
            user_id,
            notifications.PAYMENT_REFUNDED,
            "Payment refunded",
            f"A refund for payment {payment_number} has been issued.",
        )
        return await self.get_payment_by_id_or_raise(payment_id)
