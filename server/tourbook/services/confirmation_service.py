"""
Confirmation service: records payment success exactly once.

Client confirmation, processor webhooks and administrator approval of bank
transfers all end in mark_payment_succeeded. It moves the payment to
COMPLETED and the booking to CONFIRMED with conditional updates committed
together. Whichever trigger arrives second updates nothing and returns
quietly.
"""

import logging
from dataclasses import dataclass
from typing import Any, Iterable, Optional
from uuid import UUID, uuid4

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.database import utcnow
from ..core.exceptions import ConflictError, NotFoundError, ReconciliationError, ValidationError
from ..core.identifiers import parse_uuid
from ..core.observability import metrics_collector
from ..core.security import ensure_owner_or_admin
from ..models.booking import Booking, BookingStatus
from ..models.payment import Payment, PaymentMethod, PaymentStatus
from ..schemas.payment import ApproveBankTransferRequest, ConfirmPaymentRequest, RejectBankTransferRequest
from . import notification_service as notifications
from .booking_service import BookingService
from .notification_service import NotificationService
from .payment_gateway import (
    EVENT_PAYMENT_FAILED,
    EVENT_PAYMENT_SUCCEEDED,
    REFERENCE_PAYMENT_INTENT,
    PaymentGateway,
)

logger = logging.getLogger(__name__)

# Payment statuses a processor-reported success may complete
PROCESSOR_SOURCE_STATUSES = (PaymentStatus.PENDING, PaymentStatus.FAILED)
# Payment statuses an administrator approval may complete
ADMIN_SOURCE_STATUSES = (PaymentStatus.AWAITING_VERIFICATION,)
# Payment statuses a success for a replaced intent may complete
SUPERSEDED_INTENT_SOURCE_STATUSES = (
    PaymentStatus.PENDING,
    PaymentStatus.FAILED,
    PaymentStatus.AWAITING_VERIFICATION,
)


class PaymentNotCompletedError(ConflictError):
    """Exception when the processor has not (yet) captured the payment."""

    def __init__(self, intent_id: str, intent_status: str):
        super().__init__(
            detail=f"Payment {intent_id} has not completed (status: {intent_status})",
            conflicting_resource={"payment_intent_id": intent_id, "status": intent_status},
            code="PAYMENT_NOT_COMPLETED",
        )


class PaymentNotAwaitingVerificationError(ConflictError):
    """Exception when an administrator decides on a payment that is not awaiting verification."""

    def __init__(self, payment_id: str, status: PaymentStatus):
        super().__init__(
            detail=f"Payment {payment_id} is {status.value}, not awaiting verification",
            conflicting_resource={"payment_id": payment_id, "status": status.value},
            code="PAYMENT_NOT_AWAITING_VERIFICATION",
        )


@dataclass
class ConfirmationOutcome:
    """Result of a confirmation attempt."""

    payment_id: UUID
    booking_id: UUID
    transitioned: bool
    booking_confirmed: bool


@dataclass
class ConfirmationResult:
    booking: Booking
    payment: Payment
    transitioned: bool


@dataclass
class WebhookResult:
    event_type: str
    handled: bool


class ConfirmationService:
    """Service reconciling processor and administrator outcomes with local state."""

    def __init__(self, db: AsyncSession, gateway: Optional[PaymentGateway] = None):
        self.db = db
        self.gateway = gateway
        self.notifications = NotificationService(db)

    async def _load_payment(self, payment_id: UUID) -> Payment:
        stmt = (
            select(Payment)
            .where(Payment.id == payment_id)
            .execution_options(populate_existing=True)
        )
        payment = (await self.db.execute(stmt)).scalar_one_or_none()
        if not payment:
            raise NotFoundError(resource_type="payment", resource_id=str(payment_id))
        return payment

    async def _load_booking(self, booking_id: UUID) -> Booking:
        stmt = (
            select(Booking)
            .where(Booking.id == booking_id)
            .execution_options(populate_existing=True)
        )
        booking = (await self.db.execute(stmt)).scalar_one_or_none()
        if not booking:
            raise NotFoundError(resource_type="booking", resource_id=str(booking_id))
        return booking

    async def find_payment_by_reference(self, external_reference: str) -> Payment | None:
        stmt = (
            select(Payment)
            .where(Payment.external_reference == external_reference)
            .execution_options(populate_existing=True)
        )
        return (await self.db.execute(stmt)).scalar_one_or_none()

    async def mark_payment_succeeded(
        self,
        payment_id: UUID,
        *,
        source: str,
        allowed_from: Iterable[PaymentStatus],
        charge_reference: Optional[str] = None,
        extra_details: Optional[dict[str, Any]] = None,
        column_updates: Optional[dict[str, Any]] = None,
    ) -> ConfirmationOutcome:
        """
        Move a payment to COMPLETED and its booking to CONFIRMED.

        Both updates are conditional and committed together. Calling this
        again for an already completed payment changes nothing, except that
        a booking left PENDING by an earlier partial failure is confirmed.

        Args:
            payment_id: Payment to complete
            source: Trigger name, used for logs and metrics
            allowed_from: Payment statuses this trigger may complete
            charge_reference: Processor charge id, when known
            extra_details: Merged into the payment's details on transition
            column_updates: Further payment columns written on transition

        Raises:
            NotFoundError: If payment not found
            ReconciliationError: If the database write fails
        """
        payment = await self._load_payment(payment_id)
        booking_id = payment.booking_id
        user_id = payment.user_id
        payment_number = payment.payment_number
        external_reference = payment.external_reference
        current_details = dict(payment.details or {})

        now = utcnow()
        values: dict[str, Any] = {
            "status": PaymentStatus.COMPLETED,
            "paid_at": now,
            "updated_at": now,
        }
        if charge_reference:
            values["charge_reference"] = charge_reference
        if extra_details:
            values["details"] = {**current_details, **extra_details}
        if column_updates:
            values.update(column_updates)

        try:
            result = await self.db.execute(
                update(Payment)
                .where(Payment.id == payment_id, Payment.status.in_(tuple(allowed_from)))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            transitioned = result.rowcount == 1

            payment_status = (await self.db.execute(
                select(Payment.status).where(Payment.id == payment_id)
            )).scalar_one()

            booking_confirmed = False
            if payment_status == PaymentStatus.COMPLETED:
                booking_result = await self.db.execute(
                    update(Booking)
                    .where(Booking.id == booking_id, Booking.status == BookingStatus.PENDING)
                    .values(status=BookingStatus.CONFIRMED, confirmed_at=now, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                booking_confirmed = booking_result.rowcount == 1

            booking_status = (await self.db.execute(
                select(Booking.status).where(Booking.id == booking_id)
            )).scalar_one()

            await self.db.commit()
        except SQLAlchemyError:
            await self.db.rollback()
            error_id = str(uuid4())
            logger.critical(
                "Payment succeeded at the processor but could not be recorded",
                extra={
                    "error_id": error_id,
                    "source": source,
                    "payment_id": str(payment_id),
                    "booking_id": str(booking_id),
                    "external_reference": external_reference,
                    "charge_reference": charge_reference,
                },
                exc_info=True,
            )
            metrics_collector.record_reconciliation_failure(source)
            raise ReconciliationError(error_id=error_id)

        if transitioned:
            metrics_collector.record_payment_confirmed(source)
            logger.info(
                "Payment completed",
                extra={
                    "source": source,
                    "payment_id": str(payment_id),
                    "booking_id": str(booking_id),
                    "booking_confirmed": booking_confirmed,
                }
            )
            if booking_status == BookingStatus.CANCELLED:
                logger.critical(
                    "Payment completed for a cancelled booking, refund required",
                    extra={
                        "source": source,
                        "payment_id": str(payment_id),
                        "booking_id": str(booking_id),
                        "external_reference": external_reference,
                    }
                )
            await self.notifications.notify(
                user_id,
                notifications.BOOKING_CONFIRMED,
                "Booking confirmed",
                f"Payment {payment_number} was received and your booking is confirmed.",
                link=f"/bookings/{booking_id}",
            )
        else:
            logger.info(
                "Payment already recorded, nothing to do",
                extra={
                    "source": source,
                    "payment_id": str(payment_id),
                    "payment_status": payment_status.value,
                    "booking_confirmed": booking_confirmed,
                }
            )

        return ConfirmationOutcome(
            payment_id=payment_id,
            booking_id=booking_id,
            transitioned=transitioned,
            booking_confirmed=booking_confirmed,
        )

    async def confirm_payment(self, request: ConfirmPaymentRequest, current_user: dict) -> ConfirmationResult:
        """
        Client-side confirmation after the payment sheet reports success.

        The processor is asked for the intent's current status; the client's
        word alone never completes a payment.

        Raises:
            NotFoundError: If the booking or its payment intent is unknown
            AuthorizationError: If the caller neither owns it nor is an administrator
            PaymentNotCompletedError: If the intent has not succeeded
            ExternalServiceError: If the processor cannot be reached
        """
        booking = await self._load_booking(parse_uuid(request.booking_id, "booking"))
        ensure_owner_or_admin(booking.user_id, current_user, "booking")
        booking_id = booking.id

        payment = booking.payment
        if payment is None or payment.external_reference != request.payment_intent_id:
            logger.warning(
                "Confirmation for an intent not recorded on the booking",
                extra={"booking_id": str(booking_id), "payment_intent_id": request.payment_intent_id}
            )
            raise NotFoundError(
                resource_type="payment_intent",
                resource_id=request.payment_intent_id,
            )
        payment_id = payment.id

        intent = await self.gateway.retrieve_payment_intent(request.payment_intent_id)
        intent_booking_id = intent.metadata.get("booking_id")
        if intent_booking_id and intent_booking_id != str(booking_id):
            raise ValidationError(
                detail="The payment intent belongs to a different booking",
                errors={"payment_intent_id": request.payment_intent_id},
            )
        if not intent.succeeded:
            raise PaymentNotCompletedError(intent.id, intent.status)

        outcome = await self.mark_payment_succeeded(
            payment_id,
            source="client_confirm",
            allowed_from=PROCESSOR_SOURCE_STATUSES,
            charge_reference=intent.latest_charge,
        )
        return ConfirmationResult(
            booking=await self._load_booking(booking_id),
            payment=await self._load_payment(payment_id),
            transitioned=outcome.transitioned,
        )

    async def handle_webhook_event(self, event: dict[str, Any]) -> WebhookResult:
        """
        Apply a verified processor event.

        Unknown event types are acknowledged without changes. Events for an
        intent no payment references any more are traced back through the
        intent's booking metadata.

        Raises:
            ReconciliationError: If a success cannot be recorded; the
                processor redelivers after the resulting 5xx
        """
        event_type = str(event.get("type") or "")
        intent = (event.get("data") or {}).get("object") or {}
        intent_id = intent.get("id")

        if event_type not in (EVENT_PAYMENT_SUCCEEDED, EVENT_PAYMENT_FAILED):
            logger.info("Ignoring webhook event", extra={"event_type": event_type, "event_id": event.get("id")})
            metrics_collector.record_webhook_event(event_type or "unknown", "ignored")
            return WebhookResult(event_type=event_type, handled=False)

        payment = await self.find_payment_by_reference(intent_id) if intent_id else None
        if payment is None:
            return await self._handle_superseded_intent(event, event_type, intent)

        if event_type == EVENT_PAYMENT_SUCCEEDED:
            outcome = await self.mark_payment_succeeded(
                payment.id,
                source="webhook",
                allowed_from=PROCESSOR_SOURCE_STATUSES,
                charge_reference=intent.get("latest_charge"),
            )
            handled = outcome.transitioned or outcome.booking_confirmed
        else:
            handled = await self._mark_payment_failed(payment, intent)

        metrics_collector.record_webhook_event(event_type, "processed" if handled else "duplicate")
        return WebhookResult(event_type=event_type, handled=handled)

    async def find_payment_by_booking(self, booking_id: str) -> Payment | None:
        try:
            booking_uuid = UUID(str(booking_id))
        except ValueError:
            return None
        stmt = (
            select(Payment)
            .where(Payment.booking_id == booking_uuid)
            .execution_options(populate_existing=True)
        )
        return (await self.db.execute(stmt)).scalar_one_or_none()

    async def _handle_superseded_intent(
        self, event: dict[str, Any], event_type: str, intent: dict[str, Any]
    ) -> WebhookResult:
        """
        Apply an event for an intent that no payment references.

        A success settles the booking's payment with that intent, even if the
        payment had moved on to another intent or a bank transfer. A failure
        of a replaced intent changes nothing.
        """
        intent_id = intent.get("id")
        booking_id = (intent.get("metadata") or {}).get("booking_id")
        log_extra = {
            "event_type": event_type,
            "event_id": event.get("id"),
            "payment_intent_id": intent_id,
            "booking_id": booking_id,
        }

        if event_type != EVENT_PAYMENT_SUCCEEDED:
            logger.warning("Webhook event for a payment intent no longer in use", extra=log_extra)
            metrics_collector.record_webhook_event(event_type, "unmatched")
            return WebhookResult(event_type=event_type, handled=False)

        payment = await self.find_payment_by_booking(booking_id) if booking_id else None
        if payment is None:
            logger.critical(
                "Processor reports a successful payment that matches no booking, manual reconciliation required",
                extra=log_extra,
            )
            metrics_collector.record_reconciliation_failure("webhook_unmatched")
            metrics_collector.record_webhook_event(event_type, "unmatched")
            return WebhookResult(event_type=event_type, handled=False)

        payment_id = payment.id
        payment_booking_id = payment.booking_id
        previous_status = payment.status
        previous_reference = payment.external_reference
        previous_reference_type = (payment.details or {}).get("reference_type")

        method_types = intent.get("payment_method_types") or []
        column_updates: dict[str, Any] = {
            "external_reference": intent_id,
            "payment_method": next(
                (method for method in PaymentMethod if method.processor_type in method_types),
                payment.payment_method,
            ),
        }
        if isinstance(intent.get("amount"), int):
            column_updates["amount"] = intent["amount"]

        outcome = await self.mark_payment_succeeded(
            payment_id,
            source="webhook",
            allowed_from=SUPERSEDED_INTENT_SOURCE_STATUSES,
            charge_reference=intent.get("latest_charge"),
            extra_details={
                "reference_type": REFERENCE_PAYMENT_INTENT,
                "superseded_reference": previous_reference,
                "superseded_reference_type": previous_reference_type,
            },
            column_updates=column_updates,
        )
        log_extra.update({"payment_id": str(payment_id), "previous_status": previous_status.value})

        if not outcome.transitioned or previous_status == PaymentStatus.AWAITING_VERIFICATION:
            # Money arrived through a second channel
            logger.critical(
                "Replaced payment intent succeeded, manual reconciliation required",
                extra={**log_extra, "recorded": outcome.transitioned},
            )
            metrics_collector.record_reconciliation_failure("webhook_superseded_intent")
        else:
            logger.warning("Payment settled by a replaced payment intent", extra=log_extra)
            if previous_reference_type == REFERENCE_PAYMENT_INTENT and previous_reference:
                await BookingService(self.db, self.gateway).cancel_open_intent(previous_reference, payment_booking_id)

        handled = outcome.transitioned or outcome.booking_confirmed
        metrics_collector.record_webhook_event(event_type, "superseded" if handled else "duplicate")
        return WebhookResult(event_type=event_type, handled=handled)

    async def _mark_payment_failed(self, payment: Payment, intent: dict[str, Any]) -> bool:
        """PENDING -> FAILED; never touches the booking or a completed payment."""
        payment_id = payment.id
        error = intent.get("last_payment_error") or {}
        now = utcnow()
        result = await self.db.execute(
            update(Payment)
            .where(Payment.id == payment_id, Payment.status == PaymentStatus.PENDING)
            .values(
                status=PaymentStatus.FAILED,
                details={
                    **(payment.details or {}),
                    "last_failure": {
                        "code": error.get("code"),
                        "message": error.get("message"),
                        "failed_at": now.isoformat(),
                    },
                },
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

        transitioned = result.rowcount == 1
        if transitioned:
            metrics_collector.record_payment_failed("webhook")
            logger.info(
                "Payment failed at the processor",
                extra={"payment_id": str(payment_id), "failure_code": error.get("code")}
            )
        return transitioned

    async def approve_bank_transfer(self, request: ApproveBankTransferRequest, admin: dict) -> ConfirmationResult:
        """
        Administrator approval of a bank transfer receipt.

        Raises:
            NotFoundError: If payment not found
            PaymentNotAwaitingVerificationError: If the payment is not awaiting verification
        """
        payment = await self._load_payment(parse_uuid(request.payment_id, "payment"))
        payment_id = payment.id
        booking_id = payment.booking_id
        if payment.status != PaymentStatus.AWAITING_VERIFICATION:
            raise PaymentNotAwaitingVerificationError(str(payment_id), payment.status)

        outcome = await self.mark_payment_succeeded(
            payment_id,
            source="admin_approval",
            allowed_from=ADMIN_SOURCE_STATUSES,
            extra_details={"approved_by": admin["user_id"], "approved_at": utcnow().isoformat()},
        )
        if not outcome.transitioned:
            latest = await self._load_payment(payment_id)
            raise PaymentNotAwaitingVerificationError(str(payment_id), latest.status)

        logger.info(
            "Bank transfer approved",
            extra={"payment_id": str(payment_id), "booking_id": str(booking_id), "actor": admin["user_id"]}
        )
        return ConfirmationResult(
            booking=await self._load_booking(booking_id),
            payment=await self._load_payment(payment_id),
            transitioned=True,
        )

    async def reject_bank_transfer(self, request: RejectBankTransferRequest, admin: dict) -> Payment:
        """
        Administrator rejection of a bank transfer receipt.

        The payment becomes FAILED and the booking stays PENDING so the
        traveler can submit a new receipt.

        Raises:
            NotFoundError: If payment not found
            PaymentNotAwaitingVerificationError: If the payment is not awaiting verification
        """
        payment = await self._load_payment(parse_uuid(request.payment_id, "payment"))
        payment_id = payment.id
        user_id = payment.user_id
        payment_number = payment.payment_number
        if payment.status != PaymentStatus.AWAITING_VERIFICATION:
            raise PaymentNotAwaitingVerificationError(str(payment_id), payment.status)

        now = utcnow()
        result = await self.db.execute(
            update(Payment)
            .where(Payment.id == payment_id, Payment.status == PaymentStatus.AWAITING_VERIFICATION)
            .values(
                status=PaymentStatus.FAILED,
                details={
                    **(payment.details or {}),
                    "rejection": {
                        "reason": request.reason,
                        "rejected_by": admin["user_id"],
                        "rejected_at": now.isoformat(),
                    },
                },
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            await self.db.rollback()
            latest = await self._load_payment(payment_id)
            raise PaymentNotAwaitingVerificationError(str(payment_id), latest.status)
        await self.db.commit()

        metrics_collector.record_payment_failed("admin_rejection")
        logger.info(
            "Bank transfer rejected",
            extra={"payment_id": str(payment_id), "actor": admin["user_id"]}
        )
        await self.notifications.notify(
            user_id,
            notifications.BANK_TRANSFER_REJECTED,
            "Bank transfer not accepted",
            f"Your transfer for payment {payment_number} could not be verified: {request.reason}",
        )
        return await self._load_payment(payment_id)
