"""Unit tests for payment confirmation across client, webhook and admin triggers."""

import logging

import pytest
from sqlalchemy import func, select, update

from tourbook.core.exceptions import AuthorizationError, NotFoundError
from tourbook.models import Booking, BookingStatus, InventoryLedgerEntry, Notification, Payment, PaymentMethod, PaymentStatus
from tourbook.schemas.booking import CancelBookingRequest, CreateBookingRequest
from tourbook.schemas.payment import ConfirmPaymentRequest, CreateBankTransferRequest, CreatePaymentIntentRequest
from tourbook.services.bank_transfer_service import BankTransferService
from tourbook.services.booking_service import BookingService
from tourbook.services.confirmation_service import (
    PROCESSOR_SOURCE_STATUSES,
    ConfirmationService,
    PaymentNotCompletedError,
)
from tourbook.services.notification_service import BOOKING_CONFIRMED
from tourbook.services.payment_service import PaymentService


async def _booking_with_intent(session, tour, departure, user, gateway):
    booking = (await BookingService(session).create_booking(
        CreateBookingRequest(tour_id=str(tour.id), departure_id=str(departure.id), adults=2), user
    )).booking
    result = await PaymentService(session, gateway).create_payment_intent(
        CreatePaymentIntentRequest(booking_id=str(booking.id)), user
    )
    return booking, result.payment, result.intent


def _event(event_type: str, intent_id: str, **fields) -> dict:
    return {
        "id": f"evt_{event_type}",
        "type": event_type,
        "data": {"object": {"id": intent_id, **fields}},
    }


async def _confirmed_notifications(session) -> int:
    return await session.scalar(
        select(func.count()).select_from(Notification).where(Notification.type == BOOKING_CONFIRMED)
    )


async def _settle_replaced_intent(session, gateway, booking, intent, **fields):
    return await ConfirmationService(session, gateway).handle_webhook_event(
        _event(
            "payment_intent.succeeded",
            intent.id,
            amount=intent.amount,
            payment_method_types=["card"],
            latest_charge="ch_replaced",
            metadata={"booking_id": str(booking.id)},
            **fields,
        )
    )


@pytest.mark.asyncio
async def test_client_confirm_completes_payment(test_session, sample_tour, sample_departure, owner, gateway):
    booking, payment, intent = await _booking_with_intent(test_session, sample_tour, sample_departure, owner, gateway)
    gateway.succeed(intent.id, "ch_client")

    result = await ConfirmationService(test_session, gateway).confirm_payment(
        ConfirmPaymentRequest(payment_intent_id=intent.id, booking_id=str(booking.id)), owner
    )

    assert result.transitioned is True
    assert result.booking.status == BookingStatus.CONFIRMED
    assert result.booking.confirmed_at is not None
    assert result.payment.status == PaymentStatus.COMPLETED
    assert result.payment.paid_at is not None
    assert result.payment.charge_reference == "ch_client"


@pytest.mark.asyncio
async def test_client_confirm_before_processor_success(test_session, sample_tour, sample_departure, owner, gateway):
    booking, payment, intent = await _booking_with_intent(test_session, sample_tour, sample_departure, owner, gateway)

    with pytest.raises(PaymentNotCompletedError) as exc_info:
        await ConfirmationService(test_session, gateway).confirm_payment(
            ConfirmPaymentRequest(payment_intent_id=intent.id, booking_id=str(booking.id)), owner
        )

    assert exc_info.value.code == "PAYMENT_NOT_COMPLETED"
    refreshed = await test_session.get(Booking, booking.id, populate_existing=True)
    assert refreshed.status == BookingStatus.PENDING


@pytest.mark.asyncio
async def test_client_confirm_unknown_intent(test_session, sample_tour, sample_departure, owner, gateway):
    booking, _, _ = await _booking_with_intent(test_session, sample_tour, sample_departure, owner, gateway)

    with pytest.raises(NotFoundError):
        await ConfirmationService(test_session, gateway).confirm_payment(
            ConfirmPaymentRequest(payment_intent_id="pi_someone_else", booking_id=str(booking.id)), owner
        )


@pytest.mark.asyncio
async def test_client_confirm_requires_owner(test_session, sample_tour, sample_departure, owner, other_user, gateway):
    booking, _, intent = await _booking_with_intent(test_session, sample_tour, sample_departure, owner, gateway)
    gateway.succeed(intent.id)

    with pytest.raises(AuthorizationError):
        await ConfirmationService(test_session, gateway).confirm_payment(
            ConfirmPaymentRequest(payment_intent_id=intent.id, booking_id=str(booking.id)), other_user
        )


@pytest.mark.asyncio
@pytest.mark.parametrize("order", [("client", "webhook"), ("webhook", "client")])
async def test_confirmation_happens_once(test_session, sample_tour, sample_departure, owner, gateway, order):
    """Client confirm and webhook in either order: one transition, one notification, seats untouched."""
    booking, payment, intent = await _booking_with_intent(test_session, sample_tour, sample_departure, owner, gateway)
    gateway.succeed(intent.id, "ch_both")
    service = ConfirmationService(test_session, gateway)
    ledger_before = await test_session.scalar(select(func.count()).select_from(InventoryLedgerEntry))

    transitions = []
    for trigger in order:
        if trigger == "client":
            result = await service.confirm_payment(
                ConfirmPaymentRequest(payment_intent_id=intent.id, booking_id=str(booking.id)), owner
            )
            transitions.append(result.transitioned)
        else:
            result = await service.handle_webhook_event(
                _event("payment_intent.succeeded", intent.id, latest_charge="ch_both")
            )
            transitions.append(result.handled)

    assert transitions == [True, False]
    assert await _confirmed_notifications(test_session) == 1

    refreshed = await test_session.get(Booking, booking.id, populate_existing=True)
    assert refreshed.status == BookingStatus.CONFIRMED
    await test_session.refresh(sample_departure)
    assert sample_departure.booked_slots == 2
    assert await test_session.scalar(select(func.count()).select_from(InventoryLedgerEntry)) == ledger_before


@pytest.mark.asyncio
async def test_webhook_failure_marks_payment_failed(test_session, sample_tour, sample_departure, owner, gateway):
    booking, payment, intent = await _booking_with_intent(test_session, sample_tour, sample_departure, owner, gateway)
    service = ConfirmationService(test_session, gateway)

    result = await service.handle_webhook_event(_event(
        "payment_intent.payment_failed",
        intent.id,
        last_payment_error={"code": "card_declined", "message": "Your card was declined."},
    ))

    assert result.handled is True
    failed = await test_session.get(Payment, payment.id, populate_existing=True)
    assert failed.status == PaymentStatus.FAILED
    assert failed.details["last_failure"]["code"] == "card_declined"
    refreshed = await test_session.get(Booking, booking.id, populate_existing=True)
    assert refreshed.status == BookingStatus.PENDING


@pytest.mark.asyncio
async def test_success_after_failure_completes(test_session, sample_tour, sample_departure, owner, gateway):
    """A retried card succeeds after an earlier decline."""
    booking, payment, intent = await _booking_with_intent(test_session, sample_tour, sample_departure, owner, gateway)
    service = ConfirmationService(test_session, gateway)
    await service.handle_webhook_event(_event("payment_intent.payment_failed", intent.id))

    result = await service.handle_webhook_event(_event("payment_intent.succeeded", intent.id))

    assert result.handled is True
    completed = await test_session.get(Payment, payment.id, populate_existing=True)
    assert completed.status == PaymentStatus.COMPLETED


@pytest.mark.asyncio
async def test_late_failure_never_downgrades(test_session, sample_tour, sample_departure, owner, gateway):
    booking, payment, intent = await _booking_with_intent(test_session, sample_tour, sample_departure, owner, gateway)
    service = ConfirmationService(test_session, gateway)
    await service.handle_webhook_event(_event("payment_intent.succeeded", intent.id))

    result = await service.handle_webhook_event(_event("payment_intent.payment_failed", intent.id))

    assert result.handled is False
    completed = await test_session.get(Payment, payment.id, populate_existing=True)
    assert completed.status == PaymentStatus.COMPLETED
    refreshed = await test_session.get(Booking, booking.id, populate_existing=True)
    assert refreshed.status == BookingStatus.CONFIRMED


@pytest.mark.asyncio
async def test_webhook_ignores_other_events(test_session, gateway):
    result = await ConfirmationService(test_session, gateway).handle_webhook_event(
        _event("charge.refunded", "pi_irrelevant")
    )

    assert result.event_type == "charge.refunded"
    assert result.handled is False


@pytest.mark.asyncio
async def test_webhook_for_unknown_intent(test_session, gateway, caplog):
    with caplog.at_level(logging.WARNING):
        result = await ConfirmationService(test_session, gateway).handle_webhook_event(
            _event("payment_intent.succeeded", "pi_not_ours")
        )

    assert result.handled is False
    assert any(r.levelno == logging.CRITICAL for r in caplog.records)


@pytest.mark.asyncio
async def test_replaced_card_intent_success_settles_payment(
    test_session, sample_tour, sample_departure, owner, gateway, caplog
):
    """A card intent replaced by another still pays for its booking."""
    booking, payment, first = await _booking_with_intent(test_session, sample_tour, sample_departure, owner, gateway)
    booking_id, payment_id = booking.id, payment.id
    second = (await PaymentService(test_session, gateway).create_payment_intent(
        CreatePaymentIntentRequest(booking_id=str(booking_id), payment_method=PaymentMethod.BANK_TRANSFER), owner
    )).intent
    assert gateway.cancelled == [first.id]

    with caplog.at_level(logging.WARNING):
        result = await _settle_replaced_intent(test_session, gateway, booking, first)

    assert result.handled is True
    stored = await test_session.get(Payment, payment_id, populate_existing=True)
    assert stored.status == PaymentStatus.COMPLETED
    assert stored.payment_method == PaymentMethod.CARD
    assert stored.external_reference == first.id
    assert stored.amount == first.amount
    assert stored.charge_reference == "ch_replaced"
    assert stored.details["superseded_reference"] == second.id
    assert second.id in gateway.cancelled
    refreshed = await test_session.get(Booking, booking_id, populate_existing=True)
    assert refreshed.status == BookingStatus.CONFIRMED
    assert await _confirmed_notifications(test_session) == 1
    assert not [r for r in caplog.records if r.levelno >= logging.CRITICAL]


@pytest.mark.asyncio
async def test_replaced_intent_success_after_invoice_settles_payment(
    test_session, sample_tour, sample_departure, owner, gateway
):
    booking, payment, intent = await _booking_with_intent(test_session, sample_tour, sample_departure, owner, gateway)
    booking_id, payment_id = booking.id, payment.id
    await BankTransferService(test_session, gateway).create_bank_transfer_invoice(
        CreateBankTransferRequest(booking_id=str(booking_id)), owner
    )

    result = await _settle_replaced_intent(test_session, gateway, booking, intent)

    assert result.handled is True
    stored = await test_session.get(Payment, payment_id, populate_existing=True)
    assert stored.status == PaymentStatus.COMPLETED
    assert stored.payment_method == PaymentMethod.CARD
    assert stored.external_reference == intent.id
    assert stored.details["reference_type"] == "payment_intent"
    assert stored.details["superseded_reference_type"] == "invoice"
    refreshed = await test_session.get(Booking, booking_id, populate_existing=True)
    assert refreshed.status == BookingStatus.CONFIRMED


@pytest.mark.asyncio
async def test_replaced_intent_success_during_receipt_review_needs_reconciliation(
    test_session, sample_tour, sample_departure, owner, gateway, caplog
):
    """Card money arriving while a transfer receipt is queued is flagged for manual follow-up."""
    booking, payment, intent = await _booking_with_intent(test_session, sample_tour, sample_departure, owner, gateway)
    booking_id, payment_id = booking.id, payment.id
    await BankTransferService(test_session, gateway).submit_bank_transfer(
        str(booking_id), owner, "receipt.pdf", "application/pdf", b"%PDF-1.4 transfer receipt"
    )

    with caplog.at_level(logging.WARNING):
        result = await _settle_replaced_intent(test_session, gateway, booking, intent)

    assert result.handled is True
    stored = await test_session.get(Payment, payment_id, populate_existing=True)
    assert stored.status == PaymentStatus.COMPLETED
    assert stored.external_reference == intent.id
    refreshed = await test_session.get(Booking, booking_id, populate_existing=True)
    assert refreshed.status == BookingStatus.CONFIRMED
    assert any(
        r.levelno == logging.CRITICAL and "manual reconciliation" in r.getMessage() for r in caplog.records
    )


@pytest.mark.asyncio
async def test_replaced_intent_success_after_payment_completed(
    test_session, sample_tour, sample_departure, owner, gateway, caplog
):
    """A second success for an already paid booking changes nothing and is flagged."""
    booking, payment, first = await _booking_with_intent(test_session, sample_tour, sample_departure, owner, gateway)
    payment_id = payment.id
    second = (await PaymentService(test_session, gateway).create_payment_intent(
        CreatePaymentIntentRequest(booking_id=str(booking.id), payment_method=PaymentMethod.BANK_TRANSFER), owner
    )).intent
    confirmations = ConfirmationService(test_session, gateway)
    await confirmations.handle_webhook_event(_event("payment_intent.succeeded", second.id, latest_charge="ch_second"))

    with caplog.at_level(logging.WARNING):
        result = await _settle_replaced_intent(test_session, gateway, booking, first)

    assert result.handled is False
    stored = await test_session.get(Payment, payment_id, populate_existing=True)
    assert stored.status == PaymentStatus.COMPLETED
    assert stored.external_reference == second.id
    assert stored.charge_reference == "ch_second"
    assert await _confirmed_notifications(test_session) == 1
    assert any(r.levelno == logging.CRITICAL for r in caplog.records)


@pytest.mark.asyncio
async def test_replaced_intent_failure_changes_nothing(test_session, sample_tour, sample_departure, owner, gateway):
    booking, payment, first = await _booking_with_intent(test_session, sample_tour, sample_departure, owner, gateway)
    payment_id = payment.id
    second = (await PaymentService(test_session, gateway).create_payment_intent(
        CreatePaymentIntentRequest(booking_id=str(booking.id), payment_method=PaymentMethod.BANK_TRANSFER), owner
    )).intent

    result = await ConfirmationService(test_session, gateway).handle_webhook_event(
        _event("payment_intent.payment_failed", first.id, metadata={"booking_id": str(booking.id)})
    )

    assert result.handled is False
    stored = await test_session.get(Payment, payment_id, populate_existing=True)
    assert stored.status == PaymentStatus.PENDING
    assert stored.external_reference == second.id


@pytest.mark.asyncio
async def test_payment_for_cancelled_booking_keeps_booking_cancelled(
    test_session, sample_tour, sample_departure, owner, gateway
):
    """A late success is recorded but never resurrects a cancelled booking."""
    booking, payment, intent = await _booking_with_intent(test_session, sample_tour, sample_departure, owner, gateway)
    await BookingService(test_session).cancel_booking(CancelBookingRequest(booking_id=str(booking.id)), owner)

    result = await ConfirmationService(test_session, gateway).handle_webhook_event(
        _event("payment_intent.succeeded", intent.id)
    )

    assert result.handled is True
    completed = await test_session.get(Payment, payment.id, populate_existing=True)
    assert completed.status == PaymentStatus.COMPLETED
    refreshed = await test_session.get(Booking, booking.id, populate_existing=True)
    assert refreshed.status == BookingStatus.CANCELLED
    await test_session.refresh(sample_departure)
    assert sample_departure.booked_slots == 0


@pytest.mark.asyncio
async def test_repeat_confirms_booking_left_pending(test_session, sample_tour, sample_departure, owner, gateway):
    """A completed payment whose booking stayed PENDING is healed by the next trigger."""
    booking, payment, intent = await _booking_with_intent(test_session, sample_tour, sample_departure, owner, gateway)
    service = ConfirmationService(test_session, gateway)
    await service.mark_payment_succeeded(payment.id, source="webhook", allowed_from=PROCESSOR_SOURCE_STATUSES)
    await test_session.execute(
        update(Booking)
        .where(Booking.id == booking.id)
        .values(status=BookingStatus.PENDING, confirmed_at=None)
        .execution_options(synchronize_session=False)
    )
    await test_session.commit()

    outcome = await service.mark_payment_succeeded(
        payment.id, source="webhook", allowed_from=PROCESSOR_SOURCE_STATUSES
    )

    assert outcome.transitioned is False
    assert outcome.booking_confirmed is True
    refreshed = await test_session.get(Booking, booking.id, populate_existing=True)
    assert refreshed.status == BookingStatus.CONFIRMED
    assert await _confirmed_notifications(test_session) == 1
