"""Unit tests for bank transfer invoices, receipts and administrator review."""

import pytest

from tourbook.core.exceptions import AuthorizationError, ConflictError
from tourbook.models import Booking, BookingStatus, Notification, Payment, PaymentMethod, PaymentStatus
from tourbook.schemas.booking import CancelBookingRequest, CreateBookingRequest
from tourbook.schemas.payment import (
    ApproveBankTransferRequest,
    CreateBankTransferRequest,
    CreatePaymentIntentRequest,
    RejectBankTransferRequest,
)
from tourbook.services.bank_transfer_service import (
    BankTransferService,
    InvalidReceiptError,
    get_bank_details,
    validate_receipt,
)
from tourbook.services.booking_service import BookingService
from tourbook.services.confirmation_service import ConfirmationService, PaymentNotAwaitingVerificationError
from tourbook.services.payment_service import BookingAlreadyPaidError, BookingNotPayableError, PaymentService

RECEIPT = b"%PDF-1.4 transfer receipt"


async def _book(session, tour, departure, user, **overrides):
    data = {"tour_id": str(tour.id), "departure_id": str(departure.id), "adults": 2}
    data.update(overrides)
    return (await BookingService(session).create_booking(CreateBookingRequest(**data), user)).booking


async def _submit(session, gateway, booking, user, data=RECEIPT):
    return await BankTransferService(session, gateway).submit_bank_transfer(
        str(booking.id), user, "receipt.pdf", "application/pdf", data
    )


class TestReceiptValidation:
    """Receipt checks before anything is stored."""

    def test_pdf_accepted(self):
        validate_receipt("receipt.pdf", "application/pdf", RECEIPT)

    def test_wrong_type_rejected(self):
        with pytest.raises(InvalidReceiptError) as exc_info:
            validate_receipt("receipt.exe", "application/octet-stream", RECEIPT)
        assert exc_info.value.code == "INVALID_RECEIPT_TYPE"

    def test_empty_file_rejected(self):
        with pytest.raises(InvalidReceiptError) as exc_info:
            validate_receipt("receipt.png", "image/png", b"")
        assert exc_info.value.code == "EMPTY_RECEIPT"

    def test_oversized_file_rejected(self, monkeypatch):
        from tourbook.core.config import settings

        monkeypatch.setattr(settings, "receipt_max_bytes", 10)
        with pytest.raises(InvalidReceiptError) as exc_info:
            validate_receipt("receipt.png", "image/png", b"x" * 11)
        assert exc_info.value.code == "RECEIPT_TOO_LARGE"


def test_bank_details_carry_reference():
    details = get_bank_details("BK12345")

    assert details.reference == "BK12345"
    assert details.account_number


@pytest.mark.asyncio
async def test_invoice_has_no_card_fee(test_session, sample_tour, sample_departure, owner, gateway):
    booking = await _book(test_session, sample_tour, sample_departure, owner)

    result = await BankTransferService(test_session, gateway).create_bank_transfer_invoice(
        CreateBankTransferRequest(booking_id=str(booking.id)), owner
    )

    assert result.invoice.amount_due == 20000
    assert result.payment.amount == 20000
    assert result.payment.payment_method == PaymentMethod.BANK_TRANSFER
    assert result.payment.status == PaymentStatus.PENDING
    assert result.payment.external_reference == result.invoice.id
    assert result.payment.details["reference_type"] == "invoice"
    assert result.payment.details["fee_amount"] == 0
    assert result.bank_details.reference == booking.booking_number


@pytest.mark.asyncio
async def test_invoice_cancels_open_card_intent(test_session, sample_tour, sample_departure, owner, gateway):
    booking = await _book(test_session, sample_tour, sample_departure, owner)
    intent = (await PaymentService(test_session, gateway).create_payment_intent(
        CreatePaymentIntentRequest(booking_id=str(booking.id)), owner
    )).intent

    result = await BankTransferService(test_session, gateway).create_bank_transfer_invoice(
        CreateBankTransferRequest(booking_id=str(booking.id)), owner
    )

    assert gateway.cancelled == [intent.id]
    assert result.payment.external_reference == result.invoice.id


@pytest.mark.asyncio
async def test_submit_receipt_awaits_verification(test_session, sample_tour, sample_departure, owner, gateway):
    booking = await _book(test_session, sample_tour, sample_departure, owner, is_deposit_payment=True, deposit_amount=5000)

    payment = await _submit(test_session, gateway, booking, owner)

    assert payment.status == PaymentStatus.AWAITING_VERIFICATION
    assert payment.payment_method == PaymentMethod.BANK_TRANSFER
    assert payment.amount == 5000
    assert payment.receipt_filename == "receipt.pdf"
    assert payment.receipt_content_type == "application/pdf"

    refreshed = await BookingService(test_session).get_booking_by_id_or_raise(booking.id)
    assert refreshed.status == BookingStatus.PENDING


@pytest.mark.asyncio
async def test_submit_keeps_invoice_reference(test_session, sample_tour, sample_departure, owner, gateway):
    booking = await _book(test_session, sample_tour, sample_departure, owner)
    invoice = (await BankTransferService(test_session, gateway).create_bank_transfer_invoice(
        CreateBankTransferRequest(booking_id=str(booking.id)), owner
    )).invoice

    payment = await _submit(test_session, gateway, booking, owner)

    assert payment.external_reference == invoice.id
    assert payment.details["hosted_invoice_url"] == invoice.hosted_invoice_url


@pytest.mark.asyncio
async def test_card_payment_blocked_while_awaiting_verification(test_session, sample_tour, sample_departure, owner, gateway):
    booking = await _book(test_session, sample_tour, sample_departure, owner)
    await _submit(test_session, gateway, booking, owner)

    with pytest.raises(BookingNotPayableError) as exc_info:
        await PaymentService(test_session, gateway).create_payment_intent(
            CreatePaymentIntentRequest(booking_id=str(booking.id)), owner
        )

    assert exc_info.value.code == "PAYMENT_AWAITING_VERIFICATION"


@pytest.mark.asyncio
async def test_receipt_cancels_card_intent_awaiting_action(test_session, sample_tour, sample_departure, owner, gateway):
    booking = await _book(test_session, sample_tour, sample_departure, owner)
    intent = (await PaymentService(test_session, gateway).create_payment_intent(
        CreatePaymentIntentRequest(booking_id=str(booking.id)), owner
    )).intent
    gateway.set_status(intent.id, "requires_action")

    payment = await _submit(test_session, gateway, booking, owner)

    assert gateway.cancelled == [intent.id]
    assert payment.status == PaymentStatus.AWAITING_VERIFICATION
    assert payment.external_reference is None


@pytest.mark.asyncio
async def test_receipt_refused_while_card_payment_processing(test_session, sample_tour, sample_departure, owner, gateway):
    booking = await _book(test_session, sample_tour, sample_departure, owner)
    payment = (await PaymentService(test_session, gateway).create_payment_intent(
        CreatePaymentIntentRequest(booking_id=str(booking.id)), owner
    )).payment
    payment_id = payment.id
    intent_id = payment.external_reference
    gateway.set_status(intent_id, "processing")

    with pytest.raises(ConflictError) as exc_info:
        await _submit(test_session, gateway, booking, owner)

    assert exc_info.value.code == "PAYMENT_IN_PROGRESS"
    assert gateway.cancelled == []
    unchanged = await test_session.get(Payment, payment_id, populate_existing=True)
    assert unchanged.status == PaymentStatus.PENDING
    assert unchanged.external_reference == intent_id


@pytest.mark.asyncio
async def test_receipt_never_overwrites_payment_completed_meanwhile(
    test_session, sample_tour, sample_departure, owner, gateway, monkeypatch
):
    """A card success that lands while a receipt is being stored wins."""
    booking = await _book(test_session, sample_tour, sample_departure, owner)
    booking_id = booking.id
    payment = (await PaymentService(test_session, gateway).create_payment_intent(
        CreatePaymentIntentRequest(booking_id=str(booking_id)), owner
    )).payment
    payment_id = payment.id
    confirmations = ConfirmationService(test_session, gateway)
    original_retrieve = gateway.retrieve_payment_intent

    async def retrieve_while_webhook_lands(intent_id):
        snapshot = await original_retrieve(intent_id)
        gateway.succeed(intent_id)
        await confirmations.handle_webhook_event({
            "id": "evt_card_success",
            "type": "payment_intent.succeeded",
            "data": {"object": {"id": intent_id}},
        })
        return snapshot

    monkeypatch.setattr(gateway, "retrieve_payment_intent", retrieve_while_webhook_lands)

    with pytest.raises(BookingAlreadyPaidError):
        await BankTransferService(test_session, gateway).submit_bank_transfer(
            str(booking_id), owner, "receipt.pdf", "application/pdf", RECEIPT
        )

    stored = await test_session.get(Payment, payment_id, populate_existing=True)
    assert stored.status == PaymentStatus.COMPLETED
    assert stored.payment_method == PaymentMethod.CARD
    assert stored.receipt_filename is None
    refreshed = await test_session.get(Booking, booking_id, populate_existing=True)
    assert refreshed.status == BookingStatus.CONFIRMED


@pytest.mark.asyncio
async def test_submit_for_other_users_booking(test_session, sample_tour, sample_departure, owner, other_user, gateway):
    booking = await _book(test_session, sample_tour, sample_departure, owner)

    with pytest.raises(AuthorizationError):
        await _submit(test_session, gateway, booking, other_user)


@pytest.mark.asyncio
async def test_submit_for_cancelled_booking(test_session, sample_tour, sample_departure, owner, gateway):
    booking = await _book(test_session, sample_tour, sample_departure, owner)
    await BookingService(test_session).cancel_booking(CancelBookingRequest(booking_id=str(booking.id)), owner)

    with pytest.raises(BookingNotPayableError):
        await _submit(test_session, gateway, booking, owner)


@pytest.mark.asyncio
async def test_approve_confirms_booking(test_session, sample_tour, sample_departure, owner, admin_user, gateway):
    booking = await _book(test_session, sample_tour, sample_departure, owner)
    payment = await _submit(test_session, gateway, booking, owner)

    result = await ConfirmationService(test_session, gateway).approve_bank_transfer(
        ApproveBankTransferRequest(payment_id=str(payment.id)), admin_user
    )

    assert result.transitioned is True
    assert result.payment.status == PaymentStatus.COMPLETED
    assert result.payment.details["approved_by"] == admin_user["user_id"]
    assert result.booking.status == BookingStatus.CONFIRMED

    with pytest.raises(PaymentNotAwaitingVerificationError):
        await ConfirmationService(test_session, gateway).approve_bank_transfer(
            ApproveBankTransferRequest(payment_id=str(payment.id)), admin_user
        )

    with pytest.raises(BookingAlreadyPaidError):
        await _submit(test_session, gateway, booking, owner)


@pytest.mark.asyncio
async def test_reject_allows_resubmission(test_session, sample_tour, sample_departure, owner, admin_user, gateway):
    booking = await _book(test_session, sample_tour, sample_departure, owner)
    payment = await _submit(test_session, gateway, booking, owner)

    rejected = await ConfirmationService(test_session, gateway).reject_bank_transfer(
        RejectBankTransferRequest(payment_id=str(payment.id), reason="Amount does not match"), admin_user
    )

    assert rejected.status == PaymentStatus.FAILED
    assert rejected.details["rejection"]["reason"] == "Amount does not match"
    refreshed = await BookingService(test_session).get_booking_by_id_or_raise(booking.id)
    assert refreshed.status == BookingStatus.PENDING

    resubmitted = await _submit(test_session, gateway, booking, owner, data=b"%PDF-1.4 second receipt")

    assert resubmitted.id == payment.id
    assert resubmitted.status == PaymentStatus.AWAITING_VERIFICATION
    assert resubmitted.details["previous_rejection"]["reason"] == "Amount does not match"


@pytest.mark.asyncio
async def test_reject_notifies_traveler(test_session, sample_tour, sample_departure, owner, admin_user, gateway):
    from sqlalchemy import select

    booking = await _book(test_session, sample_tour, sample_departure, owner)
    payment = await _submit(test_session, gateway, booking, owner)

    await ConfirmationService(test_session, gateway).reject_bank_transfer(
        RejectBankTransferRequest(payment_id=str(payment.id), reason="Unreadable"), admin_user
    )

    types = (await test_session.execute(
        select(Notification.type).where(Notification.user_id == owner["user_id"])
    )).scalars().all()
    assert "BANK_TRANSFER_REJECTED" in types


@pytest.mark.asyncio
async def test_pending_queue(test_session, sample_tour, sample_departure, owner, other_user, admin_user, gateway):
    first = await _book(test_session, sample_tour, sample_departure, owner)
    second = await _book(test_session, sample_tour, sample_departure, other_user)
    await _submit(test_session, gateway, first, owner)
    approved = await _submit(test_session, gateway, second, other_user)
    await ConfirmationService(test_session, gateway).approve_bank_transfer(
        ApproveBankTransferRequest(payment_id=str(approved.id)), admin_user
    )

    pending = await BankTransferService(test_session, gateway).list_pending_bank_transfers()

    assert [item.booking_number for item in pending] == [first.booking_number]
    assert pending[0].tour_title == sample_tour.title
