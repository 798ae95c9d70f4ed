"""Payment router for intents, confirmations, bank transfers and refunds."""

import logging

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.database import get_db
from ..core.dependencies import get_current_user, get_payment_gateway, require_admin
from ..core.exceptions import ProblemDetailsException
from ..schemas.payment import (
    BankDetails,
    BankDetailsRequest,
    BankTransferInvoice,
    ChargeBreakdown,
    ConfirmPaymentRequest,
    ConfirmPaymentResponse,
    CreateBankTransferRequest,
    CreatePaymentIntentRequest,
    GetPaymentRequest,
    Payment,
    PaymentIntentResponse,
    RefundPaymentRequest,
)
from ..services.bank_transfer_service import BankTransferService, get_bank_details
from ..services.confirmation_service import ConfirmationService
from ..services.payment_gateway import PaymentGateway
from ..services.payment_service import PaymentService
from .booking import convert_booking_to_schema

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/payment", tags=["payment"])

# Define dependencies to avoid B008 linting errors
DB_DEPENDENCY = Depends(get_db)
USER_DEPENDENCY = Depends(get_current_user)
ADMIN_DEPENDENCY = Depends(require_admin)
GATEWAY_DEPENDENCY = Depends(get_payment_gateway)
RECEIPT_FILE = File(..., description="Transfer receipt, image or PDF")
BOOKING_ID_FORM = Form(..., description="Booking the transfer pays for")


def convert_payment_to_schema(payment_model) -> Payment:
    """Convert payment model to schema."""
    return Payment(
        id=str(payment_model.id),
        payment_number=payment_model.payment_number,
        booking_id=str(payment_model.booking_id),
        user_id=payment_model.user_id,
        amount=payment_model.amount,
        currency=payment_model.currency,
        payment_method=payment_model.payment_method,
        status=payment_model.status,
        external_reference=payment_model.external_reference,
        receipt_filename=payment_model.receipt_filename,
        details=payment_model.details or {},
        paid_at=payment_model.paid_at,
        refunded_at=payment_model.refunded_at,
        refund_amount=payment_model.refund_amount,
        created_at=payment_model.created_at,
    )


@router.post("/create-intent", response_model=PaymentIntentResponse)
async def create_payment_intent(
    request: CreatePaymentIntentRequest,
    db: AsyncSession = DB_DEPENDENCY,
    current_user: dict = USER_DEPENDENCY,
    gateway: PaymentGateway = GATEWAY_DEPENDENCY,
) -> JSONResponse:
    """
    Create or reuse the payment intent for a booking.

    The charged amount is computed from the booking; a client-supplied
    amount is only checked against it.
    """
    payment_service = PaymentService(db, gateway)

    try:
        result = await payment_service.create_payment_intent(request, current_user)
        breakdown = result.breakdown
        response_data = PaymentIntentResponse(
            client_secret=result.intent.client_secret or "",
            payment_intent_id=result.intent.id,
            payment_id=str(result.payment.id),
            payment_number=result.payment.payment_number,
            amount=result.payment.amount,
            currency=result.payment.currency,
            status=result.payment.status,
            breakdown=ChargeBreakdown(
                base_amount=breakdown.base_amount,
                fee_amount=breakdown.fee_amount,
                fee_rate=str(breakdown.fee_rate),
                total_charged=breakdown.total_charged,
                currency=result.payment.currency,
                is_deposit_payment=breakdown.is_deposit_payment,
            ),
        )

        return JSONResponse(
            status_code=200,
            content=response_data.model_dump(mode="json")
        )

    except ProblemDetailsException:
        raise

    except Exception as e:
        logger.error(
            "Unexpected error in payment intent creation",
            extra={
                "booking_id": request.booking_id,
                "error": str(e)
            },
            exc_info=True
        )
        raise HTTPException(status_code=500, detail="Internal server error") from e


@router.post("/confirm", response_model=ConfirmPaymentResponse)
async def confirm_payment(
    request: ConfirmPaymentRequest,
    db: AsyncSession = DB_DEPENDENCY,
    current_user: dict = USER_DEPENDENCY,
    gateway: PaymentGateway = GATEWAY_DEPENDENCY,
) -> JSONResponse:
    """
    Confirm a payment after the client reports success.

    Succeeds without changes when the webhook already confirmed it.
    """
    confirmation_service = ConfirmationService(db, gateway)

    try:
        result = await confirmation_service.confirm_payment(request, current_user)
        response_data = ConfirmPaymentResponse(
            booking=convert_booking_to_schema(result.booking),
            payment=convert_payment_to_schema(result.payment),
            transitioned=result.transitioned,
        )

        return JSONResponse(
            status_code=200,
            content=response_data.model_dump(mode="json")
        )

    except ProblemDetailsException:
        raise

    except Exception as e:
        logger.error(
            "Unexpected error in payment confirmation",
            extra={
                "booking_id": request.booking_id,
                "payment_intent_id": request.payment_intent_id,
                "error": str(e)
            },
            exc_info=True
        )
        raise HTTPException(status_code=500, detail="Internal server error") from e


@router.post("/create-bank-transfer", response_model=BankTransferInvoice)
async def create_bank_transfer(
    request: CreateBankTransferRequest,
    db: AsyncSession = DB_DEPENDENCY,
    current_user: dict = USER_DEPENDENCY,
    gateway: PaymentGateway = GATEWAY_DEPENDENCY,
) -> JSONResponse:
    """Issue a bank transfer invoice for a booking."""
    bank_transfer_service = BankTransferService(db, gateway)

    try:
        result = await bank_transfer_service.create_bank_transfer_invoice(request, current_user)
        response_data = BankTransferInvoice(
            invoice_id=result.invoice.id,
            hosted_invoice_url=result.invoice.hosted_invoice_url,
            due_date=result.invoice.due_date,
            payment_id=str(result.payment.id),
            payment_number=result.payment.payment_number,
            amount=result.payment.amount,
            currency=result.payment.currency,
            bank_details=result.bank_details,
        )

        return JSONResponse(
            status_code=200,
            content=response_data.model_dump(mode="json")
        )

    except ProblemDetailsException:
        raise

    except Exception as e:
        logger.error(
            "Unexpected error in bank transfer invoice creation",
            extra={
                "booking_id": request.booking_id,
                "error": str(e)
            },
            exc_info=True
        )
        raise HTTPException(status_code=500, detail="Internal server error") from e


@router.post("/bank-details", response_model=BankDetails)
async def bank_details(
    request: BankDetailsRequest,
    current_user: dict = USER_DEPENDENCY,
) -> JSONResponse:
    """Beneficiary details for paying by bank transfer."""
    response_data = get_bank_details(request.booking_number)
    return JSONResponse(
        status_code=200,
        content=response_data.model_dump(mode="json")
    )


@router.post("/bank-transfer", response_model=Payment)
async def submit_bank_transfer(
    booking_id: str = BOOKING_ID_FORM,
    receipt: UploadFile = RECEIPT_FILE,
    db: AsyncSession = DB_DEPENDENCY,
    current_user: dict = USER_DEPENDENCY,
    gateway: PaymentGateway = GATEWAY_DEPENDENCY,
) -> JSONResponse:
    """Upload a bank transfer receipt for administrator verification."""
    bank_transfer_service = BankTransferService(db, gateway)

    try:
        data = await receipt.read()
        payment = await bank_transfer_service.submit_bank_transfer(
            booking_id,
            current_user,
            filename=receipt.filename,
            content_type=receipt.content_type,
            data=data,
        )
        response_data = convert_payment_to_schema(payment)

        return JSONResponse(
            status_code=200,
            content=response_data.model_dump(mode="json")
        )

    except ProblemDetailsException:
        raise

    except Exception as e:
        logger.error(
            "Unexpected error in bank transfer submission",
            extra={
                "booking_id": booking_id,
                "error": str(e)
            },
            exc_info=True
        )
        raise HTTPException(status_code=500, detail="Internal server error") from e

    finally:
        await receipt.close()


@router.post("/get", response_model=Payment)
async def get_payment(
    request: GetPaymentRequest,
    db: AsyncSession = DB_DEPENDENCY,
    current_user: dict = USER_DEPENDENCY,
    gateway: PaymentGateway = GATEWAY_DEPENDENCY,
) -> JSONResponse:
    """Get payment details. Only the payer or an administrator may read a payment."""
    payment_service = PaymentService(db, gateway)

    try:
        payment = await payment_service.get_payment(request, current_user)
        response_data = convert_payment_to_schema(payment)

        return JSONResponse(
            status_code=200,
            content=response_data.model_dump(mode="json")
        )

    except ProblemDetailsException:
        raise

    except Exception as e:
        logger.error(
            "Unexpected error in payment retrieval",
            extra={
                "payment_id": request.payment_id,
                "error": str(e)
            },
            exc_info=True
        )
        raise HTTPException(status_code=500, detail="Internal server error") from e


@router.post("/refund", response_model=Payment)
async def refund_payment(
    request: RefundPaymentRequest,
    db: AsyncSession = DB_DEPENDENCY,
    admin: dict = ADMIN_DEPENDENCY,
    gateway: PaymentGateway = GATEWAY_DEPENDENCY,
) -> JSONResponse:
    """Refund a completed payment, fully or partially."""
    payment_service = PaymentService(db, gateway)

    try:
        payment = await payment_service.refund_payment(request, admin)
        response_data = convert_payment_to_schema(payment)

        return JSONResponse(
            status_code=200,
            content=response_data.model_dump(mode="json")
        )

    except ProblemDetailsException:
        raise

    except Exception as e:
        logger.error(
            "Unexpected error in payment refund",
            extra={
                "payment_id": request.payment_id,
                "error": str(e)
            },
            exc_info=True
        )
        raise HTTPException(status_code=500, detail="Internal server error") from e
