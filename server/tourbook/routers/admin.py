"""Admin router for the bank transfer verification queue."""

import logging

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.database import get_db
from ..core.dependencies import get_payment_gateway, require_admin
from ..core.exceptions import ProblemDetailsException
from ..schemas.payment import (
    ApproveBankTransferRequest,
    ConfirmPaymentResponse,
    Payment,
    PendingBankTransfer,
    PendingBankTransferList,
    RejectBankTransferRequest,
)
from ..services.bank_transfer_service import BankTransferService
from ..services.confirmation_service import ConfirmationService
from ..services.payment_gateway import PaymentGateway
from .booking import convert_booking_to_schema
from .payment import convert_payment_to_schema

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/admin", tags=["admin"])

# Define dependencies to avoid B008 linting errors
DB_DEPENDENCY = Depends(get_db)
ADMIN_DEPENDENCY = Depends(require_admin)
GATEWAY_DEPENDENCY = Depends(get_payment_gateway)


@router.post("/bank-transfer/pending", response_model=PendingBankTransferList)
async def list_pending_bank_transfers(
    db: AsyncSession = DB_DEPENDENCY,
    admin: dict = ADMIN_DEPENDENCY,
    gateway: PaymentGateway = GATEWAY_DEPENDENCY,
) -> JSONResponse:
    """Bank transfers awaiting verification, oldest first."""
    bank_transfer_service = BankTransferService(db, gateway)

    try:
        pending = await bank_transfer_service.list_pending_bank_transfers()
        response_data = PendingBankTransferList(
            items=[
                PendingBankTransfer(
                    payment=convert_payment_to_schema(item.payment),
                    booking_number=item.booking_number,
                    tour_title=item.tour_title,
                )
                for item in pending
            ]
        )

        return JSONResponse(
            status_code=200,
            content=response_data.model_dump(mode="json")
        )

    except ProblemDetailsException:
        raise

    except Exception as e:
        logger.error(
            "Unexpected error listing pending bank transfers",
            extra={"actor": admin["user_id"], "error": str(e)},
            exc_info=True
        )
        raise HTTPException(status_code=500, detail="Internal server error") from e


@router.post("/bank-transfer/approve", response_model=ConfirmPaymentResponse)
async def approve_bank_transfer(
    request: ApproveBankTransferRequest,
    db: AsyncSession = DB_DEPENDENCY,
    admin: dict = ADMIN_DEPENDENCY,
    gateway: PaymentGateway = GATEWAY_DEPENDENCY,
) -> JSONResponse:
    """Approve a verified transfer: payment COMPLETED, booking CONFIRMED."""
    confirmation_service = ConfirmationService(db, gateway)

    try:
        result = await confirmation_service.approve_bank_transfer(request, admin)
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
            "Unexpected error approving bank transfer",
            extra={"payment_id": request.payment_id, "error": str(e)},
            exc_info=True
        )
        raise HTTPException(status_code=500, detail="Internal server error") from e


@router.post("/bank-transfer/reject", response_model=Payment)
async def reject_bank_transfer(
    request: RejectBankTransferRequest,
    db: AsyncSession = DB_DEPENDENCY,
    admin: dict = ADMIN_DEPENDENCY,
    gateway: PaymentGateway = GATEWAY_DEPENDENCY,
) -> JSONResponse:
    """Reject a transfer receipt; the booking stays PENDING."""
    confirmation_service = ConfirmationService(db, gateway)

    try:
        payment = await confirmation_service.reject_bank_transfer(request, admin)
        response_data = convert_payment_to_schema(payment)

        return JSONResponse(
            status_code=200,
            content=response_data.model_dump(mode="json")
        )

    except ProblemDetailsException:
        raise

    except Exception as e:
        logger.error(
            "Unexpected error rejecting bank transfer",
            extra={"payment_id": request.payment_id, "error": str(e)},
            exc_info=True
        )
        raise HTTPException(status_code=500, detail="Internal server error") from e
