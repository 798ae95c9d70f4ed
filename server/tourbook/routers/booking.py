"""Booking router for booking operations."""

import logging

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.database import get_db
from ..core.dependencies import get_current_user, get_payment_gateway, require_admin
from ..core.exceptions import ProblemDetailsException
from ..schemas.booking import (
    BookedAddOn,
    Booking,
    BookingList,
    CancelBookingRequest,
    CreateBookingRequest,
    GetBookingRequest,
    ListBookingsRequest,
    PaymentSummary,
    Traveler,
    UpdateBookingStatusRequest,
)
from ..schemas.common import PageInfo
from ..services.booking_service import BookingService
from ..services.payment_gateway import PaymentGateway

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/booking", tags=["booking"])

# Define dependencies to avoid B008 linting errors
DB_DEPENDENCY = Depends(get_db)
USER_DEPENDENCY = Depends(get_current_user)
ADMIN_DEPENDENCY = Depends(require_admin)
GATEWAY_DEPENDENCY = Depends(get_payment_gateway)


def convert_booking_to_schema(booking_model, is_existing: bool = False) -> Booking:
    """Convert booking model to schema."""
    payment = booking_model.payment
    return Booking(
        id=str(booking_model.id),
        booking_number=booking_model.booking_number,
        user_id=booking_model.user_id,
        tour_id=str(booking_model.tour_id),
        tour_title=booking_model.tour.title if booking_model.tour else None,
        departure_id=str(booking_model.departure_id),
        starts_at=booking_model.departure.starts_at if booking_model.departure else None,
        adults=booking_model.adults,
        children=booking_model.children,
        infants=booking_model.infants,
        number_of_travelers=booking_model.number_of_travelers,
        includes_flight=booking_model.includes_flight,
        total_price=booking_model.total_price,
        add_ons_total=booking_model.add_ons_total,
        currency=booking_model.currency,
        is_deposit_payment=booking_model.is_deposit_payment,
        deposit_amount=booking_model.deposit_amount,
        remaining_balance=booking_model.remaining_balance,
        status=booking_model.status,
        special_requests=booking_model.special_requests,
        cancellation_reason=booking_model.cancellation_reason,
        cancelled_at=booking_model.cancelled_at,
        confirmed_at=booking_model.confirmed_at,
        created_at=booking_model.created_at,
        travelers=[Traveler.model_validate(t) for t in booking_model.travelers],
        add_ons=[
            BookedAddOn(
                add_on_id=str(line.add_on_id),
                name=line.name,
                quantity=line.quantity,
                unit_price=line.unit_price,
                line_total=line.line_total,
            )
            for line in booking_model.add_ons
        ],
        payment=PaymentSummary(
            id=str(payment.id),
            payment_number=payment.payment_number,
            payment_method=payment.payment_method,
            status=payment.status,
            amount=payment.amount,
            currency=payment.currency,
            paid_at=payment.paid_at,
        ) if payment is not None else None,
        is_existing=is_existing,
    )


@router.post("/create", response_model=Booking)
async def create_booking(
    request: CreateBookingRequest,
    db: AsyncSession = DB_DEPENDENCY,
    current_user: dict = USER_DEPENDENCY,
) -> JSONResponse:
    """
    Create a booking, or return the caller's active booking for the same departure.

    Repeating the request never reserves seats twice; the response then
    carries is_existing=true with status 200 instead of 201.
    """
    booking_service = BookingService(db)

    try:
        result = await booking_service.create_booking(request, current_user)
        response_data = convert_booking_to_schema(result.booking, is_existing=result.is_existing)

        logger.info(
            "Booking created successfully" if not result.is_existing else "Existing booking returned",
            extra={
                "booking_id": response_data.id,
                "booking_number": response_data.booking_number,
                "tour_id": request.tour_id,
                "user_id": current_user["user_id"],
                "is_existing": result.is_existing,
            }
        )

        return JSONResponse(
            status_code=200 if result.is_existing else 201,
            content=response_data.model_dump(mode="json")
        )

    except ProblemDetailsException:
        raise

    except Exception as e:
        logger.error(
            "Unexpected error in booking creation",
            extra={
                "tour_id": request.tour_id,
                "departure_id": request.departure_id,
                "user_id": current_user["user_id"],
                "error": str(e)
            },
            exc_info=True
        )
        raise HTTPException(status_code=500, detail="Internal server error") from e


@router.post("/get", response_model=Booking)
async def get_booking(
    request: GetBookingRequest,
    db: AsyncSession = DB_DEPENDENCY,
    current_user: dict = USER_DEPENDENCY,
) -> JSONResponse:
    """Get booking details. Only the owner or an administrator may read a booking."""
    booking_service = BookingService(db)

    try:
        booking = await booking_service.get_booking(request, current_user)
        response_data = convert_booking_to_schema(booking)

        logger.info(
            "Booking retrieved successfully",
            extra={
                "booking_id": request.booking_id,
                "booking_number": booking.booking_number
            }
        )

        return JSONResponse(
            status_code=200,
            content=response_data.model_dump(mode="json")
        )

    except ProblemDetailsException:
        raise

    except Exception as e:
        logger.error(
            "Unexpected error in booking retrieval",
            extra={
                "booking_id": request.booking_id,
                "error": str(e)
            },
            exc_info=True
        )
        raise HTTPException(status_code=500, detail="Internal server error") from e


@router.post("/list", response_model=BookingList)
async def list_bookings(
    request: ListBookingsRequest,
    db: AsyncSession = DB_DEPENDENCY,
    current_user: dict = USER_DEPENDENCY,
) -> JSONResponse:
    """List the caller's bookings, newest first."""
    booking_service = BookingService(db)

    try:
        bookings, total = await booking_service.list_user_bookings(request, current_user)
        response_data = BookingList(
            items=[convert_booking_to_schema(b) for b in bookings],
            pagination=PageInfo(
                page=request.page,
                limit=request.limit,
                total=total,
                pages=(total + request.limit - 1) // request.limit,
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
            "Unexpected error in booking listing",
            extra={
                "user_id": current_user["user_id"],
                "error": str(e)
            },
            exc_info=True
        )
        raise HTTPException(status_code=500, detail="Internal server error") from e


@router.post("/cancel", response_model=Booking)
async def cancel_booking(
    request: CancelBookingRequest,
    db: AsyncSession = DB_DEPENDENCY,
    current_user: dict = USER_DEPENDENCY,
    gateway: PaymentGateway = GATEWAY_DEPENDENCY,
) -> JSONResponse:
    """Cancel a booking and release its seats."""
    booking_service = BookingService(db, gateway)

    try:
        booking = await booking_service.cancel_booking(request, current_user)
        response_data = convert_booking_to_schema(booking)

        logger.info(
            "Booking cancelled successfully",
            extra={
                "booking_id": request.booking_id,
                "booking_number": booking.booking_number,
                "actor": current_user["user_id"]
            }
        )

        return JSONResponse(
            status_code=200,
            content=response_data.model_dump(mode="json")
        )

    except ProblemDetailsException:
        raise

    except Exception as e:
        logger.error(
            "Unexpected error in booking cancellation",
            extra={
                "booking_id": request.booking_id,
                "error": str(e)
            },
            exc_info=True
        )
        raise HTTPException(status_code=500, detail="Internal server error") from e


@router.post("/status", response_model=Booking)
async def update_booking_status(
    request: UpdateBookingStatusRequest,
    db: AsyncSession = DB_DEPENDENCY,
    admin: dict = ADMIN_DEPENDENCY,
    gateway: PaymentGateway = GATEWAY_DEPENDENCY,
) -> JSONResponse:
    """Administrator status override, checked against the booking transition table."""
    booking_service = BookingService(db, gateway)

    try:
        booking = await booking_service.update_booking_status(request, admin)
        response_data = convert_booking_to_schema(booking)

        logger.info(
            "Booking status updated",
            extra={
                "booking_id": request.booking_id,
                "status": request.status.value,
                "actor": admin["user_id"]
            }
        )

        return JSONResponse(
            status_code=200,
            content=response_data.model_dump(mode="json")
        )

    except ProblemDetailsException:
        raise

    except Exception as e:
        logger.error(
            "Unexpected error in booking status update",
            extra={
                "booking_id": request.booking_id,
                "error": str(e)
            },
            exc_info=True
        )
        raise HTTPException(status_code=500, detail="Internal server error") from e
