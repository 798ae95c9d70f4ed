"""Booking service: idempotent creation, status changes and cancellation."""

import logging
from dataclasses import dataclass
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.database import utcnow
from ..core.exceptions import ConflictError, ExternalServiceError, NotFoundError, ValidationError
from ..core.identifiers import generate_reference, parse_uuid
from ..core.observability import metrics_collector
from ..core.security import ensure_owner_or_admin
from ..models.booking import ACTIVE_BOOKING_STATUSES, Booking, BookingAddOn, BookingStatus, Traveler
from ..models.payment import PaymentMethod, PaymentStatus
from ..schemas.booking import (
    CancelBookingRequest,
    CreateBookingRequest,
    GetBookingRequest,
    ListBookingsRequest,
    UpdateBookingStatusRequest,
)
from . import notification_service as notifications
from .departure_service import DepartureService
from .inventory_service import InventoryService
from .notification_service import NotificationService
from .payment_gateway import CANCELABLE_INTENT_STATUSES, PaymentGateway
from .pricing import price_add_ons, quote_booking, split_deposit
from .tour_service import TourService

logger = logging.getLogger(__name__)


class AlreadyBookedError(ConflictError):
    """Exception when the user already holds a confirmed booking for the departure."""

    def __init__(self, booking: Booking):
        super().__init__(
            detail=f"You already have a confirmed booking ({booking.booking_number}) for this departure",
            conflicting_resource={
                "booking_id": str(booking.id),
                "booking_number": booking.booking_number,
            },
            code="ALREADY_BOOKED",
        )


class AlreadyCancelledError(ConflictError):
    """Exception when cancelling a booking that is already cancelled."""

    def __init__(self, booking_id: str):
        super().__init__(
            detail=f"Booking {booking_id} is already cancelled",
            conflicting_resource={"booking_id": booking_id},
            code="ALREADY_CANCELLED",
        )


class InvalidStatusTransitionError(ConflictError):
    """Exception when a booking cannot move to the requested status."""

    def __init__(self, booking_id: str, current: BookingStatus, target: BookingStatus):
        super().__init__(
            detail=f"Booking {booking_id} cannot move from {current.value} to {target.value}",
            conflicting_resource={
                "booking_id": booking_id,
                "current_status": current.value,
                "requested_status": target.value,
            },
            code="INVALID_STATUS_TRANSITION",
        )


@dataclass
class BookingResult:
    """A booking plus whether an existing active booking was returned."""

    booking: Booking
    is_existing: bool = False


class BookingService:
    """Service for booking-related operations."""

    def __init__(self, db: AsyncSession, gateway: Optional[PaymentGateway] = None):
        self.db = db
        self.gateway = gateway
        self.tour_service = TourService(db)
        self.departure_service = DepartureService(db)
        self.inventory_service = InventoryService(db)
        self.notifications = NotificationService(db)

    async def _generate_booking_number(self) -> str:
        """Generate a booking number not used by any booking."""
        while True:
            booking_number = generate_reference("BK")
            stmt = select(Booking.id).where(Booking.booking_number == booking_number)
            if (await self.db.execute(stmt)).first() is None:
                return booking_number

    async def get_booking_by_id(self, booking_id: UUID) -> Booking | None:
        """
        Get booking by ID, reloading it and its relationships from the database.

        Args:
            booking_id: Booking ID to search for

        Returns:
            Booking if found, None otherwise
        """
        stmt = (
            select(Booking)
            .where(Booking.id == booking_id)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_booking_by_id_or_raise(self, booking_id: UUID) -> Booking:
        """
        Get booking by ID or raise NotFoundError.

        Raises:
            NotFoundError: If booking not found
        """
        booking = await self.get_booking_by_id(booking_id)
        if not booking:
            logger.warning(
                "Booking not found",
                extra={"booking_id": str(booking_id)}
            )
            raise NotFoundError(
                resource_type="booking",
                resource_id=str(booking_id)
            )
        return booking

    async def get_booking(self, request: GetBookingRequest, current_user: dict) -> Booking:
        """
        Get a booking visible to the caller.

        Raises:
            NotFoundError: If booking not found
            AuthorizationError: If the caller neither owns it nor is an administrator
        """
        booking = await self.get_booking_by_id_or_raise(parse_uuid(request.booking_id, "booking"))
        ensure_owner_or_admin(booking.user_id, current_user, "booking")
        return booking

    async def list_user_bookings(
        self,
        request: ListBookingsRequest,
        current_user: dict,
    ) -> tuple[list[Booking], int]:
        """
        List the caller's bookings, newest first.

        Returns:
            The requested page and the total number of matching bookings
        """
        conditions = [Booking.user_id == current_user["user_id"]]
        if request.status:
            conditions.append(Booking.status == request.status)

        count_stmt = select(func.count()).select_from(Booking).where(*conditions)
        total = (await self.db.execute(count_stmt)).scalar_one()

        stmt = (
            select(Booking)
            .where(*conditions)
            .order_by(Booking.created_at.desc(), Booking.booking_number.desc())
            .offset((request.page - 1) * request.limit)
            .limit(request.limit)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars()), total

    async def _find_active_booking(self, user_id: str, tour_id: UUID, departure_id: UUID) -> Booking | None:
        stmt = (
            select(Booking)
            .where(
                Booking.user_id == user_id,
                Booking.tour_id == tour_id,
                Booking.departure_id == departure_id,
                Booking.status.in_(ACTIVE_BOOKING_STATUSES),
            )
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        return result.scalars().first()

    async def create_booking(self, request: CreateBookingRequest, current_user: dict) -> BookingResult:
        """
        Create a booking, or return the caller's active booking for the same departure.

        A PENDING booking is returned with only its deposit election updated;
        seats are reserved once, when the booking is first created.

        Args:
            request: Booking creation request
            current_user: Authenticated caller

        Returns:
            The booking and whether it already existed

        Raises:
            NotFoundError: If the tour or departure is not found
            ValidationError: If traveler counts or the deposit are invalid
            AlreadyBookedError: If a CONFIRMED booking already exists
            InsufficientCapacityError: If the departure cannot seat the party
        """
        user_id = current_user["user_id"]
        tour = await self.tour_service.get_tour_by_id_or_raise(parse_uuid(request.tour_id, "tour"))
        departure = await self.departure_service.resolve_departure(
            tour.id, request.departure_id, request.start_date
        )
        tour_id, departure_id = tour.id, departure.id

        number_of_travelers = request.adults + request.children + request.infants
        if number_of_travelers < 1:
            raise ValidationError(
                detail="A booking needs at least one traveler",
                errors={"adults": request.adults, "children": request.children, "infants": request.infants},
            )
        if len(request.travelers) > number_of_travelers:
            raise ValidationError(
                detail="More traveler details than travelers",
                errors={"travelers": len(request.travelers), "number_of_travelers": number_of_travelers},
            )

        await self.departure_service.acquire_booking_lock(user_id, tour_id, departure_id)

        existing = await self._find_active_booking(user_id, tour_id, departure_id)
        if existing:
            return await self._reuse_active_booking(existing, request)

        selections: dict[UUID, int] = {}
        for selection in request.add_ons:
            try:
                add_on_id = UUID(selection.add_on_id)
            except ValueError:
                continue
            selections[add_on_id] = selections.get(add_on_id, 0) + selection.quantity
        catalog = await self.tour_service.get_active_add_ons(tour_id, selections.keys())
        priced_add_ons = price_add_ons(catalog, selections)

        quote = quote_booking(tour.price_amount, number_of_travelers, priced_add_ons)
        deposit = split_deposit(quote.total_price, request.is_deposit_payment, request.deposit_amount)

        booking_id = uuid4()
        booking = Booking(
            id=booking_id,
            booking_number=await self._generate_booking_number(),
            user_id=user_id,
            tour_id=tour_id,
            departure_id=departure_id,
            adults=request.adults,
            children=request.children,
            infants=request.infants,
            number_of_travelers=number_of_travelers,
            includes_flight=request.includes_flight,
            total_price=quote.total_price,
            add_ons_total=quote.add_ons_total,
            currency=tour.price_currency,
            is_deposit_payment=deposit.is_deposit_payment,
            deposit_amount=deposit.deposit_amount,
            remaining_balance=deposit.remaining_balance,
            status=BookingStatus.PENDING,
            special_requests=request.special_requests,
            travelers=[
                Traveler(
                    full_name=traveler.full_name,
                    age=traveler.age,
                    gender=traveler.gender,
                    passport_number=traveler.passport_number,
                    dietary_requirements=traveler.dietary_requirements,
                )
                for traveler in request.travelers
            ],
            add_ons=[
                BookingAddOn(
                    add_on_id=line.add_on_id,
                    name=line.name,
                    quantity=line.quantity,
                    unit_price=line.unit_price,
                    line_total=line.line_total,
                )
                for line in priced_add_ons
            ],
        )

        try:
            self.db.add(booking)
            # The partial unique index rejects a concurrent identical booking here
            await self.db.flush()
            await self.inventory_service.reserve(
                departure_id,
                number_of_travelers,
                booking_id=booking_id,
                actor=user_id,
                reason="booking_created",
            )
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            logger.info(
                "Concurrent booking detected, returning the existing booking",
                extra={"user_id": user_id, "tour_id": str(tour_id), "departure_id": str(departure_id)}
            )
            existing = await self._find_active_booking(user_id, tour_id, departure_id)
            if not existing:
                raise ConflictError(detail="The booking could not be created. Please retry.")
            return await self._reuse_active_booking(existing, request)
        except Exception:
            await self.db.rollback()
            raise

        metrics_collector.record_booking_created(reused=False)
        logger.info(
            "Booking created successfully",
            extra={
                "booking_id": str(booking_id),
                "booking_number": booking.booking_number,
                "user_id": user_id,
                "departure_id": str(departure_id),
                "travelers": number_of_travelers,
                "total_price": quote.total_price,
                "is_deposit_payment": deposit.is_deposit_payment,
            }
        )

        await self.notifications.notify(
            user_id,
            notifications.BOOKING_CREATED,
            "Booking received",
            f"Your booking {booking.booking_number} has been created and is awaiting payment.",
            link=f"/bookings/{booking_id}",
        )
        return BookingResult(await self.get_booking_by_id_or_raise(booking_id), is_existing=False)

    async def _reuse_active_booking(self, existing: Booking, request: CreateBookingRequest) -> BookingResult:
        """Return an active booking, refreshing the deposit election of a PENDING one."""
        if existing.status == BookingStatus.CONFIRMED:
            logger.info(
                "Booking request for an already confirmed departure",
                extra={"booking_id": str(existing.id), "user_id": existing.user_id}
            )
            raise AlreadyBookedError(existing)

        booking_id = existing.id
        deposit = split_deposit(existing.total_price, request.is_deposit_payment, request.deposit_amount)
        if (
            existing.is_deposit_payment != deposit.is_deposit_payment
            or existing.deposit_amount != deposit.deposit_amount
        ):
            existing.is_deposit_payment = deposit.is_deposit_payment
            existing.deposit_amount = deposit.deposit_amount
            existing.remaining_balance = deposit.remaining_balance
            await self.db.commit()

        metrics_collector.record_booking_created(reused=True)
        logger.info(
            "Returning existing pending booking",
            extra={
                "booking_id": str(booking_id),
                "booking_number": existing.booking_number,
                "is_deposit_payment": deposit.is_deposit_payment,
            }
        )
        return BookingResult(await self.get_booking_by_id_or_raise(booking_id), is_existing=True)

    async def cancel_booking(self, request: CancelBookingRequest, current_user: dict) -> Booking:
        """
        Cancel a booking and release its seats.

        Raises:
            NotFoundError: If booking not found
            AuthorizationError: If the caller neither owns it nor is an administrator
            AlreadyCancelledError: If the booking is already cancelled
        """
        booking = await self.get_booking_by_id_or_raise(parse_uuid(request.booking_id, "booking"))
        ensure_owner_or_admin(booking.user_id, current_user, "booking")
        return await self._cancel(booking, request.reason, actor=current_user["user_id"])

    async def _cancel(self, booking: Booking, reason: Optional[str], actor: str) -> Booking:
        booking_id = booking.id
        departure_id = booking.departure_id
        seats = booking.number_of_travelers
        user_id = booking.user_id
        booking_number = booking.booking_number
        payment = booking.payment
        open_intent_id = (
            payment.external_reference
            if payment is not None
            and payment.payment_method == PaymentMethod.CARD
            and payment.status in (PaymentStatus.PENDING, PaymentStatus.FAILED)
            else None
        )

        if booking.status == BookingStatus.CANCELLED:
            raise AlreadyCancelledError(str(booking_id))

        now = utcnow()
        stmt = (
            update(Booking)
            .where(Booking.id == booking_id, Booking.status != BookingStatus.CANCELLED)
            .values(
                status=BookingStatus.CANCELLED,
                cancelled_at=now,
                cancellation_reason=reason,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        try:
            result = await self.db.execute(stmt)
            if result.rowcount == 0:
                # Lost a race with another cancellation
                raise AlreadyCancelledError(str(booking_id))

            await self.inventory_service.release(
                departure_id,
                seats,
                booking_id=booking_id,
                actor=actor,
                reason="booking_cancelled",
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        metrics_collector.record_booking_cancelled(actor="owner" if actor == user_id else "admin")
        logger.info(
            "Booking cancelled",
            extra={
                "booking_id": str(booking_id),
                "booking_number": booking_number,
                "actor": actor,
                "released_seats": seats,
            }
        )

        if open_intent_id:
            await self.cancel_open_intent(open_intent_id, booking_id)

        await self.notifications.notify(
            user_id,
            notifications.BOOKING_CANCELLED,
            "Booking cancelled",
            f"Your booking {booking_number} has been cancelled.",
            link=f"/bookings/{booking_id}",
        )
        return await self.get_booking_by_id_or_raise(booking_id)

    async def cancel_open_intent(self, intent_id: str, booking_id: UUID) -> None:
        """Cancel an unpaid card intent at the processor; failures are only logged."""
        if self.gateway is None:
            return
        try:
            intent = await self.gateway.retrieve_payment_intent(intent_id)
            if intent.status in CANCELABLE_INTENT_STATUSES:
                await self.gateway.cancel_payment_intent(intent_id)
                logger.info(
                    "Cancelled open payment intent",
                    extra={"payment_intent_id": intent_id, "booking_id": str(booking_id)}
                )
        except ExternalServiceError:
            logger.warning(
                "Could not cancel open payment intent",
                extra={"payment_intent_id": intent_id, "booking_id": str(booking_id)},
                exc_info=True,
            )

    async def update_booking_status(self, request: UpdateBookingStatusRequest, admin: dict) -> Booking:
        """
        Administrator status override.

        Moving to the current status is a no-op. CANCELLED goes through the
        cancellation path so seats are released.

        Raises:
            NotFoundError: If booking not found
            InvalidStatusTransitionError: If the transition is not allowed
        """
        booking = await self.get_booking_by_id_or_raise(parse_uuid(request.booking_id, "booking"))
        booking_id = booking.id
        current = booking.status
        target = request.status

        if target == current:
            return booking

        if not current.can_transition_to(target):
            raise InvalidStatusTransitionError(str(booking_id), current, target)

        if target == BookingStatus.CANCELLED:
            return await self._cancel(booking, request.reason or "Cancelled by administrator", actor=admin["user_id"])

        values = {"status": target, "updated_at": utcnow()}
        if target == BookingStatus.CONFIRMED:
            values["confirmed_at"] = utcnow()

        stmt = (
            update(Booking)
            .where(Booking.id == booking_id, Booking.status == current)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        if result.rowcount == 0:
            await self.db.rollback()
            latest = await self.get_booking_by_id_or_raise(booking_id)
            raise InvalidStatusTransitionError(str(booking_id), latest.status, target)
        await self.db.commit()

        logger.info(
            "Booking status updated by administrator",
            extra={
                "booking_id": str(booking_id),
                "from_status": current.value,
                "to_status": target.value,
                "actor": admin["user_id"],
            }
        )
        return await self.get_booking_by_id_or_raise(booking_id)
