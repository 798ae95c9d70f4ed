"""Inventory service: the seat ledger for departures."""

import logging
from typing import Optional
from uuid import UUID

from sqlalchemy import case, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.exceptions import ConflictError, ValidationError
from ..core.observability import metrics_collector
from ..models.departure import Departure, DepartureStatus
from ..models.inventory import InventoryLedgerEntry
from .departure_service import DepartureService

logger = logging.getLogger(__name__)


class InsufficientCapacityError(ConflictError):
    """Exception when a departure cannot seat the requested travelers."""

    def __init__(self, departure_id: str, requested_seats: int, available_seats: int):
        super().__init__(
            detail=f"Departure {departure_id} has insufficient capacity. Requested: {requested_seats}, Available: {available_seats}",
            conflicting_resource={
                "departure_id": departure_id,
                "requested_seats": requested_seats,
                "available_seats": available_seats
            },
            code="INSUFFICIENT_CAPACITY",
        )
        self.requested_seats = requested_seats
        self.available_seats = available_seats


class InventoryService:
    """
    Reserve and release seats on a departure.

    Both operations are single conditional UPDATE statements, so concurrent
    callers can never push booked_slots past available_slots or below zero.
    Neither commits: the caller commits together with its booking write.
    """

    def __init__(self, db: AsyncSession):
        self.db = db
        self.departure_service = DepartureService(db)

    async def reserve(
        self,
        departure_id: UUID,
        seats: int,
        booking_id: Optional[UUID] = None,
        actor: str = "system",
        reason: str = "booking_created",
    ) -> Departure:
        """
        Add seats to a departure's booked count.

        Returns:
            The departure as stored after the update

        Raises:
            NotFoundError: If departure not found
            InsufficientCapacityError: If fewer than `seats` slots remain
        """
        if seats <= 0:
            raise ValidationError(
                detail="Seat count must be positive",
                errors={"seats": seats},
            )

        new_booked = Departure.booked_slots + seats
        stmt = (
            update(Departure)
            .where(
                Departure.id == departure_id,
                Departure.available_slots - Departure.booked_slots >= seats,
            )
            .values(
                booked_slots=new_booked,
                status=case(
                    (new_booked >= Departure.available_slots, DepartureStatus.FULL.value),
                    else_=DepartureStatus.AVAILABLE.value,
                ),
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)

        if result.rowcount == 0:
            # Either the row is missing (raises NotFoundError) or capacity is short
            departure = await self.departure_service.get_departure_by_id_or_raise(departure_id, refresh=True)
            logger.warning(
                "Seat reservation failed - insufficient capacity",
                extra={
                    "departure_id": str(departure_id),
                    "booking_id": str(booking_id) if booking_id else None,
                    "requested_seats": seats,
                    "remaining_slots": departure.remaining_slots,
                }
            )
            raise InsufficientCapacityError(
                departure_id=str(departure_id),
                requested_seats=seats,
                available_seats=departure.remaining_slots,
            )

        departure = await self.departure_service.get_departure_by_id_or_raise(departure_id, refresh=True)
        self._record(departure, seats, booking_id, actor, reason)

        logger.info(
            "Seats reserved",
            extra={
                "departure_id": str(departure_id),
                "booking_id": str(booking_id) if booking_id else None,
                "seats": seats,
                "booked_slots": departure.booked_slots,
                "available_slots": departure.available_slots,
            }
        )
        return departure

    async def release(
        self,
        departure_id: UUID,
        seats: int,
        booking_id: Optional[UUID] = None,
        actor: str = "system",
        reason: str = "booking_cancelled",
    ) -> Departure:
        """
        Return seats to a departure.

        booked_slots never drops below zero and the departure becomes
        AVAILABLE again.

        Raises:
            NotFoundError: If departure not found
        """
        if seats <= 0:
            raise ValidationError(
                detail="Seat count must be positive",
                errors={"seats": seats},
            )

        stmt = (
            update(Departure)
            .where(Departure.id == departure_id)
            .values(
                booked_slots=case(
                    (Departure.booked_slots < seats, 0),
                    else_=Departure.booked_slots - seats,
                ),
                status=DepartureStatus.AVAILABLE.value,
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.execute(stmt)

        departure = await self.departure_service.get_departure_by_id_or_raise(departure_id, refresh=True)
        self._record(departure, -seats, booking_id, actor, reason)

        logger.info(
            "Seats released",
            extra={
                "departure_id": str(departure_id),
                "booking_id": str(booking_id) if booking_id else None,
                "seats": seats,
                "booked_slots": departure.booked_slots,
                "available_slots": departure.available_slots,
            }
        )
        return departure

    def _record(
        self,
        departure: Departure,
        delta: int,
        booking_id: Optional[UUID],
        actor: str,
        reason: str,
    ) -> None:
        self.db.add(InventoryLedgerEntry(
            departure_id=departure.id,
            booking_id=booking_id,
            delta=delta,
            reason=reason,
            actor=actor or "system",
            booked_slots_after=departure.booked_slots,
        ))

        if departure.available_slots > 0:
            metrics_collector.set_capacity_utilization(
                str(departure.id),
                departure.booked_slots / departure.available_slots * 100,
            )
