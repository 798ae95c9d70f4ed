"""Departure service for lookups and per-booking locks."""

import logging
from datetime import date, datetime, time, timedelta, timezone
from uuid import UUID

from sqlalchemy import select, text
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.database import is_postgresql
from ..core.exceptions import NotFoundError, ValidationError
from ..core.identifiers import parse_uuid
from ..models.departure import Departure

logger = logging.getLogger(__name__)


class DepartureService:
    """Service for departure-related operations."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_departure_by_id(self, departure_id: UUID, refresh: bool = False) -> Departure | None:
        """
        Get departure by ID.

        Args:
            departure_id: Departure ID to search for
            refresh: Overwrite any copy already in the session with the row as stored

        Returns:
            Departure if found, None otherwise
        """
        stmt = select(Departure).where(Departure.id == departure_id)
        if refresh:
            stmt = stmt.execution_options(populate_existing=True)
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_departure_by_id_or_raise(self, departure_id: UUID, refresh: bool = False) -> Departure:
        """
        Get departure by ID or raise NotFoundError.

        Raises:
            NotFoundError: If departure not found
        """
        departure = await self.get_departure_by_id(departure_id, refresh=refresh)
        if not departure:
            logger.warning(
                "Departure not found",
                extra={"departure_id": str(departure_id)}
            )
            raise NotFoundError(
                resource_type="departure",
                resource_id=str(departure_id)
            )
        return departure

    async def resolve_departure(
        self,
        tour_id: UUID,
        departure_id: str | None = None,
        start_date: date | None = None,
    ) -> Departure:
        """
        Find the departure a booking request refers to.

        By id the departure must belong to the tour. By date the earliest
        departure of the tour starting on that UTC day is used.

        Raises:
            ValidationError: If neither departure_id nor start_date is given
            NotFoundError: If no matching departure exists
        """
        if departure_id:
            departure = await self.get_departure_by_id_or_raise(parse_uuid(departure_id, "departure"))
            if departure.tour_id != tour_id:
                logger.warning(
                    "Departure does not belong to tour",
                    extra={"departure_id": departure_id, "tour_id": str(tour_id)}
                )
                raise NotFoundError(resource_type="departure", resource_id=departure_id)
            return departure

        if start_date is None:
            raise ValidationError(
                detail="Either departure_id or start_date is required",
                errors={"departure_id": "required when start_date is absent"},
            )

        day_start = datetime.combine(start_date, time.min, tzinfo=timezone.utc)
        stmt = (
            select(Departure)
            .where(
                Departure.tour_id == tour_id,
                Departure.starts_at >= day_start,
                Departure.starts_at < day_start + timedelta(days=1),
            )
            .order_by(Departure.starts_at)
            .limit(1)
        )
        result = await self.db.execute(stmt)
        departure = result.scalar_one_or_none()
        if not departure:
            logger.warning(
                "No departure on requested date",
                extra={"tour_id": str(tour_id), "start_date": start_date.isoformat()}
            )
            raise NotFoundError(
                resource_type="departure",
                detail=f"No departure of this tour starts on {start_date.isoformat()}",
            )
        return departure

    async def acquire_booking_lock(self, user_id: str, tour_id: UUID, departure_id: UUID) -> None:
        """
        Serialize booking attempts for one user, tour and departure.

        Uses a transaction-scoped PostgreSQL advisory lock, released at commit
        or rollback. Other databases rely on the partial unique index alone.
        """
        if not is_postgresql(self.db):
            return

        await self.db.execute(
            text("SELECT pg_advisory_xact_lock(hashtext(:lock_key))"),
            {"lock_key": f"booking:{user_id}:{tour_id}:{departure_id}"}
        )

        logger.debug(
            "Acquired advisory lock for booking",
            extra={"user_id": user_id, "tour_id": str(tour_id), "departure_id": str(departure_id)}
        )
