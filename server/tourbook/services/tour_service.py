"""Tour service for catalog lookups."""

import logging
from typing import Iterable, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.exceptions import NotFoundError
from ..models.tour import AddOn, Tour

logger = logging.getLogger(__name__)


class TourService:
    """Read-only access to tours and their add-ons."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_tour_by_id(self, tour_id: UUID) -> Optional[Tour]:
        """
        Get tour by ID.

        Args:
            tour_id: Tour ID to search for

        Returns:
            Tour if found, None otherwise
        """
        stmt = select(Tour).where(Tour.id == tour_id)
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_tour_by_id_or_raise(self, tour_id: UUID) -> Tour:
        """
        Get an active tour by ID or raise NotFoundError.

        Raises:
            NotFoundError: If the tour is missing or inactive
        """
        tour = await self.get_tour_by_id(tour_id)
        if not tour or not tour.is_active:
            logger.warning(
                "Tour not found",
                extra={"tour_id": str(tour_id)}
            )
            raise NotFoundError(
                resource_type="tour",
                resource_id=str(tour_id)
            )
        return tour

    async def get_active_add_ons(self, tour_id: UUID, add_on_ids: Iterable[UUID]) -> list[AddOn]:
        """Return the active add-ons of a tour among the given ids; unknown ids are skipped."""
        ids = list(add_on_ids)
        if not ids:
            return []

        stmt = (
            select(AddOn)
            .where(AddOn.tour_id == tour_id, AddOn.is_active.is_(True), AddOn.id.in_(ids))
            .order_by(AddOn.display_order)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars())
