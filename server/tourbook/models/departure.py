"""Departure model definition."""

from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING
from uuid import UUID, uuid4

from sqlalchemy import CheckConstraint, DateTime, Enum as SAEnum, ForeignKey, Integer, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ..core.database import Base, utcnow

if TYPE_CHECKING:
    from .tour import Tour


class DepartureStatus(str, Enum):
    """Departure availability; FULL exactly when every slot is booked."""
    AVAILABLE = "AVAILABLE"
    FULL = "FULL"


class Departure(Base):
    """Departure entity representing a specific dated run of a tour."""

    __tablename__ = "departures"

    # Primary key
    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    # Foreign key to tour
    tour_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("tours.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    # Departure details
    starts_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    ends_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Seat counters, only ever changed through the inventory ledger
    available_slots: Mapped[int] = mapped_column(Integer, nullable=False)
    booked_slots: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[DepartureStatus] = mapped_column(
        SAEnum(DepartureStatus, native_enum=False, length=20),
        nullable=False,
        default=DepartureStatus.AVAILABLE
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
        server_default=func.now()
    )

    # Constraints
    __table_args__ = (
        CheckConstraint("available_slots >= 0", name="ck_departure_available_slots_non_negative"),
        CheckConstraint("booked_slots >= 0", name="ck_departure_booked_slots_non_negative"),
        CheckConstraint("booked_slots <= available_slots", name="ck_departure_booked_lte_available"),
    )

    # Relationships
    tour: Mapped["Tour"] = relationship("Tour", back_populates="departures")

    @property
    def remaining_slots(self) -> int:
        return self.available_slots - self.booked_slots

    def __repr__(self) -> str:
        return (
            f"<Departure(id={self.id}, tour_id={self.tour_id}, starts_at={self.starts_at}, "
            f"booked={self.booked_slots}/{self.available_slots}, status={self.status})>"
        )
