"""Inventory ledger model definition."""

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Integer, String, Text, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from ..core.database import Base, utcnow


class InventoryLedgerEntry(Base):
    """Audit trail entry for every seat reservation and release."""

    __tablename__ = "inventory_ledger"

    # Primary key
    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    departure_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("departures.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    booking_id: Mapped[UUID | None] = mapped_column(
        Uuid,
        ForeignKey("bookings.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )

    # Positive for a reservation, negative for a release
    delta: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    actor: Mapped[str] = mapped_column(String(255), nullable=False)
    booked_slots_after: Mapped[int] = mapped_column(Integer, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
        index=True
    )

    __table_args__ = (
        CheckConstraint("delta != 0", name="ck_inventory_ledger_delta_nonzero"),
        CheckConstraint("length(reason) > 0", name="ck_inventory_ledger_reason_not_empty"),
        CheckConstraint("length(actor) > 0", name="ck_inventory_ledger_actor_not_empty"),
        CheckConstraint("booked_slots_after >= 0", name="ck_inventory_ledger_booked_after_non_negative"),
    )

    def __repr__(self) -> str:
        return (
            f"<InventoryLedgerEntry(id={self.id}, departure_id={self.departure_id}, "
            f"delta={self.delta}, actor='{self.actor}', booked_after={self.booked_slots_after})>"
        )
