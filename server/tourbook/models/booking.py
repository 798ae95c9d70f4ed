"""Booking, traveler, and booked add-on model definitions."""

from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING
from uuid import UUID, uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import expression

from ..core.database import Base, utcnow

if TYPE_CHECKING:
    from .departure import Departure
    from .payment import Payment
    from .tour import Tour


class BookingStatus(str, Enum):
    """Booking status enumeration."""
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    CANCELLED = "CANCELLED"
    COMPLETED = "COMPLETED"

    def can_transition_to(self, target: "BookingStatus") -> bool:
        return target in BOOKING_TRANSITIONS[self]


BOOKING_TRANSITIONS: dict[BookingStatus, frozenset[BookingStatus]] = {
    BookingStatus.PENDING: frozenset({BookingStatus.CONFIRMED, BookingStatus.CANCELLED}),
    BookingStatus.CONFIRMED: frozenset({BookingStatus.COMPLETED, BookingStatus.CANCELLED}),
    BookingStatus.COMPLETED: frozenset(),
    BookingStatus.CANCELLED: frozenset(),
}

# Statuses that hold seats and block a second booking for the same departure
ACTIVE_BOOKING_STATUSES = (BookingStatus.PENDING, BookingStatus.CONFIRMED)


class Booking(Base):
    """Booking entity holding seats on a departure for one user."""

    __tablename__ = "bookings"

    # Primary key
    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    booking_number: Mapped[str] = mapped_column(String(32), nullable=False, unique=True, index=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    tour_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("tours.id", ondelete="RESTRICT"),
        nullable=False,
        index=True
    )
    departure_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("departures.id", ondelete="RESTRICT"),
        nullable=False,
        index=True
    )

    # Party
    adults: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    children: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    infants: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    number_of_travelers: Mapped[int] = mapped_column(Integer, nullable=False)
    includes_flight: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        server_default=expression.false()
    )

    # Money, minor units
    total_price: Mapped[int] = mapped_column(Integer, nullable=False)
    add_ons_total: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    is_deposit_payment: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        server_default=expression.false()
    )
    deposit_amount: Mapped[int | None] = mapped_column(Integer, nullable=True)
    remaining_balance: Mapped[int | None] = mapped_column(Integer, nullable=True)

    status: Mapped[BookingStatus] = mapped_column(
        SAEnum(BookingStatus, native_enum=False, length=20),
        nullable=False,
        default=BookingStatus.PENDING,
        index=True
    )
    special_requests: Mapped[str | None] = mapped_column(Text, nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    confirmed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

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
        CheckConstraint("number_of_travelers > 0", name="ck_booking_travelers_positive"),
        CheckConstraint(
            "number_of_travelers = adults + children + infants",
            name="ck_booking_travelers_sum"
        ),
        CheckConstraint("total_price >= 0", name="ck_booking_total_price_non_negative"),
        CheckConstraint("add_ons_total >= 0", name="ck_booking_add_ons_total_non_negative"),
        CheckConstraint(
            "deposit_amount IS NULL OR (deposit_amount > 0 AND deposit_amount < total_price)",
            name="ck_booking_deposit_range"
        ),
        # At most one active booking per user, tour and departure
        Index(
            "uq_bookings_active_user_tour_departure",
            "user_id",
            "tour_id",
            "departure_id",
            unique=True,
            postgresql_where=text("status IN ('PENDING', 'CONFIRMED')"),
            sqlite_where=text("status IN ('PENDING', 'CONFIRMED')"),
        ),
    )

    # Relationships
    tour: Mapped["Tour"] = relationship("Tour", lazy="selectin")
    departure: Mapped["Departure"] = relationship("Departure", lazy="selectin")
    travelers: Mapped[list["Traveler"]] = relationship(
        "Traveler",
        back_populates="booking",
        cascade="all, delete-orphan",
        lazy="selectin"
    )
    add_ons: Mapped[list["BookingAddOn"]] = relationship(
        "BookingAddOn",
        back_populates="booking",
        cascade="all, delete-orphan",
        lazy="selectin"
    )
    payment: Mapped["Payment | None"] = relationship(
        "Payment",
        back_populates="booking",
        uselist=False,
        lazy="selectin"
    )

    def __repr__(self) -> str:
        return (
            f"<Booking(id={self.id}, number='{self.booking_number}', departure_id={self.departure_id}, "
            f"travelers={self.number_of_travelers}, status={self.status})>"
        )


class Traveler(Base):
    """Traveler details captured with a booking."""

    __tablename__ = "booking_travelers"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    booking_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("bookings.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    full_name: Mapped[str] = mapped_column(String(255), nullable=False)
    age: Mapped[int | None] = mapped_column(Integer, nullable=True)
    gender: Mapped[str | None] = mapped_column(String(20), nullable=True)
    passport_number: Mapped[str | None] = mapped_column(String(64), nullable=True)
    dietary_requirements: Mapped[str | None] = mapped_column(Text, nullable=True)

    booking: Mapped["Booking"] = relationship("Booking", back_populates="travelers")

    def __repr__(self) -> str:
        return f"<Traveler(id={self.id}, booking_id={self.booking_id}, name='{self.full_name}')>"


class BookingAddOn(Base):
    """Snapshot of an add-on as priced when the booking was made."""

    __tablename__ = "booking_add_ons"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    booking_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("bookings.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    add_on_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("tour_add_ons.id", ondelete="RESTRICT"),
        nullable=False
    )

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price: Mapped[int] = mapped_column(Integer, nullable=False)
    line_total: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_booking_add_on_quantity_positive"),
        CheckConstraint("line_total = unit_price * quantity", name="ck_booking_add_on_line_total"),
    )

    booking: Mapped["Booking"] = relationship("Booking", back_populates="add_ons")

    def __repr__(self) -> str:
        return f"<BookingAddOn(booking_id={self.booking_id}, name='{self.name}', quantity={self.quantity})>"
