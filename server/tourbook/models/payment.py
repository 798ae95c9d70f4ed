"""Payment model definition."""

from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Integer,
    LargeBinary,
    String,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, deferred, mapped_column, relationship

from ..core.database import Base, utcnow

if TYPE_CHECKING:
    from .booking import Booking


class PaymentMethod(str, Enum):
    """How the traveler pays."""
    CARD = "CARD"
    BANK_TRANSFER = "BANK_TRANSFER"

    @property
    def processor_type(self) -> str:
        """Payment method type understood by the processor."""
        return PROCESSOR_METHOD_TYPES[self]


PROCESSOR_METHOD_TYPES = {
    PaymentMethod.CARD: "card",
    PaymentMethod.BANK_TRANSFER: "us_bank_account",
}


class PaymentStatus(str, Enum):
    """Payment status enumeration."""
    PENDING = "PENDING"
    AWAITING_VERIFICATION = "AWAITING_VERIFICATION"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"

    def can_transition_to(self, target: "PaymentStatus") -> bool:
        return target in PAYMENT_TRANSITIONS[self]


PAYMENT_TRANSITIONS: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset({
        PaymentStatus.AWAITING_VERIFICATION,
        PaymentStatus.COMPLETED,
        PaymentStatus.FAILED,
    }),
    PaymentStatus.FAILED: frozenset({
        PaymentStatus.PENDING,
        PaymentStatus.AWAITING_VERIFICATION,
        PaymentStatus.COMPLETED,
    }),
    PaymentStatus.AWAITING_VERIFICATION: frozenset({PaymentStatus.COMPLETED, PaymentStatus.FAILED}),
    PaymentStatus.COMPLETED: frozenset({PaymentStatus.REFUNDED}),
    PaymentStatus.REFUNDED: frozenset(),
}


def statuses_leading_to(target: PaymentStatus) -> tuple[PaymentStatus, ...]:
    """Statuses a payment row may hold when it is rewritten as `target`."""
    return tuple(status for status in PaymentStatus if status == target or status.can_transition_to(target))


class Payment(Base):
    """The single payment record attached to a booking."""

    __tablename__ = "payments"

    # Primary key
    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    payment_number: Mapped[str] = mapped_column(String(32), nullable=False, unique=True, index=True)
    booking_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("bookings.id", ondelete="RESTRICT"),
        nullable=False,
        unique=True
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    # Amount actually charged, minor units
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    payment_method: Mapped[PaymentMethod] = mapped_column(
        SAEnum(PaymentMethod, native_enum=False, length=20),
        nullable=False
    )
    status: Mapped[PaymentStatus] = mapped_column(
        SAEnum(PaymentStatus, native_enum=False, length=30),
        nullable=False,
        default=PaymentStatus.PENDING,
        index=True
    )

    # Processor references: payment intent or invoice id, then the charge
    external_reference: Mapped[str | None] = mapped_column(String(255), nullable=True, unique=True)
    charge_reference: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Bank transfer receipt
    receipt_data: Mapped[bytes | None] = deferred(mapped_column(LargeBinary, nullable=True))
    receipt_filename: Mapped[str | None] = mapped_column(String(255), nullable=True)
    receipt_content_type: Mapped[str | None] = mapped_column(String(100), nullable=True)

    # Fee breakdown, rejection and refund data; reassign rather than mutate in place
    details: Mapped[dict[str, Any]] = mapped_column("metadata", JSON, nullable=False, default=dict)

    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    refund_amount: Mapped[int | None] = mapped_column(Integer, nullable=True)

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

    __table_args__ = (
        CheckConstraint("amount >= 0", name="ck_payment_amount_non_negative"),
        CheckConstraint(
            "status != 'COMPLETED' OR paid_at IS NOT NULL",
            name="ck_payment_completed_has_paid_at"
        ),
        CheckConstraint(
            "refund_amount IS NULL OR (refund_amount > 0 AND refund_amount <= amount)",
            name="ck_payment_refund_amount_range"
        ),
    )

    booking: Mapped["Booking"] = relationship("Booking", back_populates="payment", lazy="selectin")

    def __repr__(self) -> str:
        return (
            f"<Payment(id={self.id}, number='{self.payment_number}', booking_id={self.booking_id}, "
            f"amount={self.amount}, method={self.payment_method}, status={self.status})>"
        )
