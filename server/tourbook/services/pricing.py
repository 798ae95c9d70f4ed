"""
Pricing calculator.

All amounts are integers in minor units (cents). Rates are Decimals and
every fee is rounded half up to the minor unit.
"""

from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Optional, Sequence
from uuid import UUID

from ..core.exceptions import ValidationError


@dataclass(frozen=True)
class PricedAddOn:
    """An add-on line priced from the catalog."""

    add_on_id: UUID
    name: str
    unit_price: int
    quantity: int

    @property
    def line_total(self) -> int:
        return self.unit_price * self.quantity


@dataclass(frozen=True)
class BookingQuote:
    """Price of a booking before any payment method is chosen."""

    base_amount: int
    add_ons_total: int
    total_price: int
    add_ons: Sequence[PricedAddOn] = field(default_factory=tuple)


@dataclass(frozen=True)
class DepositSplit:
    is_deposit_payment: bool
    deposit_amount: Optional[int]
    remaining_balance: Optional[int]


@dataclass(frozen=True)
class ChargeBreakdown:
    """What is charged now and how it was derived."""

    base_amount: int
    fee_amount: int
    fee_rate: Decimal
    total_charged: int
    is_deposit_payment: bool

    def as_details(self) -> dict:
        """Serialize for the payment's details column."""
        return {
            "base_amount": self.base_amount,
            "fee_amount": self.fee_amount,
            "fee_rate": str(self.fee_rate),
            "total_charged": self.total_charged,
            "is_deposit_payment": self.is_deposit_payment,
        }


def price_add_ons(catalog: Iterable, selections: dict[UUID, int]) -> list[PricedAddOn]:
    """
    Price the selected add-ons against the catalog rows passed in.

    Selections whose id is not among the catalog rows are dropped.
    """
    priced = []
    for add_on in catalog:
        quantity = selections.get(add_on.id)
        if quantity:
            priced.append(PricedAddOn(
                add_on_id=add_on.id,
                name=add_on.name,
                unit_price=add_on.price_amount,
                quantity=quantity,
            ))
    return priced


def quote_booking(
    price_per_traveler: int,
    number_of_travelers: int,
    add_ons: Sequence[PricedAddOn] = (),
) -> BookingQuote:
    """Total price: per-traveler price times travelers plus add-on lines."""
    if number_of_travelers < 1:
        raise ValidationError(
            detail="A booking needs at least one traveler",
            errors={"number_of_travelers": number_of_travelers},
        )

    base_amount = price_per_traveler * number_of_travelers
    add_ons_total = sum(line.line_total for line in add_ons)
    return BookingQuote(
        base_amount=base_amount,
        add_ons_total=add_ons_total,
        total_price=base_amount + add_ons_total,
        add_ons=tuple(add_ons),
    )


def split_deposit(total_price: int, is_deposit_payment: bool, deposit_amount: Optional[int]) -> DepositSplit:
    """
    Validate a deposit election against a total.

    Raises:
        ValidationError: Unless 0 < deposit_amount < total_price
    """
    if not is_deposit_payment:
        return DepositSplit(False, None, None)

    if deposit_amount is None or deposit_amount <= 0 or deposit_amount >= total_price:
        raise ValidationError(
            detail="Deposit must be greater than zero and less than the total price",
            errors={"deposit_amount": deposit_amount, "total_price": total_price},
            code="INVALID_DEPOSIT",
        )

    return DepositSplit(True, deposit_amount, total_price - deposit_amount)


def card_fee(amount: int, rate: Decimal) -> int:
    """Card surcharge on an amount, rounded half up to the minor unit."""
    return int((Decimal(amount) * rate).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def charge_breakdown(
    total_price: int,
    is_deposit_payment: bool,
    deposit_amount: Optional[int],
    with_card_fee: bool,
    fee_rate: Decimal,
) -> ChargeBreakdown:
    """Amount due now: the deposit or the full total, plus the card fee when paying by card."""
    base_amount = deposit_amount if is_deposit_payment and deposit_amount else total_price
    rate = fee_rate if with_card_fee else Decimal("0")
    fee_amount = card_fee(base_amount, rate)
    return ChargeBreakdown(
        base_amount=base_amount,
        fee_amount=fee_amount,
        fee_rate=rate,
        total_charged=base_amount + fee_amount,
        is_deposit_payment=bool(is_deposit_payment and deposit_amount),
    )


def max_client_amount(total_price: int, multiplier: int = 3, floor: int = 100000) -> int:
    """Largest client-declared amount accepted before it is treated as tampered."""
    return max(multiplier * total_price, floor)
