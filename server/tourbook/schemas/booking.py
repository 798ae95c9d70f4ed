"""Booking-related Pydantic schemas."""

from datetime import date, datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from ..models.booking import BookingStatus
from ..models.payment import PaymentMethod, PaymentStatus
from .common import PageInfo


class TravelerInput(BaseModel):
    """Traveler details supplied when booking."""

    full_name: str = Field(..., min_length=1, max_length=255, description="Traveler name as on the passport")
    age: Optional[int] = Field(None, ge=0, le=130, description="Age in years")
    gender: Optional[str] = Field(None, max_length=20, description="Gender")
    passport_number: Optional[str] = Field(None, max_length=64, description="Passport number")
    dietary_requirements: Optional[str] = Field(None, description="Dietary requirements")


class AddOnSelection(BaseModel):
    """Add-on chosen by the traveler."""

    add_on_id: str = Field(..., description="Add-on ID from the tour catalog")
    quantity: int = Field(1, ge=1, description="Number of units")


class CreateBookingRequest(BaseModel):
    """
    Request schema for creating a booking.

    Exactly one of departure_id or start_date identifies the departure.
    Repeating the same request returns the existing active booking.
    """

    tour_id: str = Field(..., description="Tour to book")
    departure_id: Optional[str] = Field(None, description="Departure to book")
    start_date: Optional[date] = Field(None, description="Departure start date, used when departure_id is absent")
    adults: int = Field(1, ge=0, description="Number of adults")
    children: int = Field(0, ge=0, description="Number of children")
    infants: int = Field(0, ge=0, description="Number of infants")
    travelers: List[TravelerInput] = Field(default_factory=list, description="Traveler details")
    add_ons: List[AddOnSelection] = Field(default_factory=list, description="Selected add-ons")
    includes_flight: bool = Field(False, description="Whether flights are included")
    is_deposit_payment: bool = Field(False, description="Pay a deposit now and the balance later")
    deposit_amount: Optional[int] = Field(None, description="Deposit in minor units")
    special_requests: Optional[str] = Field(None, max_length=2000, description="Free-form requests")


class GetBookingRequest(BaseModel):
    """Request schema for getting a booking."""

    booking_id: str = Field(..., description="Booking to retrieve")


class ListBookingsRequest(BaseModel):
    """Request schema for listing the caller's bookings."""

    status: Optional[BookingStatus] = Field(None, description="Only bookings in this status")
    page: int = Field(1, ge=1, description="Page number")
    limit: int = Field(10, ge=1, le=100, description="Page size")


class CancelBookingRequest(BaseModel):
    """Request schema for cancelling a booking."""

    booking_id: str = Field(..., description="Booking to cancel")
    reason: Optional[str] = Field(None, max_length=1000, description="Cancellation reason")


class UpdateBookingStatusRequest(BaseModel):
    """Request schema for an administrator status override."""

    booking_id: str = Field(..., description="Booking to update")
    status: BookingStatus = Field(..., description="Target status")
    reason: Optional[str] = Field(None, max_length=1000, description="Reason recorded on cancellation")


class Traveler(BaseModel):
    """Traveler response schema."""

    full_name: str = Field(..., description="Traveler name")
    age: Optional[int] = Field(None, description="Age in years")
    gender: Optional[str] = Field(None, description="Gender")
    passport_number: Optional[str] = Field(None, description="Passport number")
    dietary_requirements: Optional[str] = Field(None, description="Dietary requirements")

    class Config:
        from_attributes = True


class BookedAddOn(BaseModel):
    """Add-on line as priced at booking time."""

    add_on_id: str = Field(..., description="Catalog add-on ID")
    name: str = Field(..., description="Add-on name")
    quantity: int = Field(..., ge=1, description="Units booked")
    unit_price: int = Field(..., ge=0, description="Unit price in minor units")
    line_total: int = Field(..., ge=0, description="unit_price x quantity")


class PaymentSummary(BaseModel):
    """Payment state embedded in a booking response."""

    id: str = Field(..., description="Payment ID")
    payment_number: str = Field(..., description="Human-readable payment number")
    payment_method: PaymentMethod = Field(..., description="Payment method")
    status: PaymentStatus = Field(..., description="Payment status")
    amount: int = Field(..., ge=0, description="Charged amount in minor units")
    currency: str = Field(..., description="ISO 4217 currency code")
    paid_at: Optional[datetime] = Field(None, description="When the payment completed")


class Booking(BaseModel):
    """Booking response schema."""

    id: str = Field(..., description="Unique booking ID")
    booking_number: str = Field(..., description="Human-readable booking number")
    user_id: str = Field(..., description="Owner")
    tour_id: str = Field(..., description="Booked tour")
    tour_title: Optional[str] = Field(None, description="Tour title")
    departure_id: str = Field(..., description="Booked departure")
    starts_at: Optional[datetime] = Field(None, description="Departure start time")
    adults: int = Field(..., ge=0)
    children: int = Field(..., ge=0)
    infants: int = Field(..., ge=0)
    number_of_travelers: int = Field(..., ge=1, description="Seats held by this booking")
    includes_flight: bool = Field(..., description="Whether flights are included")
    total_price: int = Field(..., ge=0, description="Total price in minor units")
    add_ons_total: int = Field(..., ge=0, description="Add-on subtotal in minor units")
    currency: str = Field(..., description="ISO 4217 currency code")
    is_deposit_payment: bool = Field(..., description="Whether a deposit is paid first")
    deposit_amount: Optional[int] = Field(None, description="Deposit in minor units")
    remaining_balance: Optional[int] = Field(None, description="Balance after the deposit")
    status: BookingStatus = Field(..., description="Booking status")
    special_requests: Optional[str] = Field(None)
    cancellation_reason: Optional[str] = Field(None)
    cancelled_at: Optional[datetime] = Field(None)
    confirmed_at: Optional[datetime] = Field(None)
    created_at: datetime = Field(..., description="Booking creation time (ISO 8601)")
    travelers: List[Traveler] = Field(default_factory=list)
    add_ons: List[BookedAddOn] = Field(default_factory=list)
    payment: Optional[PaymentSummary] = Field(None, description="Payment state, once a payment exists")
    is_existing: bool = Field(False, description="True when an active booking was returned instead of creating one")

    class Config:
        from_attributes = True


class BookingList(BaseModel):
    """Paginated booking list."""

    items: List[Booking] = Field(..., description="Bookings, newest first")
    pagination: PageInfo = Field(..., description="Pagination metadata")
