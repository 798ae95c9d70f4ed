"""Models module exporting all database models."""

from .booking import ACTIVE_BOOKING_STATUSES, Booking, BookingAddOn, BookingStatus, Traveler
from .departure import Departure, DepartureStatus
from .inventory import InventoryLedgerEntry
from .notification import Notification
from .payment import Payment, PaymentMethod, PaymentStatus
from .tour import AddOn, Tour

__all__ = [
    # Catalog entities
    "Tour",
    "AddOn",
    "Departure",
    "DepartureStatus",

    # Booking entities
    "Booking",
    "BookingStatus",
    "ACTIVE_BOOKING_STATUSES",
    "Traveler",
    "BookingAddOn",

    # Payment entity
    "Payment",
    "PaymentMethod",
    "PaymentStatus",

    # Audit and messaging
    "InventoryLedgerEntry",
    "Notification",
]
