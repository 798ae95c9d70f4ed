"""Service layer package."""

from .bank_transfer_service import BankTransferService
from .booking_service import BookingService
from .confirmation_service import ConfirmationService
from .departure_service import DepartureService
from .inventory_service import InventoryService
from .notification_service import NotificationService
from .payment_gateway import PaymentGateway
from .payment_service import PaymentService
from .stripe_gateway import StripePaymentGateway
from .tour_service import TourService

__all__ = [
    "BankTransferService",
    "BookingService",
    "ConfirmationService",
    "DepartureService",
    "InventoryService",
    "NotificationService",
    "PaymentGateway",
    "PaymentService",
    "StripePaymentGateway",
    "TourService",
]
