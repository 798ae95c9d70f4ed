"""FastAPI routers package."""

from .admin import router as admin_router
from .booking import router as booking_router
from .metrics import router as metrics_router
from .payment import router as payment_router
from .webhook import router as webhook_router

__all__ = [
    "admin_router",
    "booking_router",
    "metrics_router",
    "payment_router",
    "webhook_router",
]
