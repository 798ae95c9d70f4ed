"""Notification service for in-app messages."""

import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from ..models.notification import Notification

logger = logging.getLogger(__name__)

BOOKING_CREATED = "BOOKING_CREATED"
BOOKING_CONFIRMED = "BOOKING_CONFIRMED"
BOOKING_CANCELLED = "BOOKING_CANCELLED"
BANK_TRANSFER_SUBMITTED = "BANK_TRANSFER_SUBMITTED"
BANK_TRANSFER_REJECTED = "BANK_TRANSFER_REJECTED"
PAYMENT_REFUNDED = "PAYMENT_REFUNDED"


class NotificationService:
    """
    Best-effort delivery of user notifications.

    Called only after the business change has committed, so a failure here
    rolls back nothing but the notification itself. Failures are logged and
    never reach the caller.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def notify(
        self,
        user_id: str,
        type_: str,
        title: str,
        message: str,
        link: Optional[str] = None,
    ) -> bool:
        """
        Store a notification for a user.

        Returns:
            True when the notification was stored
        """
        try:
            self.db.add(Notification(
                user_id=user_id,
                type=type_,
                title=title,
                message=message,
                link=link,
            ))
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            logger.warning(
                "Failed to store notification",
                extra={"user_id": user_id, "notification_type": type_},
                exc_info=True,
            )
            return False

        logger.debug(
            "Notification stored",
            extra={"user_id": user_id, "notification_type": type_}
        )
        return True
