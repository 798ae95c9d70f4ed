"""Webhook router for payment processor events."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.database import get_db
from ..core.dependencies import get_payment_gateway
from ..schemas.payment import WebhookAck
from ..services.confirmation_service import ConfirmationService
from ..services.payment_gateway import PaymentGateway

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/webhook", tags=["webhook"])

# Define dependencies to avoid B008 linting errors
DB_DEPENDENCY = Depends(get_db)
GATEWAY_DEPENDENCY = Depends(get_payment_gateway)
SIGNATURE_HEADER = Header(None, alias="Stripe-Signature")


@router.post("/stripe", response_model=WebhookAck)
async def stripe_webhook(
    request: Request,
    db: AsyncSession = DB_DEPENDENCY,
    gateway: PaymentGateway = GATEWAY_DEPENDENCY,
    stripe_signature: Optional[str] = SIGNATURE_HEADER,
) -> JSONResponse:
    """
    Receive a signed processor event.

    The signature is checked against the raw body before anything is parsed.
    Failures to record a payment surface as 5xx so the processor redelivers.
    """
    payload = await request.body()
    event = gateway.parse_webhook_event(payload, stripe_signature)

    logger.info(
        "Webhook event received",
        extra={"event_id": event.get("id"), "event_type": event.get("type")}
    )

    confirmation_service = ConfirmationService(db, gateway)
    result = await confirmation_service.handle_webhook_event(event)
    response_data = WebhookAck(event_type=result.event_type, handled=result.handled)

    return JSONResponse(
        status_code=200,
        content=response_data.model_dump(mode="json")
    )
