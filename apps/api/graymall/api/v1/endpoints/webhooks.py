"""
Webhook Endpoints
Stripe payment, refund, subscription and Connect account events

Stripe retries any non-2xx response, so only failures that a redelivery
could fix answer 500. Duplicates and ignored event types answer 200.
"""

from typing import Optional

import structlog
from fastapi import APIRouter, Depends, Header, Request
from sqlalchemy.ext.asyncio import async_sessionmaker

from graymall.core.config import settings
from graymall.core.database import get_session_factory
from graymall.schemas.response import ErrorCodes, ErrorMessages, api_error
from graymall.services.payments import StripeError, StripeService, get_stripe_service
from graymall.services.reconciliation import process_stripe_event

logger = structlog.get_logger()
router = APIRouter()


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
    session_factory: async_sessionmaker = Depends(get_session_factory),
    stripe_service: StripeService = Depends(get_stripe_service),
):
    """
    Handle Stripe webhook events.

    Events handled:
    - checkout.session.completed: article order paid, or subscription started
    - payment_intent.succeeded: article order paid
    - charge.refunded: order refunded (full or partial)
    - customer.subscription.created / updated / deleted: premium status
    - account.updated: cached payout account flags
    """
    if not settings.STRIPE_WEBHOOK_SECRET:
        logger.error("Stripe webhook secret not configured")
        api_error(500, ErrorCodes.PAYMENT_NOT_CONFIGURED, ErrorMessages.PAYMENT_NOT_CONFIGURED)

    payload = await request.body()
    if not payload:
        api_error(400, ErrorCodes.INVALID_INPUT, ErrorMessages.EMPTY_PAYLOAD)

    if not stripe_signature:
        logger.warning("Stripe webhook without signature header")
        api_error(400, ErrorCodes.INVALID_SIGNATURE, ErrorMessages.INVALID_SIGNATURE)

    try:
        event = stripe_service.construct_webhook_event(payload, stripe_signature)
    except StripeError as e:
        # Log the failure but don't expose details
        logger.warning("Stripe webhook signature verification failed", error_type=type(e).__name__)
        api_error(400, ErrorCodes.INVALID_SIGNATURE, ErrorMessages.INVALID_SIGNATURE)
    except ValueError as e:
        logger.warning("Stripe webhook payload parsing failed", error=str(e))
        api_error(400, ErrorCodes.INVALID_INPUT, ErrorMessages.INVALID_INPUT)

    try:
        result = await process_stripe_event(session_factory, event)
    except Exception as e:
        logger.error(
            "Stripe webhook processing failed",
            event_id=event.get("id"),
            event_type=event.get("type"),
            error=str(e),
            error_type=type(e).__name__,
        )
        api_error(500, ErrorCodes.WEBHOOK_PROCESSING_ERROR, ErrorMessages.WEBHOOK_PROCESSING_ERROR)

    return {"status": "received", "result": result}
