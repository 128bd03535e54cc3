"""Stripe webhook endpoint — receives and idempotently processes Stripe events."""

import logging

import stripe
from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_db
from app.billing.stripe_client import construct_webhook_event
from app.services.webhook_service import (
    WebhookInProgressError,
    WebhookProcessingError,
    process_webhook_event,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/webhooks", tags=["webhooks"])


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> dict[str, str]:
    """Receive and process Stripe webhook events.

    200 means Stripe can stop retrying (processed or already processed);
    400 means the delivery is not from Stripe; 500 asks Stripe to retry.
    """
    # 1. Read raw body (MUST be raw bytes for signature verification)
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature", "")

    # 2. Verify signature
    try:
        event = construct_webhook_event(payload, sig_header)
    except stripe.SignatureVerificationError as e:
        logger.warning("Webhook signature verification failed")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid signature",
        ) from e
    except ValueError as e:
        logger.warning("Invalid webhook payload")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid payload",
        ) from e

    logger.info("Received webhook event: %s (id=%s)", event.type, event.id)

    # 3. Apply at most once
    try:
        outcome = await process_webhook_event(db, event)
    except WebhookInProgressError as e:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook event is already being processed",
        ) from e
    except WebhookProcessingError as e:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook processing failed",
        ) from e

    return {"status": outcome.status, "event_id": outcome.event_id}
