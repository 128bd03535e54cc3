"""Webhook service — apply each Stripe event at most once.

Event log states::

    (unseen) -> recorded -> processing -> processed
                            processing -> failed -> processing   (Stripe retries)

A delivery may only apply effects after it moves the row into ``processing``
with a conditional update, so two deliveries of the same event can never
apply it concurrently. The claim is committed before any effect runs, and the
effects are committed together with the ``processed`` flag, so a crash in
between leaves the event retryable rather than half-applied. A claim older
than twice the processing timeout belongs to a dead worker and may be taken
over.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

import stripe
from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.billing.webhooks import apply_event_effects
from app.config import settings
from app.database import utcnow
from app.models.webhook_event import (
    EVENT_FAILED,
    EVENT_PROCESSED,
    EVENT_PROCESSING,
    EVENT_RECORDED,
    WebhookEventLog,
)

logger = logging.getLogger(__name__)

PROCESSED = "processed"
ALREADY_PROCESSED = "already_processed"

_MAX_ERROR_LENGTH = 2000


class WebhookProcessingError(Exception):
    """Applying an event failed; the event is marked failed and Stripe should retry."""

    def __init__(self, event_id: str, message: str) -> None:
        super().__init__(f"Webhook event {event_id} failed: {message}")
        self.event_id = event_id


class WebhookInProgressError(WebhookProcessingError):
    """Another delivery of the same event is applying it right now."""

    def __init__(self, event_id: str) -> None:
        super().__init__(event_id, "already in progress")


@dataclass(frozen=True)
class WebhookOutcome:
    event_id: str
    event_type: str
    status: str
    handled: bool = False


async def get_event_log(db: AsyncSession, event_id: str) -> WebhookEventLog | None:
    result = await db.execute(
        select(WebhookEventLog)
        .where(WebhookEventLog.stripe_event_id == event_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def _ensure_recorded(db: AsyncSession, event: stripe.Event) -> None:
    """Insert the ``recorded`` row for a first delivery and commit it."""
    if await get_event_log(db, event.id) is not None:
        return
    db.add(
        WebhookEventLog(
            stripe_event_id=event.id,
            event_type=event.type,
            status=EVENT_RECORDED,
            processed=False,
            attempts=0,
        )
    )
    try:
        await db.commit()
    except IntegrityError:
        # A concurrent delivery of the same event inserted first
        await db.rollback()


async def _claim(db: AsyncSession, event: stripe.Event, now: datetime) -> bool:
    """Move the row into ``processing``; False when another delivery holds it."""
    stale_before = now - timedelta(seconds=2 * settings.webhook_processing_timeout_seconds)
    result = await db.execute(
        update(WebhookEventLog)
        .where(
            WebhookEventLog.stripe_event_id == event.id,
            WebhookEventLog.processed.is_(False),
            or_(
                WebhookEventLog.status.in_((EVENT_RECORDED, EVENT_FAILED)),
                and_(
                    WebhookEventLog.status == EVENT_PROCESSING,
                    WebhookEventLog.claimed_at < stale_before,
                ),
            ),
        )
        .values(
            status=EVENT_PROCESSING,
            attempts=WebhookEventLog.attempts + 1,
            claimed_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return result.rowcount == 1


async def _mark_failed(db: AsyncSession, event: stripe.Event, exc: BaseException) -> None:
    log = await get_event_log(db, event.id)
    if log is None:
        return
    log.status = EVENT_FAILED
    log.processed = False
    log.error_message = f"{type(exc).__name__}: {exc}"[:_MAX_ERROR_LENGTH]
    await db.commit()


async def process_webhook_event(
    db: AsyncSession, event: stripe.Event, now: datetime | None = None
) -> WebhookOutcome:
    """Apply a verified Stripe event idempotently.

    Returns ``already_processed`` without touching any state for events that
    were processed before.

    Raises:
        WebhookInProgressError: Another delivery of this event holds the
            claim. Nothing was changed; Stripe should retry later.
        WebhookProcessingError: The effects failed or timed out. They have
            been rolled back and the event log row is marked ``failed``.
    """
    now = now or utcnow()

    log = await get_event_log(db, event.id)
    if log is not None and log.processed:
        logger.info("Webhook event %s (%s) already processed, skipping", event.id, event.type)
        return WebhookOutcome(event_id=event.id, event_type=event.type, status=ALREADY_PROCESSED)

    await _ensure_recorded(db, event)
    if not await _claim(db, event, now):
        log = await get_event_log(db, event.id)
        if log is not None and log.processed:
            return WebhookOutcome(event_id=event.id, event_type=event.type, status=ALREADY_PROCESSED)
        logger.warning("Webhook event %s (%s) is being processed by another delivery", event.id, event.type)
        raise WebhookInProgressError(event.id)

    log = await get_event_log(db, event.id)
    logger.info(
        "Processing webhook event %s (%s), attempt %d", event.id, event.type, log.attempts
    )

    try:
        async with asyncio.timeout(settings.webhook_processing_timeout_seconds):
            handled = await apply_event_effects(db, event, now)
        log.status = EVENT_PROCESSED
        log.processed = True
        log.processed_at = now
        log.error_message = None
        await db.commit()
    except Exception as exc:
        await db.rollback()
        logger.exception("Error processing webhook event %s (%s)", event.id, event.type)
        await _mark_failed(db, event, exc)
        raise WebhookProcessingError(event.id, type(exc).__name__) from exc

    logger.info("Webhook event %s (%s) processed", event.id, event.type)
    return WebhookOutcome(
        event_id=event.id, event_type=event.type, status=PROCESSED, handled=handled
    )
