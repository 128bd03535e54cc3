"""Stripe webhook event handlers — apply subscription lifecycle events.

Handlers work from the event payload only; they never call back into the
Stripe API, so a replayed event always produces the same local state.
"""

import logging
from collections.abc import Awaitable, Callable
from datetime import datetime

import stripe
from sqlalchemy.ext.asyncio import AsyncSession

from app.billing.plans import get_catalog
from app.billing.stripe_client import ts_to_naive
from app.models.subscription import Subscription
from app.services.subscription_service import (
    get_subscription_by_stripe_customer,
    get_subscription_by_stripe_subscription,
    mark_canceled,
    mark_payment_failed,
    mark_payment_succeeded,
    update_subscription_from_stripe,
)

logger = logging.getLogger(__name__)

EventHandler = Callable[[AsyncSession, stripe.Event, datetime], Awaitable[None]]


def _dig(obj, *names: str):
    """Follow an attribute path on a Stripe object, None if any step is missing."""
    for name in names:
        if obj is None:
            return None
        obj = getattr(obj, name, None)
    return obj


def _get_first_item(stripe_sub: stripe.Subscription):
    """Get the first subscription item, using bracket notation to avoid
    collision with Python dict .items() in newer Stripe API versions.
    """
    try:
        sub_items = stripe_sub["items"]
    except (AttributeError, KeyError, TypeError):
        return None
    if sub_items and sub_items.data:
        return sub_items.data[0]
    return None


def _get_price_id_from_subscription(stripe_sub: stripe.Subscription) -> str | None:
    item = _get_first_item(stripe_sub)
    return _dig(item, "price", "id")


def _get_period(stripe_sub: stripe.Subscription) -> tuple[datetime | None, datetime | None]:
    """Extract current period start/end.

    In Stripe API 2025-08-27 (basil), current_period_start/end moved from the
    subscription object to the subscription item; older payloads carry them
    at the top level.
    """
    item = _get_first_item(stripe_sub)
    start = _dig(item, "current_period_start") or getattr(stripe_sub, "current_period_start", None)
    end = _dig(item, "current_period_end") or getattr(stripe_sub, "current_period_end", None)
    return ts_to_naive(start), ts_to_naive(end)


def _invoice_subscription_id(invoice) -> str | None:
    subscription_id = getattr(invoice, "subscription", None)
    if subscription_id is None:
        subscription_id = _dig(invoice, "parent", "subscription_details", "subscription")
    if subscription_id is not None and not isinstance(subscription_id, str):
        subscription_id = getattr(subscription_id, "id", None)
    return subscription_id


def _invoice_period_end(invoice) -> datetime | None:
    lines = _dig(invoice, "lines", "data") or []
    if not lines:
        return None
    return ts_to_naive(_dig(lines[0], "period", "end"))


async def _find_subscription(
    db: AsyncSession, subscription_id: str | None, customer_id: str | None
) -> Subscription | None:
    # Try lookup by subscription ID first, then by customer ID
    subscription = await get_subscription_by_stripe_subscription(db, subscription_id)
    if subscription is None:
        subscription = await get_subscription_by_stripe_customer(db, customer_id)
    return subscription


async def handle_invoice_payment_failed(
    db: AsyncSession, event: stripe.Event, now: datetime
) -> None:
    """Handle invoice.payment_failed — mark subscription as past_due.

    A pending plan stays pending; it is promoted once a later invoice succeeds.
    """
    invoice = event.data.object
    subscription_id = _invoice_subscription_id(invoice)
    customer_id = getattr(invoice, "customer", None)

    subscription = await _find_subscription(db, subscription_id, customer_id)
    if subscription is None:
        logger.warning(
            "No local subscription for Stripe subscription %s / customer %s (payment failed)",
            subscription_id,
            customer_id,
        )
        return

    await mark_payment_failed(db, subscription)


async def handle_invoice_payment_succeeded(
    db: AsyncSession, event: stripe.Event, now: datetime
) -> None:
    """Handle invoice.payment_succeeded — restore access and promote the pending plan."""
    invoice = event.data.object
    subscription_id = _invoice_subscription_id(invoice)
    customer_id = getattr(invoice, "customer", None)

    if not subscription_id and not customer_id:
        logger.info("Invoice %s has no subscription or customer, skipping", invoice.id)
        return

    subscription = await _find_subscription(db, subscription_id, customer_id)
    if subscription is None:
        logger.warning(
            "No local subscription for Stripe subscription %s / customer %s (invoice %s)",
            subscription_id,
            customer_id,
            invoice.id,
        )
        return

    await mark_payment_succeeded(db, subscription, renewal_at=_invoice_period_end(invoice))


async def handle_subscription_updated(
    db: AsyncSession, event: stripe.Event, now: datetime
) -> None:
    """Handle customer.subscription.created/updated — sync status, trial and period."""
    stripe_sub = event.data.object
    subscription_id = stripe_sub.id
    customer_id = getattr(stripe_sub, "customer", None)

    subscription = await _find_subscription(db, subscription_id, customer_id)
    if subscription is None:
        logger.warning(
            "No local subscription found for Stripe subscription %s (customer %s)",
            subscription_id,
            customer_id,
        )
        return

    price_id = _get_price_id_from_subscription(stripe_sub)
    plan = get_catalog().plan_for_price_id(price_id)
    if price_id and plan is None:
        logger.warning("Unknown price ID %s in subscription %s", price_id, subscription_id)

    period_start, period_end = _get_period(stripe_sub)
    await update_subscription_from_stripe(
        db,
        subscription=subscription,
        stripe_subscription_id=subscription_id,
        status=stripe_sub.status,
        plan=plan,
        trial_ends_at=ts_to_naive(getattr(stripe_sub, "trial_end", None)),
        current_period_start=period_start,
        renewal_at=period_end,
        cancel_at_period_end=bool(getattr(stripe_sub, "cancel_at_period_end", False)),
    )


async def handle_subscription_deleted(
    db: AsyncSession, event: stripe.Event, now: datetime
) -> None:
    """Handle customer.subscription.deleted — terminal cancellation."""
    stripe_sub = event.data.object
    subscription_id = stripe_sub.id

    subscription = await _find_subscription(db, subscription_id, getattr(stripe_sub, "customer", None))
    if subscription is None:
        logger.warning(
            "No local subscription found for Stripe subscription %s (delete event)",
            subscription_id,
        )
        return

    await mark_canceled(db, subscription, now)


EVENT_HANDLERS: dict[str, EventHandler] = {
    "invoice.payment_failed": handle_invoice_payment_failed,
    "invoice.payment_succeeded": handle_invoice_payment_succeeded,
    "customer.subscription.created": handle_subscription_updated,
    "customer.subscription.updated": handle_subscription_updated,
    "customer.subscription.deleted": handle_subscription_deleted,
}


async def apply_event_effects(db: AsyncSession, event: stripe.Event, now: datetime) -> bool:
    """Run the handler for ``event.type``. Returns False for unhandled types."""
    handler = EVENT_HANDLERS.get(event.type)
    if handler is None:
        logger.info("Unhandled webhook event type: %s", event.type)
        return False
    await handler(db, event, now)
    return True
