"""Subscription service — persistence of a user's billing and entitlement state."""

import logging
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.billing.access import map_stripe_status
from app.billing.stripe_client import create_customer
from app.models.subscription import Subscription, SubscriptionStatus
from app.models.user import User

logger = logging.getLogger(__name__)


async def get_or_create_subscription(
    db: AsyncSession, user: User
) -> Subscription:
    """Get existing subscription or provision a free, unsubscribed one for the user."""
    result = await db.execute(
        select(Subscription).where(Subscription.user_id == user.id)
    )
    subscription = result.scalar_one_or_none()

    if subscription is not None:
        return subscription

    logger.info("Provisioning free subscription for user %s", user.id)
    subscription = Subscription(
        user_id=user.id,
        plan="free",
        status="none",
        status_enum=SubscriptionStatus.UNSUBSCRIBED,
        payment_method_on_file=False,
        cancel_at_period_end=False,
    )
    db.add(subscription)
    await db.flush()
    return subscription


async def get_subscription_by_stripe_customer(
    db: AsyncSession, stripe_customer_id: str | None
) -> Subscription | None:
    """Look up subscription by Stripe customer ID (used by webhooks)."""
    if not stripe_customer_id:
        return None
    result = await db.execute(
        select(Subscription).where(
            Subscription.stripe_customer_id == stripe_customer_id
        )
    )
    return result.scalar_one_or_none()


async def get_subscription_by_stripe_subscription(
    db: AsyncSession, stripe_subscription_id: str | None
) -> Subscription | None:
    """Look up subscription by Stripe subscription ID (used by webhooks)."""
    if not stripe_subscription_id:
        return None
    result = await db.execute(
        select(Subscription).where(
            Subscription.stripe_subscription_id == stripe_subscription_id
        )
    )
    return result.scalar_one_or_none()


async def ensure_stripe_customer(
    db: AsyncSession, user: User, subscription: Subscription
) -> str:
    """Ensure the user has a Stripe customer ID. Create one if missing."""
    if subscription.stripe_customer_id:
        return subscription.stripe_customer_id

    customer = await create_customer(
        email=user.email,
        name=user.name,
        user_id=str(user.id),
    )
    subscription.stripe_customer_id = customer.id
    await db.flush()
    logger.info(
        "Linked Stripe customer %s to user %s", customer.id, user.id
    )
    return customer.id


# ---------------------------------------------------------------------------
# Plan-change claim (compare-and-set on last_plan_change_at)
# ---------------------------------------------------------------------------


def _last_change_matches(expected: datetime | None):
    if expected is None:
        return Subscription.last_plan_change_at.is_(None)
    return Subscription.last_plan_change_at == expected


async def claim_plan_change(
    db: AsyncSession,
    subscription: Subscription,
    pending_plan: str,
    billing_period: str,
    expected_last_change_at: datetime | None,
    now: datetime,
) -> bool:
    """Record a pending plan only if nobody changed the plan since we read the row.

    Returns False when another request won the race; the row is then left
    untouched.
    """
    result = await db.execute(
        update(Subscription)
        .where(
            Subscription.id == subscription.id,
            _last_change_matches(expected_last_change_at),
        )
        .values(
            pending_plan=pending_plan,
            last_plan_change_at=now,
            billing_period=billing_period,
        )
        .execution_options(synchronize_session=False)
    )
    await db.refresh(subscription)
    claimed = result.rowcount == 1
    if not claimed:
        logger.warning(
            "Plan change claim lost for subscription %s (concurrent change)",
            subscription.id,
        )
    return claimed


async def release_plan_change(
    db: AsyncSession,
    subscription: Subscription,
    previous_pending_plan: str | None,
    previous_last_change_at: datetime | None,
    claimed_at: datetime,
) -> bool:
    """Undo a claim made at ``claimed_at`` (used when Stripe rejects the switch)."""
    result = await db.execute(
        update(Subscription)
        .where(
            Subscription.id == subscription.id,
            Subscription.last_plan_change_at == claimed_at,
        )
        .values(
            pending_plan=previous_pending_plan,
            last_plan_change_at=previous_last_change_at,
        )
        .execution_options(synchronize_session=False)
    )
    await db.refresh(subscription)
    return result.rowcount == 1


# ---------------------------------------------------------------------------
# Webhook-driven state transitions
# ---------------------------------------------------------------------------


async def update_subscription_from_stripe(
    db: AsyncSession,
    subscription: Subscription,
    stripe_subscription_id: str,
    status: str,
    plan: str | None = None,
    trial_ends_at: datetime | None = None,
    current_period_start: datetime | None = None,
    renewal_at: datetime | None = None,
    cancel_at_period_end: bool = False,
) -> Subscription:
    """Resync the local record from a Stripe subscription object.

    ``plan`` is only applied when no plan change is pending; pending plans
    are promoted by a successful invoice instead.
    """
    subscription.stripe_subscription_id = stripe_subscription_id
    subscription.status = status
    subscription.status_enum = map_stripe_status(status)
    subscription.trial_ends_at = trial_ends_at
    subscription.current_period_start = current_period_start
    subscription.renewal_at = renewal_at
    subscription.cancel_at_period_end = cancel_at_period_end
    if plan and subscription.pending_plan is None:
        subscription.plan = plan
    await db.flush()

    logger.info(
        "Synced subscription %s: plan=%s, pending=%s, status=%s",
        subscription.id,
        subscription.plan,
        subscription.pending_plan,
        status,
    )
    return subscription


async def mark_payment_failed(db: AsyncSession, subscription: Subscription) -> Subscription:
    """Demote to past_due; access drops to minimal unless a trial covers it."""
    subscription.status = "past_due"
    subscription.status_enum = SubscriptionStatus.UNSUBSCRIBED
    await db.flush()
    logger.info("Subscription %s marked past_due after failed payment", subscription.id)
    return subscription


async def mark_payment_succeeded(
    db: AsyncSession,
    subscription: Subscription,
    renewal_at: datetime | None = None,
) -> Subscription:
    """Restore active status and promote any pending plan to the current plan."""
    subscription.status = "active"
    subscription.status_enum = SubscriptionStatus.SUBSCRIBED
    if renewal_at is not None:
        subscription.renewal_at = renewal_at

    promoted = subscription.pending_plan
    if promoted is not None:
        subscription.plan = promoted
        subscription.pending_plan = None
    await db.flush()

    if promoted:
        logger.info("Subscription %s promoted pending plan %s", subscription.id, promoted)
    else:
        logger.info("Subscription %s confirmed active", subscription.id)
    return subscription


async def mark_canceled(
    db: AsyncSession, subscription: Subscription, now: datetime
) -> Subscription:
    """Terminal cancellation: keeps the plan for history, clears forward-looking fields."""
    subscription.status = "canceled"
    subscription.status_enum = SubscriptionStatus.UNSUBSCRIBED
    subscription.pending_plan = None
    subscription.renewal_at = None
    subscription.cancel_at_period_end = False
    subscription.ends_at = now
    await db.flush()

    logger.info(
        "Subscription %s (user %s) canceled",
        subscription.id,
        subscription.user_id,
    )
    return subscription
