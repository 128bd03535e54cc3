"""Billing service — user-initiated subscription changes and the billing-state view.

Every Stripe call is awaited inline; a provider failure is logged with its
full detail and surfaced to the caller as ``BILLING_PROVIDER_ERROR``.
"""

import logging
from datetime import datetime

import stripe
from sqlalchemy.ext.asyncio import AsyncSession

from app.billing import stripe_client
from app.billing.access import access_for_subscription, map_stripe_status
from app.billing.plan_change import (
    PLAN_CHANGE_COOLDOWN,
    days_until_next_change,
    evaluate_plan_change,
)
from app.billing.plans import (
    PlanCatalog,
    compare_plans,
    get_catalog,
    parse_billing_period,
    parse_plan,
)
from app.billing.stripe_client import BillingConfigurationError
from app.config import settings
from app.database import utcnow
from app.models.subscription import Subscription
from app.models.user import User
from app.schemas.billing import BillingStateResponse, UsageCounter, UsageSummary
from app.services.results import BILLING_PROVIDER_MESSAGE, ServiceResult
from app.services.subscription_service import (
    claim_plan_change,
    ensure_stripe_customer,
    release_plan_change,
)
from app.services.usage_service import get_usage

logger = logging.getLogger(__name__)

CANCEL_CONFIRMATION = "UNSUBSCRIBE"

# Stripe subscription statuses that still count as an existing subscription
_LIVE_STRIPE_STATUSES = frozenset({"active", "trialing", "past_due", "cancels_at_period_end"})


def _provider_error(action: str) -> ServiceResult:
    return ServiceResult.error(
        "BILLING_PROVIDER_ERROR",
        BILLING_PROVIDER_MESSAGE,
        502,
        action=action,
    )


def _price_id_for(catalog: PlanCatalog, plan: str, billing_period: str) -> str:
    price_id = catalog[plan].price_id(billing_period)
    if not price_id:
        raise BillingConfigurationError(
            f"No Stripe price configured for plan {plan!r} ({billing_period})"
        )
    return price_id


async def _release_claim(
    db: AsyncSession,
    subscription: Subscription,
    previous_pending: str | None,
    previous_last_change: datetime | None,
    claimed_at: datetime,
) -> None:
    # Committed here: the request session rolls back when the error propagates
    await release_plan_change(
        db, subscription, previous_pending, previous_last_change, claimed_at=claimed_at
    )
    await db.commit()


# ---------------------------------------------------------------------------
# Plan change
# ---------------------------------------------------------------------------


async def request_plan_change(
    db: AsyncSession,
    subscription: Subscription,
    new_plan: str,
    billing_period: str | None = "monthly",
    now: datetime | None = None,
    catalog: PlanCatalog | None = None,
) -> ServiceResult:
    """Request a switch to ``new_plan`` from the next billing period.

    Only ``pending_plan``, ``last_plan_change_at`` and ``billing_period`` are
    written here; the current plan changes when the next invoice succeeds.
    """
    now = now or utcnow()
    catalog = catalog or get_catalog()

    try:
        plan = parse_plan(new_plan)
        period = parse_billing_period(billing_period)
    except ValueError as e:
        return ServiceResult.error("INVALID_PLAN", str(e), 400)

    if plan == "free":
        return ServiceResult.error(
            "INVALID_PLAN",
            "Cancel your subscription to return to the free plan.",
            400,
        )

    if not subscription.stripe_subscription_id:
        return ServiceResult.error(
            "NO_SUBSCRIPTION", "No active subscription found.", 404
        )

    read_last_change = subscription.last_plan_change_at
    read_pending = subscription.pending_plan
    decision = evaluate_plan_change(
        subscription.plan, read_pending, plan, read_last_change, now
    )
    if not decision.accepted:
        status_code = 403 if decision.code == PLAN_CHANGE_COOLDOWN else 400
        return ServiceResult.error(
            decision.code,
            decision.message,
            status_code,
            days_remaining=decision.days_remaining,
        )

    # Configuration problems surface before anything is claimed
    price_id = _price_id_for(catalog, plan, period)
    stripe_client.get_stripe_client()

    claimed = await claim_plan_change(
        db, subscription, plan, period, expected_last_change_at=read_last_change, now=now
    )
    if not claimed:
        remaining = days_until_next_change(subscription.last_plan_change_at, now)
        return ServiceResult.error(
            PLAN_CHANGE_COOLDOWN,
            "Another plan change was just made. Try again later.",
            403,
            days_remaining=remaining,
        )
    # Publish the claim before the provider call so the row is not held locked
    await db.commit()

    try:
        await stripe_client.switch_subscription_price(
            subscription.stripe_subscription_id, price_id
        )
    except (stripe.StripeError, ValueError):
        logger.exception(
            "Stripe rejected plan switch to %s for subscription %s",
            plan,
            subscription.stripe_subscription_id,
        )
        await _release_claim(db, subscription, read_pending, read_last_change, now)
        return _provider_error("switch_plan")
    except Exception:
        logger.exception(
            "Plan switch to %s failed for subscription %s; releasing claim",
            plan,
            subscription.stripe_subscription_id,
        )
        await _release_claim(db, subscription, read_pending, read_last_change, now)
        raise

    change = compare_plans(subscription.plan, plan)
    logger.info(
        "User %s requested plan %s %s -> %s (%s)",
        subscription.user_id,
        change,
        subscription.plan,
        plan,
        period,
    )
    return ServiceResult.ok(
        "PLAN_CHANGE_PENDING",
        decision.message,
        plan=subscription.plan or "free",
        pending_plan=plan,
        change=change,
        billing_period=period,
        last_plan_change_at=now,
    )


# ---------------------------------------------------------------------------
# Subscription lifecycle
# ---------------------------------------------------------------------------


async def subscribe(
    db: AsyncSession,
    user: User,
    subscription: Subscription,
    plan: str,
    billing_period: str | None = "monthly",
    catalog: PlanCatalog | None = None,
) -> ServiceResult:
    """Start a paid subscription (with the trial) for a user without one."""
    catalog = catalog or get_catalog()
    try:
        plan_name = parse_plan(plan)
        period = parse_billing_period(billing_period)
    except ValueError as e:
        return ServiceResult.error("INVALID_PLAN", str(e), 400)

    if plan_name == "free":
        return ServiceResult.error("INVALID_PLAN", "The free plan needs no subscription.", 400)

    if subscription.stripe_subscription_id and subscription.status in _LIVE_STRIPE_STATUSES:
        return ServiceResult.error(
            "ALREADY_SUBSCRIBED",
            "You already have a subscription. Use switch-plan to change plans.",
            409,
        )

    if not subscription.payment_method_on_file and not subscription.stripe_payment_method_id:
        return ServiceResult.error(
            "PAYMENT_METHOD_REQUIRED",
            "Please add a payment method before subscribing.",
            400,
        )

    price_id = _price_id_for(catalog, plan_name, period)

    try:
        customer_id = await ensure_stripe_customer(db, user, subscription)
        stripe_sub = await stripe_client.create_subscription(
            customer_id, price_id, trial_period_days=settings.trial_period_days
        )
    except stripe.StripeError:
        logger.exception("Stripe subscription creation failed for user %s", user.id)
        return _provider_error("subscribe")

    trial_ends_at = stripe_client.ts_to_naive(getattr(stripe_sub, "trial_end", None))
    subscription.stripe_subscription_id = stripe_sub.id
    subscription.plan = plan_name
    subscription.pending_plan = None
    subscription.billing_period = period
    subscription.status = stripe_sub.status
    subscription.status_enum = map_stripe_status(stripe_sub.status)
    subscription.trial_ends_at = trial_ends_at
    subscription.cancel_at_period_end = False
    subscription.ends_at = None
    await db.flush()

    logger.info(
        "User %s subscribed to %s (%s), Stripe subscription %s",
        user.id,
        plan_name,
        period,
        stripe_sub.id,
    )
    return ServiceResult.ok(
        "SUBSCRIBED",
        "Subscription created.",
        subscription_id=stripe_sub.id,
        plan=plan_name,
        billing_period=period,
        status=stripe_sub.status,
        trial_ends_at=trial_ends_at,
    )


async def cancel_subscription(
    db: AsyncSession,
    subscription: Subscription,
    confirmation: str | None,
    cancel_at_period_end: bool = True,
    now: datetime | None = None,
) -> ServiceResult:
    """Cancel at period end (default) or immediately; requires the typed confirmation."""
    now = now or utcnow()
    if (confirmation or "").strip() != CANCEL_CONFIRMATION:
        return ServiceResult.error(
            "CONFIRMATION_REQUIRED",
            f'You must type "{CANCEL_CONFIRMATION}" to confirm cancellation.',
            400,
        )

    if not subscription.stripe_subscription_id:
        return ServiceResult.error("NO_SUBSCRIPTION", "No active subscription found.", 404)

    try:
        if cancel_at_period_end:
            await stripe_client.set_cancel_at_period_end(subscription.stripe_subscription_id, True)
        else:
            await stripe_client.cancel_subscription_now(subscription.stripe_subscription_id)
    except stripe.StripeError:
        logger.exception(
            "Stripe cancellation failed for subscription %s", subscription.stripe_subscription_id
        )
        return _provider_error("cancel")

    if cancel_at_period_end:
        subscription.status = "cancels_at_period_end"
        subscription.cancel_at_period_end = True
        subscription.ends_at = subscription.renewal_at
    else:
        subscription.status = "canceled"
        subscription.cancel_at_period_end = False
        subscription.pending_plan = None
        subscription.ends_at = now
    subscription.status_enum = map_stripe_status(subscription.status)
    await db.flush()

    logger.info(
        "User %s canceled subscription %s (at_period_end=%s)",
        subscription.user_id,
        subscription.stripe_subscription_id,
        cancel_at_period_end,
    )
    return ServiceResult.ok(
        "SUBSCRIPTION_CANCELED",
        "Subscription canceled.",
        subscription_id=subscription.stripe_subscription_id,
        status=subscription.status,
        cancel_at_period_end=subscription.cancel_at_period_end,
        ends_at=subscription.ends_at,
    )


async def reactivate_subscription(db: AsyncSession, subscription: Subscription) -> ServiceResult:
    """Undo a scheduled cancel-at-period-end."""
    if not subscription.stripe_subscription_id:
        return ServiceResult.error("NO_SUBSCRIPTION", "No active subscription found.", 404)

    if not subscription.cancel_at_period_end:
        return ServiceResult.error(
            "NOT_CANCELED", "Subscription is not scheduled for cancellation.", 409
        )

    try:
        stripe_sub = await stripe_client.set_cancel_at_period_end(
            subscription.stripe_subscription_id, False
        )
    except stripe.StripeError:
        logger.exception(
            "Stripe reactivation failed for subscription %s", subscription.stripe_subscription_id
        )
        return _provider_error("reactivate")

    subscription.status = stripe_sub.status
    subscription.status_enum = map_stripe_status(stripe_sub.status)
    subscription.cancel_at_period_end = False
    subscription.ends_at = None
    await db.flush()

    logger.info("Subscription %s reactivated", subscription.stripe_subscription_id)
    return ServiceResult.ok(
        "SUBSCRIPTION_REACTIVATED",
        "Subscription reactivated.",
        subscription_id=subscription.stripe_subscription_id,
        status=subscription.status,
    )


# ---------------------------------------------------------------------------
# Payment methods
# ---------------------------------------------------------------------------


async def set_payment_method(
    db: AsyncSession, user: User, subscription: Subscription, payment_method_id: str
) -> ServiceResult:
    if not payment_method_id:
        return ServiceResult.error(
            "MISSING_PAYMENT_METHOD", "payment_method_id is required.", 400
        )

    try:
        customer_id = await ensure_stripe_customer(db, user, subscription)
        await stripe_client.attach_payment_method(customer_id, payment_method_id)
    except stripe.StripeError:
        logger.exception("Attaching payment method failed for user %s", user.id)
        return _provider_error("attach_payment_method")

    subscription.stripe_payment_method_id = payment_method_id
    subscription.payment_method_on_file = True
    await db.flush()
    return ServiceResult.ok(
        "PAYMENT_METHOD_UPDATED",
        "Payment method saved.",
        has_payment_method=True,
    )


async def remove_payment_methods(db: AsyncSession, subscription: Subscription) -> ServiceResult:
    if not subscription.stripe_customer_id:
        return ServiceResult.error("NO_CUSTOMER", "No billing customer found.", 404)

    try:
        payment_methods = await stripe_client.list_payment_methods(subscription.stripe_customer_id)
        for payment_method in payment_methods:
            await stripe_client.detach_payment_method(payment_method.id)
    except stripe.StripeError:
        logger.exception(
            "Detaching payment methods failed for customer %s", subscription.stripe_customer_id
        )
        return _provider_error("detach_payment_method")

    subscription.stripe_payment_method_id = None
    subscription.payment_method_on_file = False
    await db.flush()
    return ServiceResult.ok(
        "PAYMENT_METHOD_REMOVED",
        "Payment methods removed.",
        removed=len(payment_methods),
        has_payment_method=False,
    )


async def refresh_payment_method_flag(db: AsyncSession, subscription: Subscription) -> bool:
    """Read the payment-method flag from Stripe, falling back to the cached column."""
    if not subscription.stripe_customer_id:
        return bool(subscription.payment_method_on_file)

    try:
        customer = await stripe_client.retrieve_customer(subscription.stripe_customer_id)
    except (stripe.StripeError, BillingConfigurationError):
        logger.warning(
            "Could not reach Stripe for customer %s, using cached payment method flag",
            subscription.stripe_customer_id,
            exc_info=True,
        )
        return bool(subscription.payment_method_on_file)

    has_payment_method = stripe_client.customer_has_payment_method(customer)
    if has_payment_method != subscription.payment_method_on_file:
        subscription.payment_method_on_file = has_payment_method
        await db.flush()
    return has_payment_method


# ---------------------------------------------------------------------------
# Billing state
# ---------------------------------------------------------------------------


async def get_billing_state(
    db: AsyncSession,
    subscription: Subscription,
    now: datetime | None = None,
    catalog: PlanCatalog | None = None,
) -> BillingStateResponse:
    now = now or utcnow()
    catalog = catalog or get_catalog()

    access = access_for_subscription(subscription, now)
    limits = catalog.limits(subscription.plan)
    usage = await get_usage(db, subscription, now)
    has_payment_method = await refresh_payment_method_flag(db, subscription)
    remaining = days_until_next_change(subscription.last_plan_change_at, now)

    return BillingStateResponse(
        plan=limits.name,
        pending_plan=subscription.pending_plan,
        billing_period=subscription.billing_period,
        status=subscription.status,
        access_level=access.access_level.value,
        is_in_trial=access.is_in_trial,
        trial_ends_at=subscription.trial_ends_at,
        renewal_at=subscription.renewal_at,
        ends_at=subscription.ends_at,
        cancel_at_period_end=subscription.cancel_at_period_end,
        can_change_plan=remaining == 0,
        days_until_next_change=remaining,
        has_payment_method=has_payment_method,
        usage=UsageSummary(
            workflows=UsageCounter(
                current=usage.active_workflows, max=limits.max_active_workflows
            ),
            executions=UsageCounter(
                current=usage.monthly_executions, max=limits.max_monthly_executions
            ),
        ),
    )
