"""Async Stripe API wrapper for Synth billing."""

import logging
from datetime import datetime, timezone

import stripe
from stripe import StripeClient

from app.config import settings

logger = logging.getLogger(__name__)


class BillingConfigurationError(RuntimeError):
    """Required Stripe configuration (secret, price ID) is missing."""


def get_stripe_client() -> StripeClient:
    """Create a StripeClient instance with async HTTP support."""
    if not settings.stripe_secret_key:
        raise BillingConfigurationError("STRIPE_SECRET_KEY is not set")
    return StripeClient(
        settings.stripe_secret_key,
        http_client=stripe.HTTPXClient(),
    )


async def create_customer(email: str, name: str | None, user_id: str) -> stripe.Customer:
    """Create a Stripe customer linked to a Synth user."""
    client = get_stripe_client()
    logger.info("Creating Stripe customer for user %s (%s)", user_id, email)
    customer = await client.v1.customers.create_async(
        params={
            "email": email,
            "name": name or email,
            "metadata": {"synth_user_id": user_id},
        }
    )
    logger.info("Created Stripe customer %s for user %s", customer.id, user_id)
    return customer


async def create_subscription(
    customer_id: str, price_id: str, trial_period_days: int | None = None
) -> stripe.Subscription:
    """Create a subscription for a customer with a saved payment method."""
    client = get_stripe_client()
    params: dict = {
        "customer": customer_id,
        "items": [{"price": price_id, "quantity": 1}],
        "expand": ["latest_invoice.payment_intent"],
    }
    if trial_period_days:
        params["trial_period_days"] = trial_period_days
    logger.info("Creating subscription for customer %s, price %s", customer_id, price_id)
    return await client.v1.subscriptions.create_async(params=params)


async def get_subscription(subscription_id: str) -> stripe.Subscription:
    """Retrieve a Stripe subscription by ID."""
    client = get_stripe_client()
    return await client.v1.subscriptions.retrieve_async(
        subscription_id, params={"expand": ["items.data.price"]}
    )


async def switch_subscription_price(subscription_id: str, price_id: str) -> stripe.Subscription:
    """Move the plan item to ``price_id`` from the next billing period.

    The first item is the plan; any further items are add-ons and are kept
    as they are. No proration is charged.
    """
    client = get_stripe_client()
    subscription = await get_subscription(subscription_id)
    items = subscription["items"].data if subscription["items"] else []
    if not items:
        raise ValueError(f"Subscription {subscription_id} has no plan item")

    plan_item, add_ons = items[0], items[1:]
    logger.info(
        "Switching subscription %s plan item %s to price %s",
        subscription_id,
        plan_item.id,
        price_id,
    )
    return await client.v1.subscriptions.update_async(
        subscription_id,
        params={
            "items": [{"id": plan_item.id, "price": price_id}]
            + [{"id": item.id} for item in add_ons],
            "proration_behavior": "none",
        },
    )


async def set_cancel_at_period_end(subscription_id: str, cancel: bool) -> stripe.Subscription:
    """Schedule (or unschedule) cancellation at the end of the current period."""
    client = get_stripe_client()
    logger.info("Setting cancel_at_period_end=%s on subscription %s", cancel, subscription_id)
    return await client.v1.subscriptions.update_async(
        subscription_id, params={"cancel_at_period_end": cancel}
    )


async def cancel_subscription_now(subscription_id: str) -> stripe.Subscription:
    client = get_stripe_client()
    logger.info("Canceling subscription %s immediately", subscription_id)
    return await client.v1.subscriptions.cancel_async(subscription_id)


async def retrieve_customer(customer_id: str) -> stripe.Customer:
    """Retrieve a customer with the default payment method expanded."""
    client = get_stripe_client()
    return await client.v1.customers.retrieve_async(
        customer_id, params={"expand": ["invoice_settings.default_payment_method"]}
    )


def customer_has_payment_method(customer: stripe.Customer) -> bool:
    """True if a (non-deleted) customer has a default payment method."""
    if getattr(customer, "deleted", False):
        return False
    invoice_settings = getattr(customer, "invoice_settings", None)
    default_pm = getattr(invoice_settings, "default_payment_method", None) if invoice_settings else None
    if isinstance(default_pm, str):
        return bool(default_pm)
    return bool(getattr(default_pm, "id", None))


async def attach_payment_method(customer_id: str, payment_method_id: str) -> stripe.PaymentMethod:
    """Attach a payment method and make it the customer's invoice default."""
    client = get_stripe_client()
    logger.info("Attaching payment method %s to customer %s", payment_method_id, customer_id)
    payment_method = await client.v1.payment_methods.attach_async(
        payment_method_id, params={"customer": customer_id}
    )
    await client.v1.customers.update_async(
        customer_id,
        params={"invoice_settings": {"default_payment_method": payment_method_id}},
    )
    return payment_method


async def list_payment_methods(customer_id: str) -> list[stripe.PaymentMethod]:
    client = get_stripe_client()
    result = await client.v1.payment_methods.list_async(
        params={"customer": customer_id, "type": "card"}
    )
    return list(result.data)


async def detach_payment_method(payment_method_id: str) -> stripe.PaymentMethod:
    client = get_stripe_client()
    logger.info("Detaching payment method %s", payment_method_id)
    return await client.v1.payment_methods.detach_async(payment_method_id)


def construct_webhook_event(payload: bytes, sig_header: str) -> stripe.Event:
    """Verify and construct a Stripe webhook event (synchronous).

    Raises:
        BillingConfigurationError: No webhook signing secret is configured.
        stripe.SignatureVerificationError: The signature does not match.
        ValueError: The payload is not valid JSON.
    """
    if not settings.stripe_webhook_secret:
        raise BillingConfigurationError("STRIPE_WEBHOOK_SECRET is not set")
    return stripe.Webhook.construct_event(payload, sig_header, settings.stripe_webhook_secret)


def ts_to_naive(ts: int | None) -> datetime | None:
    """Convert Stripe Unix timestamp to naive UTC datetime."""
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).replace(tzinfo=None)
