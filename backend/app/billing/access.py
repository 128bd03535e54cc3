"""Subscription status normalizer — one access level from trial, enum and legacy status.

Access levels:

- ``full``: subscribed, or inside the trial window.
- ``minimal``: account exists but has no paid access (read-only, billing pages).
- ``none``: no account.

The legacy free-text status is only consulted when the enum status is unset
and never leaves this module as anything but an audit field.
"""

import enum
from dataclasses import dataclass
from datetime import datetime

from app.models.subscription import Subscription, SubscriptionStatus

BLOCKED_LEGACY_STATUSES = frozenset(
    {"none", "canceled", "incomplete_expired", "incomplete", "unpaid", "unsubscribed"}
)
ALLOWED_LEGACY_STATUSES = frozenset({"active", "trialing", "past_due", "subscribed"})

# Stripe statuses that still mean the customer has paid for the current period
_SUBSCRIBED_STRIPE_STATUSES = frozenset({"active", "trialing", "cancels_at_period_end"})


class AccessLevel(str, enum.Enum):
    NONE = "none"
    MINIMAL = "minimal"
    FULL = "full"


@dataclass(frozen=True)
class AccessInfo:
    access_level: AccessLevel
    is_in_trial: bool

    @property
    def has_full_access(self) -> bool:
        return self.access_level is AccessLevel.FULL


NO_ACCESS = AccessInfo(access_level=AccessLevel.NONE, is_in_trial=False)


def is_in_trial(trial_ends_at: datetime | None, now: datetime) -> bool:
    return trial_ends_at is not None and now < trial_ends_at


def resolve_access(
    status_enum: SubscriptionStatus | str | None,
    status_legacy: str | None,
    trial_ends_at: datetime | None,
    now: datetime,
) -> AccessInfo:
    """Collapse the three status inputs into one access level at instant ``now``.

    A running trial always grants full access. Otherwise the enum status
    decides, and the legacy string is the fallback for rows without one.
    """
    if is_in_trial(trial_ends_at, now):
        return AccessInfo(access_level=AccessLevel.FULL, is_in_trial=True)

    if status_enum is not None:
        if SubscriptionStatus(status_enum) is SubscriptionStatus.SUBSCRIBED:
            return AccessInfo(access_level=AccessLevel.FULL, is_in_trial=False)
        return AccessInfo(access_level=AccessLevel.MINIMAL, is_in_trial=False)

    legacy = (status_legacy or "").strip().lower()
    if legacy in ALLOWED_LEGACY_STATUSES and legacy not in BLOCKED_LEGACY_STATUSES:
        return AccessInfo(access_level=AccessLevel.FULL, is_in_trial=False)
    return AccessInfo(access_level=AccessLevel.MINIMAL, is_in_trial=False)


def access_for_subscription(subscription: Subscription | None, now: datetime) -> AccessInfo:
    """Resolve access for a stored subscription row (None means no account)."""
    if subscription is None:
        return NO_ACCESS
    return resolve_access(
        subscription.status_enum,
        subscription.status,
        subscription.trial_ends_at,
        now,
    )


def map_stripe_status(stripe_status: str | None) -> SubscriptionStatus:
    """Map a Stripe subscription status onto the authoritative enum.

    ``past_due``, ``unpaid``, ``canceled`` and the incomplete states all mean
    the customer has not paid, so they map to UNSUBSCRIBED.
    """
    if stripe_status and stripe_status.strip().lower() in _SUBSCRIBED_STRIPE_STATUSES:
        return SubscriptionStatus.SUBSCRIBED
    return SubscriptionStatus.UNSUBSCRIBED
