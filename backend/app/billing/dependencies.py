"""Plan gating dependencies — enforce access level, usage limits and feature flags."""

import logging
from collections.abc import Awaitable, Callable

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.responses import ApiError
from app.auth.dependencies import get_current_subscription
from app.billing.access import AccessInfo, access_for_subscription
from app.billing.entitlements import EntitlementDecision, evaluate_entitlement
from app.billing.plans import FEATURE_FLAGS
from app.database import get_db, utcnow
from app.models.subscription import Subscription
from app.services.usage_service import (
    count_active_workflows,
    count_executions_since,
    get_period_start,
)

logger = logging.getLogger(__name__)

# PLAN_LIMIT_REACHED is a 402 (pay to continue); everything else is a 403
_STATUS_FOR_CODE = {
    "PLAN_LIMIT_REACHED": 402,
    "FEATURE_NOT_AVAILABLE": 403,
    "SUBSCRIPTION_REQUIRED": 403,
}


def _raise_for(decision: EntitlementDecision, subscription: Subscription, access: AccessInfo) -> None:
    if decision.allowed:
        return
    logger.info(
        "Entitlement %s denied for user %s (plan=%s, access=%s): %s",
        decision.key,
        subscription.user_id,
        subscription.plan,
        access.access_level.value,
        decision.code,
    )
    raise ApiError(
        _STATUS_FOR_CODE.get(decision.code, 403),
        decision.code,
        decision.reason,
        plan=subscription.plan or "free",
        access_level=access.access_level.value,
        current=decision.current,
        limit=decision.limit,
        upgrade_plan=decision.upgrade_plan,
        upgrade_url="/billing",
    )


def enforce_entitlement(subscription: Subscription, key: str, usage: int | None = None) -> None:
    """Raise an :class:`ApiError` unless ``subscription`` is entitled to ``key`` now."""
    access = access_for_subscription(subscription, utcnow())
    decision = evaluate_entitlement(access.access_level, subscription.plan, key, usage=usage)
    _raise_for(decision, subscription, access)


async def require_full_access(
    subscription: Subscription = Depends(get_current_subscription),
) -> Subscription:
    """Raise 403 unless the user is subscribed or in trial."""
    access = access_for_subscription(subscription, utcnow())
    if not access.has_full_access:
        raise ApiError(
            403,
            "SUBSCRIPTION_REQUIRED",
            "An active subscription is required.",
            plan=subscription.plan or "free",
            access_level=access.access_level.value,
            upgrade_plan="starter",
            upgrade_url="/billing",
        )
    return subscription


async def check_workflow_limit(
    db: AsyncSession = Depends(get_db),
    subscription: Subscription = Depends(require_full_access),
) -> Subscription:
    """Raise 402 if activating one more workflow would exceed the plan limit."""
    current = await count_active_workflows(db, subscription.user_id)
    enforce_entitlement(subscription, "max_active_workflows", usage=current)
    return subscription


async def check_execution_limit(
    db: AsyncSession = Depends(get_db),
    subscription: Subscription = Depends(require_full_access),
) -> Subscription:
    """Raise 402 if the user has used up this period's executions."""
    period_start = get_period_start(subscription)
    current = await count_executions_since(db, subscription.user_id, period_start)
    enforce_entitlement(subscription, "max_monthly_executions", usage=current)
    return subscription


def require_feature(flag: str) -> Callable[..., Awaitable[Subscription]]:
    """Dependency factory: raise 403 unless the user's plan includes ``flag``.

    Usage::

        @router.post("/hooks", dependencies=[Depends(require_feature("custom_webhooks"))])
    """
    if flag not in FEATURE_FLAGS:
        raise ValueError(f"Unknown feature flag: {flag}")

    async def _require_feature(
        subscription: Subscription = Depends(get_current_subscription),
    ) -> Subscription:
        enforce_entitlement(subscription, flag)
        return subscription

    return _require_feature
