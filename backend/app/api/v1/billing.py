"""Billing API endpoints — plans, billing state, subscription and payment-method management."""

import logging

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_current_subscription, get_current_user, get_db, get_token_identity
from app.api.responses import ApiError, envelope, result_response
from app.auth.dependencies import TokenIdentity, load_user
from app.billing.access import access_for_subscription
from app.billing.entitlements import can_use_integration_category
from app.billing.integrations import (
    INTEGRATION_CATEGORIES,
    IntegrationAccessError,
    category_for,
    integration_access_error,
    integrations_for_plan,
    resolve_integration_id,
)
from app.billing.plans import PLAN_ORDER, get_catalog
from app.database import utcnow
from app.models.subscription import Subscription
from app.models.user import User
from app.schemas.billing import (
    BillingStateResponse,
    CancelRequest,
    IntegrationsResponse,
    PaymentMethodRequest,
    PlanResponse,
    PlansListResponse,
    SubscribeRequest,
    SwitchPlanRequest,
)
from app.services import billing_service
from app.services.subscription_service import get_or_create_subscription

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/billing", tags=["billing"])


@router.get("/plans", response_model=PlansListResponse)
async def list_plans() -> PlansListResponse:
    """List available plans (public — no auth required)."""
    catalog = get_catalog()
    return PlansListResponse(
        plans=[
            PlanResponse(
                name=limits.name,
                display_name=limits.display_name,
                max_active_workflows=limits.max_active_workflows,
                max_monthly_executions=limits.max_monthly_executions,
                allowed_integration_tier=limits.allowed_integration_tier,
                support_tier=limits.support_tier,
                log_retention_days=limits.log_retention_days,
                feature_flags=sorted(limits.feature_flags),
                price_monthly_cents=limits.price_monthly_cents,
            )
            for limits in (catalog[name].limits for name in PLAN_ORDER)
        ]
    )


@router.get("/state", response_model=BillingStateResponse)
async def billing_state(
    db: AsyncSession = Depends(get_db),
    identity: TokenIdentity = Depends(get_token_identity),
) -> BillingStateResponse:
    """Plan, access level, usage and plan-change availability.

    Never fails once the token is valid: if the user, subscription or state
    cannot be loaded the safe default (free, minimal access, zero usage) is
    returned with ``degraded``. Auth refusals still propagate.
    """
    try:
        user = await load_user(db, identity)
        subscription = await get_or_create_subscription(db, user)
        return await billing_service.get_billing_state(db, subscription)
    except HTTPException:
        raise
    except Exception:
        logger.exception("Failed to compute billing state for user %s", identity.user_id)
        await db.rollback()
        return BillingStateResponse(degraded=True)


@router.post("/subscribe")
async def subscribe(
    body: SubscribeRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    subscription: Subscription = Depends(get_current_subscription),
) -> JSONResponse:
    """Start a paid subscription with the free trial."""
    result = await billing_service.subscribe(
        db, current_user, subscription, body.plan, body.billing_period
    )
    return result_response(result)


@router.post("/switch-plan")
async def switch_plan(
    body: SwitchPlanRequest,
    db: AsyncSession = Depends(get_db),
    subscription: Subscription = Depends(get_current_subscription),
) -> JSONResponse:
    """Request a plan change; it takes effect when the next invoice is paid."""
    result = await billing_service.request_plan_change(
        db, subscription, body.plan, body.billing_period
    )
    return result_response(result)


@router.post("/cancel")
async def cancel(
    body: CancelRequest,
    db: AsyncSession = Depends(get_db),
    subscription: Subscription = Depends(get_current_subscription),
) -> JSONResponse:
    """Cancel the subscription (requires typing UNSUBSCRIBE)."""
    result = await billing_service.cancel_subscription(
        db,
        subscription,
        confirmation=body.confirmation,
        cancel_at_period_end=body.cancel_at_period_end,
    )
    if result.success and body.reason and body.reason.strip():
        logger.info(
            "Cancellation reason from user %s: %s", subscription.user_id, body.reason.strip()
        )
    return result_response(result)


@router.post("/reactivate")
async def reactivate(
    db: AsyncSession = Depends(get_db),
    subscription: Subscription = Depends(get_current_subscription),
) -> JSONResponse:
    """Undo a scheduled cancellation."""
    result = await billing_service.reactivate_subscription(db, subscription)
    return result_response(result)


@router.post("/payment-method")
async def add_payment_method(
    body: PaymentMethodRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    subscription: Subscription = Depends(get_current_subscription),
) -> JSONResponse:
    """Attach a payment method and make it the default."""
    result = await billing_service.set_payment_method(
        db, current_user, subscription, body.payment_method_id
    )
    return result_response(result)


@router.delete("/payment-method")
async def remove_payment_method(
    db: AsyncSession = Depends(get_db),
    subscription: Subscription = Depends(get_current_subscription),
) -> JSONResponse:
    """Detach every saved payment method."""
    result = await billing_service.remove_payment_methods(db, subscription)
    return result_response(result)


@router.get("/integrations", response_model=IntegrationsResponse)
async def list_integrations(
    subscription: Subscription = Depends(get_current_subscription),
) -> IntegrationsResponse:
    """Integrations the user's current plan may connect (none without full access)."""
    access = access_for_subscription(subscription, utcnow())
    plan = get_catalog().limits(subscription.plan).name
    return IntegrationsResponse(
        plan=plan,
        access_level=access.access_level.value,
        integrations=integrations_for_plan(plan) if access.has_full_access else [],
        categories={
            category: can_use_integration_category(access.access_level, plan, category)
            for category in INTEGRATION_CATEGORIES
        },
    )


@router.get("/integrations/{name}")
async def check_integration(
    name: str,
    subscription: Subscription = Depends(get_current_subscription),
) -> JSONResponse:
    """Whether the user may connect ``name``; a refusal names the plan to upgrade to."""
    access = access_for_subscription(subscription, utcnow())
    plan = get_catalog().limits(subscription.plan).name
    error = integration_access_error(plan, name)
    if error is None and not access.has_full_access:
        error = IntegrationAccessError(
            code="SUBSCRIPTION_REQUIRED",
            message="An active subscription is required to connect integrations.",
            status_code=403,
            required_plan=plan,
        )
    if error is not None:
        raise ApiError(
            error.status_code,
            error.code,
            error.message,
            plan=plan,
            required_plan=error.required_plan,
        )

    integration_id = resolve_integration_id(name)
    return envelope(
        True,
        "INTEGRATION_ALLOWED",
        "This integration is available on your plan.",
        integration=integration_id,
        category=category_for(integration_id),
        plan=plan,
    )
