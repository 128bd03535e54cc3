"""Pydantic v2 request/response schemas for billing endpoints."""

from datetime import datetime

from pydantic import BaseModel, Field

# --- Request schemas ---


class SubscribeRequest(BaseModel):
    """Request to start a paid subscription."""

    plan: str  # "starter", "pro" or "agency"
    billing_period: str = "monthly"


class SwitchPlanRequest(BaseModel):
    """Request a plan change from the next billing period."""

    plan: str
    billing_period: str = "monthly"


class CancelRequest(BaseModel):
    confirmation: str | None = None  # must be "UNSUBSCRIBE"
    cancel_at_period_end: bool = True
    reason: str | None = Field(default=None, max_length=1000)


class PaymentMethodRequest(BaseModel):
    payment_method_id: str = Field(min_length=1)


# --- Response schemas ---


class PlanResponse(BaseModel):
    """Plan details for display."""

    name: str
    display_name: str
    max_active_workflows: int | None
    max_monthly_executions: int | None
    allowed_integration_tier: str
    support_tier: str
    log_retention_days: int
    feature_flags: list[str]
    price_monthly_cents: int


class UsageCounter(BaseModel):
    current: int = 0
    max: int | None = 0  # None = unlimited


class UsageSummary(BaseModel):
    workflows: UsageCounter = Field(default_factory=UsageCounter)
    executions: UsageCounter = Field(default_factory=UsageCounter)


class BillingStateResponse(BaseModel):
    """Everything the billing page needs, in one call.

    The defaults are the safe state served when the real one cannot be
    computed (``degraded=True``).
    """

    plan: str = "free"
    pending_plan: str | None = None
    billing_period: str = "monthly"
    status: str | None = "none"
    access_level: str = "minimal"
    is_in_trial: bool = False
    trial_ends_at: datetime | None = None
    renewal_at: datetime | None = None
    ends_at: datetime | None = None
    cancel_at_period_end: bool = False
    can_change_plan: bool = False
    days_until_next_change: int = 0
    has_payment_method: bool = False
    usage: UsageSummary = Field(default_factory=UsageSummary)
    degraded: bool = False


class IntegrationsResponse(BaseModel):
    plan: str
    access_level: str
    integrations: list[str]
    categories: dict[str, bool] = {}


class PlansListResponse(BaseModel):
    """All available plans, cheapest first."""

    plans: list[PlanResponse]
