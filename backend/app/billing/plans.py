"""Plan definitions — pricing tiers, usage limits and feature flags."""

from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from functools import lru_cache
from types import MappingProxyType

from app.config import settings

PLAN_ORDER: tuple[str, ...] = ("free", "starter", "pro", "agency")
PAID_PLANS: tuple[str, ...] = PLAN_ORDER[1:]
BILLING_PERIODS: tuple[str, ...] = ("monthly", "yearly")

FEATURE_FLAGS: tuple[str, ...] = (
    "custom_webhooks",
    "team_collaboration",
    "white_label",
    "api_access",
    "custom_integrations",
)
NUMERIC_LIMITS: tuple[str, ...] = ("max_active_workflows", "max_monthly_executions")

# Legacy display names that map onto stored plan names
_PLAN_ALIASES = {
    "growth": "pro",
    "scale": "agency",
    "enterprise": "agency",
}


@dataclass(frozen=True)
class PlanLimits:
    """Usage limits for a subscription plan."""

    name: str
    display_name: str
    max_active_workflows: int | None  # None = unlimited
    max_monthly_executions: int | None  # None = unlimited
    allowed_integration_tier: str  # none, basic, all, all+custom
    support_tier: str
    log_retention_days: int
    price_monthly_cents: int
    feature_flags: frozenset[str] = field(default_factory=frozenset)

    def has_feature(self, flag: str) -> bool:
        return flag in self.feature_flags


@dataclass(frozen=True)
class PlanConfig:
    """A plan's limits plus the Stripe price IDs that bill it."""

    limits: PlanLimits
    monthly_price_id: str | None = None
    yearly_price_id: str | None = None

    def price_id(self, billing_period: str = "monthly") -> str | None:
        if billing_period == "yearly":
            return self.yearly_price_id
        return self.monthly_price_id


PLAN_LIMITS: Mapping[str, PlanLimits] = MappingProxyType(
    {
        "free": PlanLimits(
            name="free",
            display_name="Free",
            max_active_workflows=0,
            max_monthly_executions=0,
            allowed_integration_tier="none",
            support_tier="community",
            log_retention_days=0,
            price_monthly_cents=0,
        ),
        "starter": PlanLimits(
            name="starter",
            display_name="Starter",
            max_active_workflows=3,
            max_monthly_executions=5000,
            allowed_integration_tier="basic",
            support_tier="email",
            log_retention_days=7,
            price_monthly_cents=4900,
        ),
        "pro": PlanLimits(
            name="pro",
            display_name="Pro",
            max_active_workflows=10,
            max_monthly_executions=25000,
            allowed_integration_tier="all",
            support_tier="priority",
            log_retention_days=30,
            price_monthly_cents=14900,
            feature_flags=frozenset({"custom_webhooks", "team_collaboration"}),
        ),
        "agency": PlanLimits(
            name="agency",
            display_name="Agency",
            max_active_workflows=40,
            max_monthly_executions=100000,
            allowed_integration_tier="all+custom",
            support_tier="dedicated",
            log_retention_days=90,
            price_monthly_cents=39900,
            feature_flags=frozenset(FEATURE_FLAGS),
        ),
    }
)


class PlanCatalog(Mapping[str, PlanConfig]):
    """Read-only plan table, built once and passed to the entitlement checks.

    Lookups via :meth:`limits` fall back to the free plan so a null or
    unrecognised stored plan never grants paid limits.
    """

    def __init__(self, plans: Mapping[str, PlanConfig]) -> None:
        missing = set(PLAN_ORDER) - set(plans)
        if missing:
            raise ValueError(f"Plan catalog is missing plans: {sorted(missing)}")
        self._plans = MappingProxyType(dict(plans))

    def __getitem__(self, name: str) -> PlanConfig:
        return self._plans[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._plans)

    def __len__(self) -> int:
        return len(self._plans)

    def limits(self, plan: str | None) -> PlanLimits:
        return self._plans[normalize_plan_name(plan) or "free"].limits

    def plan_for_price_id(self, price_id: str | None) -> str | None:
        """Reverse lookup: Stripe price ID -> plan name. Returns None if not found."""
        if not price_id:
            return None
        for name, config in self._plans.items():
            if price_id in (config.monthly_price_id, config.yearly_price_id):
                return name
        return None

    @classmethod
    def from_price_ids(
        cls,
        monthly: Mapping[str, str],
        yearly: Mapping[str, str] | None = None,
        limits: Mapping[str, PlanLimits] = PLAN_LIMITS,
    ) -> "PlanCatalog":
        yearly = yearly or {}
        return cls(
            {
                name: PlanConfig(
                    limits=plan_limits,
                    monthly_price_id=monthly.get(name) or None,
                    yearly_price_id=yearly.get(name) or None,
                )
                for name, plan_limits in limits.items()
            }
        )


@lru_cache(maxsize=1)
def get_catalog() -> PlanCatalog:
    """The process-wide catalog, with Stripe price IDs from settings."""
    return PlanCatalog.from_price_ids(
        monthly=settings.price_ids("monthly"),
        yearly=settings.price_ids("yearly"),
    )


def normalize_plan_name(plan: str | None) -> str | None:
    """Map a stored or requested plan string to a known plan name, or None."""
    if not plan:
        return None
    normalized = plan.strip().lower()
    normalized = _PLAN_ALIASES.get(normalized, normalized)
    return normalized if normalized in PLAN_ORDER else None


def effective_plan(plan: str | None) -> str:
    """The plan used for entitlement checks; null and unknown mean free."""
    return normalize_plan_name(plan) or "free"


def plan_rank(plan: str | None) -> int:
    return PLAN_ORDER.index(effective_plan(plan))


def is_plan_at_least(plan: str | None, required: str) -> bool:
    """True if ``plan`` is the same tier as ``required`` or higher."""
    return plan_rank(plan) >= plan_rank(required)


def compare_plans(current: str | None, target: str | None) -> str | None:
    """Classify a switch as "upgrade", "downgrade" or "same"."""
    if normalize_plan_name(current) is None or normalize_plan_name(target) is None:
        return None
    diff = plan_rank(target) - plan_rank(current)
    if diff == 0:
        return "same"
    return "upgrade" if diff > 0 else "downgrade"


def upgrade_plan_for(plan: str | None) -> str:
    """Next tier up, capped at the highest plan."""
    index = plan_rank(plan)
    return PLAN_ORDER[min(index + 1, len(PLAN_ORDER) - 1)]


def get_plan_limits(plan: str | None, catalog: PlanCatalog | None = None) -> PlanLimits:
    """Get plan limits by name. Defaults to free if unknown."""
    return (catalog or get_catalog()).limits(plan)


def parse_plan(plan: str | None) -> str:
    """Validate a requested plan name.

    Raises:
        ValueError: ``plan`` is not a known plan.
    """
    normalized = normalize_plan_name(plan)
    if normalized is None:
        raise ValueError(f"Unknown plan: {plan!r}")
    return normalized


def parse_billing_period(billing_period: str | None) -> str:
    """Validate a requested billing period; None means monthly."""
    period = (billing_period or "monthly").strip().lower()
    if period not in BILLING_PERIODS:
        raise ValueError(f"Unknown billing period: {billing_period!r}")
    return period
