"""Entitlement evaluation — plan limits, feature flags and workflow integration checks.

Every check requires full access first; a minimal-access account (expired
trial, failed payment, canceled) is refused before its plan is consulted.
Entitlements always read the current ``plan``; a pending plan grants nothing
until the webhook promotes it.
"""

import json
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from app.billing.access import AccessLevel
from app.billing.integrations import minimum_plan_for, resolve_integration_id
from app.billing.plans import (
    FEATURE_FLAGS,
    NUMERIC_LIMITS,
    PAID_PLANS,
    PlanCatalog,
    effective_plan,
    get_catalog,
    is_plan_at_least,
    upgrade_plan_for,
)

logger = logging.getLogger(__name__)

INTERNAL = "internal"
EXTERNAL = "external"
ORIGIN_KINDS = frozenset({INTERNAL, EXTERNAL})

# Action types that never leave Synth
INTERNAL_ACTION_TYPES = frozenset(
    {
        "set_data",
        "delay",
        "wait",
        "transform",
        "filter",
        "condition",
        "branch",
        "merge",
        "code",
        "log",
        "format",
        "noop",
        "manual",
        "cron",
        "schedule",
    }
)

# Substrings in a serialized action that indicate it talks to the outside world
_EXTERNAL_MARKERS = ("http", "webhook", "email", "mail", "smtp", "api", "oauth", "url")

# Keys in a trigger/action definition that name an integration
_INTEGRATION_KEYS = ("integration", "app", "service", "app_slug", "connection")

_INTEGRATION_TIERS = {
    "basic": frozenset({"basic", "all", "all+custom"}),
    "advanced": frozenset({"all", "all+custom"}),
    "custom": frozenset({"all+custom"}),
}

NOT_SUPPORTED = "not_supported"
PLAN_REQUIRED = "plan_required"
EXTERNAL_ON_FREE = "external_on_free"


@dataclass(frozen=True)
class EntitlementDecision:
    """Outcome of one entitlement check, with enough detail for an API error."""

    allowed: bool
    key: str
    reason: str | None = None
    code: str | None = None
    current: int | None = None
    limit: int | None = None
    upgrade_plan: str | None = None


@dataclass(frozen=True)
class RestrictedIntegration:
    name: str
    reason: str
    integration_id: str | None = None
    required_plan: str | None = None
    action_id: str | None = None


@dataclass(frozen=True)
class IntegrationValidation:
    valid: bool
    restricted_integrations: list[RestrictedIntegration] = field(default_factory=list)


def _lowest_plan_with_feature(flag: str, catalog: PlanCatalog) -> str:
    for name in catalog:
        if catalog[name].limits.has_feature(flag):
            return name
    return PAID_PLANS[-1]


def evaluate_entitlement(
    access_level: AccessLevel | str,
    plan: str | None,
    key: str,
    usage: int | None = None,
    catalog: PlanCatalog | None = None,
) -> EntitlementDecision:
    """Evaluate ``key`` (a feature flag or numeric limit) for a plan.

    For numeric limits ``usage`` is the caller's current count and the check
    passes while ``usage < limit``; a ``None`` limit is unlimited.

    Raises:
        KeyError: ``key`` is neither a feature flag nor a numeric limit.
    """
    if key not in FEATURE_FLAGS and key not in NUMERIC_LIMITS:
        raise KeyError(f"Unknown entitlement: {key}")

    if AccessLevel(access_level) is not AccessLevel.FULL:
        return EntitlementDecision(
            allowed=False,
            key=key,
            code="SUBSCRIPTION_REQUIRED",
            reason="An active subscription is required.",
            upgrade_plan="starter",
        )

    catalog = catalog or get_catalog()
    limits = catalog.limits(plan)

    if key in FEATURE_FLAGS:
        if limits.has_feature(key):
            return EntitlementDecision(allowed=True, key=key)
        required = _lowest_plan_with_feature(key, catalog)
        return EntitlementDecision(
            allowed=False,
            key=key,
            code="FEATURE_NOT_AVAILABLE",
            reason=f"{key} requires the {catalog[required].limits.display_name} plan or higher.",
            upgrade_plan=required,
        )

    limit = getattr(limits, key)
    current = usage or 0
    if limit is None or current < limit:
        return EntitlementDecision(allowed=True, key=key, current=current, limit=limit)
    return EntitlementDecision(
        allowed=False,
        key=key,
        code="PLAN_LIMIT_REACHED",
        reason=f"Plan limit reached ({current}/{limit}).",
        current=current,
        limit=limit,
        upgrade_plan=upgrade_plan_for(limits.name),
    )


def check_entitlement(
    access_level: AccessLevel | str,
    plan: str | None,
    key: str,
    usage: int | None = None,
    catalog: PlanCatalog | None = None,
) -> bool:
    return evaluate_entitlement(access_level, plan, key, usage=usage, catalog=catalog).allowed


def can_use_integration_category(
    access_level: AccessLevel | str,
    plan: str | None,
    category: str,
    catalog: PlanCatalog | None = None,
) -> bool:
    """Category gate: ``basic``, ``advanced`` or ``custom`` integrations."""
    if AccessLevel(access_level) is not AccessLevel.FULL:
        return False
    tiers = _INTEGRATION_TIERS.get(category)
    if tiers is None:
        return False
    limits = (catalog or get_catalog()).limits(plan)
    return limits.allowed_integration_tier in tiers


# ---------------------------------------------------------------------------
# Workflow integration validation
# ---------------------------------------------------------------------------


def _definition_parts(workflow: Any) -> tuple[Mapping | None, Sequence]:
    if isinstance(workflow, Mapping):
        trigger, actions = workflow.get("trigger"), workflow.get("actions")
    else:
        trigger, actions = getattr(workflow, "trigger", None), getattr(workflow, "actions", None)
    if not isinstance(trigger, Mapping):
        trigger = None
    if not isinstance(actions, Sequence) or isinstance(actions, (str, bytes)):
        actions = []
    return trigger, [a for a in actions if isinstance(a, Mapping)]


def integration_refs(node: Mapping) -> list[str]:
    """Integration names referenced by one trigger or action definition.

    Explicit keys (``integration``, ``app``, ...) always count; the ``type``
    counts only when it is itself a catalogued integration.
    """
    refs: list[str] = []
    for key in _INTEGRATION_KEYS:
        value = node.get(key)
        if isinstance(value, str) and value.strip():
            refs.append(value.strip())
    node_type = node.get("type")
    if isinstance(node_type, str) and resolve_integration_id(node_type) is not None:
        refs.append(node_type)
    return refs


def classify_action(action: Mapping) -> str:
    """Classify an action as ``internal`` or ``external``.

    A declared ``origin_kind`` wins. Without one this falls back to keyword
    matching on the action type and its serialized body, which misfires on
    internal actions whose data merely mentions e.g. "email".
    """
    declared = action.get("origin_kind")
    if declared in ORIGIN_KINDS:
        return declared

    if integration_refs(action):
        return EXTERNAL

    action_type = str(action.get("type") or "").strip().lower()
    if action_type in INTERNAL_ACTION_TYPES:
        return INTERNAL

    serialized = json.dumps(action, default=str, sort_keys=True).lower()
    if any(marker in serialized for marker in _EXTERNAL_MARKERS):
        return EXTERNAL
    return INTERNAL if action_type else EXTERNAL


def extract_integrations(workflow: Any) -> list[str]:
    """Every integration name referenced by a workflow's trigger and actions."""
    trigger, actions = _definition_parts(workflow)
    names: list[str] = []
    for node in ([trigger] if trigger else []) + list(actions):
        names.extend(integration_refs(node))
    return names


def validate_workflow_integrations(plan: str | None, workflow: Any) -> IntegrationValidation:
    """Report every integration in ``workflow`` that ``plan`` may not use.

    Unknown integrations are restricted on every plan. On the free plan any
    external action is restricted too, leaving only internal actions.
    """
    plan_name = effective_plan(plan)
    trigger, actions = _definition_parts(workflow)
    restricted: list[RestrictedIntegration] = []
    seen: set[tuple[str, str]] = set()

    def _restrict(item: RestrictedIntegration) -> None:
        marker = (item.integration_id or item.name.lower(), item.reason)
        if marker not in seen:
            seen.add(marker)
            restricted.append(item)

    nodes: list[tuple[str | None, Mapping, bool]] = []
    if trigger:
        nodes.append((None, trigger, False))
    nodes.extend((str(a.get("id")) if a.get("id") is not None else None, a, True) for a in actions)

    for node_id, node, is_action in nodes:
        refs = integration_refs(node)
        for name in refs:
            integration_id = resolve_integration_id(name)
            if integration_id is None:
                _restrict(RestrictedIntegration(name=name, reason=NOT_SUPPORTED, action_id=node_id))
                continue
            required = minimum_plan_for(integration_id)
            if not is_plan_at_least(plan_name, required):
                _restrict(
                    RestrictedIntegration(
                        name=name,
                        reason=PLAN_REQUIRED,
                        integration_id=integration_id,
                        required_plan=required,
                        action_id=node_id,
                    )
                )

        if plan_name == "free" and is_action and not refs and classify_action(node) == EXTERNAL:
            _restrict(
                RestrictedIntegration(
                    name=str(node.get("type") or "unknown"),
                    reason=EXTERNAL_ON_FREE,
                    required_plan="starter",
                    action_id=node_id,
                )
            )

    if restricted:
        logger.debug(
            "Workflow has %d restricted integration(s) on plan %s", len(restricted), plan_name
        )
    return IntegrationValidation(valid=not restricted, restricted_integrations=restricted)
