"""Integration allow-list — the closed set of supported integrations and the
minimum plan that unlocks each one.

Names outside this table are not supported on any plan. That is a separate
rule from plan-tier gating: an unknown integration is rejected even for
agency accounts.
"""

import re
from collections.abc import Mapping
from dataclasses import dataclass
from types import MappingProxyType

from app.billing.plans import PAID_PLANS, effective_plan, is_plan_at_least

_STARTER = (
    "gmail",
    "google-calendar",
    "google-sheets",
    "google-drive",
    "google-forms",
    "email-smtp",
    "webhooks",
    "slack",
    "discord",
    "zoom",
    "microsoft-outlook",
    "microsoft-onedrive",
    "microsoft-todo",
    "evernote",
    "todoist",
)

_PRO = (
    "notion",
    "airtable",
    "trello",
    "clickup",
    "monday",
    "asana",
    "dropbox-paper",
    "dropbox-core",
    "canva",
    "typeform",
    "hubspot-crm",
    "salesforce-essentials",
    "intercom",
    "calendly",
    "webflow",
)

_AGENCY = (
    "stripe",
    "quickbooks",
    "xero",
    "shopify",
    "woocommerce",
    "custom-http-integrations",
    "highlevel",
    "make-connector",
    "linkedin-lead-gen",
    "meta-lead-ads",
)

# canonical id -> minimum plan
INTEGRATION_CATALOG: Mapping[str, str] = MappingProxyType(
    {
        **{name: "starter" for name in _STARTER},
        **{name: "pro" for name in _PRO},
        **{name: "agency" for name in _AGENCY},
    }
)

# minimum plan -> category used by the category gate
INTEGRATION_CATEGORIES = ("basic", "advanced", "custom")
_CATEGORY_BY_PLAN = {"starter": "basic", "pro": "advanced", "agency": "custom"}


# Free-form spellings seen in workflow definitions and the connections UI
_ALIASES: Mapping[str, str] = MappingProxyType(
    {
        "google-mail": "gmail",
        "googlemail": "gmail",
        "gcal": "google-calendar",
        "googlecalendar": "google-calendar",
        "googlesheets": "google-sheets",
        "sheets": "google-sheets",
        "googledrive": "google-drive",
        "googleforms": "google-forms",
        "smtp": "email-smtp",
        "webhook": "webhooks",
        "outlook": "microsoft-outlook",
        "onedrive": "microsoft-onedrive",
        "microsoft-to-do": "microsoft-todo",
        "dropbox": "dropbox-core",
        "hubspot": "hubspot-crm",
        "salesforce": "salesforce-essentials",
        "monday-com": "monday",
        "quick-books": "quickbooks",
        "go-high-level": "highlevel",
        "gohighlevel": "highlevel",
        "make": "make-connector",
        "linkedin-lead-gen-forms": "linkedin-lead-gen",
        "facebook-lead-ads": "meta-lead-ads",
    }
)

_SEPARATORS = re.compile(r"[\s_./]+")
_REPEATED_HYPHENS = re.compile(r"-{2,}")


@dataclass(frozen=True)
class IntegrationAccessError:
    """Why an integration is refused for a plan, with the API error code."""

    code: str
    message: str
    status_code: int
    required_plan: str | None = None


def _normalize(name: str) -> str:
    slug = _SEPARATORS.sub("-", name.strip().lower())
    return _REPEATED_HYPHENS.sub("-", slug).strip("-")


def resolve_integration_id(name: str | None) -> str | None:
    """Map a free-form integration name to its canonical id, or None if unsupported."""
    if not name or not isinstance(name, str):
        return None
    slug = _normalize(name)
    if slug in INTEGRATION_CATALOG:
        return slug
    return _ALIASES.get(slug)


def minimum_plan_for(integration_id: str | None) -> str | None:
    if integration_id is None:
        return None
    return INTEGRATION_CATALOG.get(integration_id)


def category_for(integration_id: str | None) -> str | None:
    """Integration category (``basic``, ``advanced`` or ``custom``) by minimum plan."""
    return _CATEGORY_BY_PLAN.get(minimum_plan_for(integration_id))


def integrations_for_plan(plan: str | None) -> list[str]:
    """All canonical integration ids usable on ``plan`` (empty for free)."""
    plan_name = effective_plan(plan)
    if plan_name not in PAID_PLANS:
        return []
    return [
        integration_id
        for integration_id, required in INTEGRATION_CATALOG.items()
        if is_plan_at_least(plan_name, required)
    ]


def integration_access_error(plan: str | None, name: str) -> IntegrationAccessError | None:
    """Return the refusal for connecting ``name`` on ``plan``, or None if allowed."""
    integration_id = resolve_integration_id(name)
    if integration_id is None:
        return IntegrationAccessError(
            code="INTEGRATION_NOT_SUPPORTED",
            message=f"'{name}' is not a supported integration.",
            status_code=400,
        )

    plan_name = effective_plan(plan)
    if plan_name not in PAID_PLANS:
        return IntegrationAccessError(
            code="SUBSCRIPTION_REQUIRED",
            message="External app connections are not available on the free plan. "
            "Please upgrade to connect integrations.",
            status_code=403,
            required_plan="starter",
        )

    required = INTEGRATION_CATALOG[integration_id]
    if not is_plan_at_least(plan_name, required):
        return IntegrationAccessError(
            code="INTEGRATION_NOT_AVAILABLE",
            message=f"This integration is not available on your current plan. "
            f"Please upgrade to {required.upper()} or higher.",
            status_code=403,
            required_plan=required,
        )
    return None
