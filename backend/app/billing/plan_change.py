"""Plan-change cooldown guard.

A plan switch only records a *pending* plan; the current plan keeps its
entitlements until the next invoice succeeds and the webhook promotes the
pending plan. Switches are limited to one per cooldown window, except for the
first ever change.
"""

import math
from dataclasses import dataclass
from datetime import datetime, timedelta

from app.config import settings

ALREADY_ON_PLAN = "ALREADY_ON_PLAN"
PENDING_PLAN_SAME = "PENDING_PLAN_SAME"
PLAN_CHANGE_COOLDOWN = "PLAN_CHANGE_COOLDOWN"

_SECONDS_PER_DAY = 86400


@dataclass(frozen=True)
class PlanChangeDecision:
    accepted: bool
    code: str | None = None
    pending_plan: str | None = None
    last_change_at: datetime | None = None
    days_remaining: int | None = None

    @property
    def message(self) -> str:
        if self.accepted:
            return "Plan change is pending and will take effect when the next payment is processed."
        if self.code == ALREADY_ON_PLAN:
            return "You are already on this plan."
        if self.code == PENDING_PLAN_SAME:
            return "A change to this plan is already pending."
        return (
            f"Plans can only be changed once every {settings.plan_change_cooldown_days} days. "
            f"Try again in {self.days_remaining} day(s)."
        )


def _elapsed_days(last_change_at: datetime, now: datetime) -> int:
    return math.floor((now - last_change_at).total_seconds() / _SECONDS_PER_DAY)


def days_until_next_change(
    last_change_at: datetime | None,
    now: datetime,
    cooldown_days: int | None = None,
) -> int:
    """Whole days left in the cooldown window; 0 when a change is allowed."""
    if last_change_at is None:
        return 0
    cooldown = settings.plan_change_cooldown_days if cooldown_days is None else cooldown_days
    if now - last_change_at >= timedelta(days=cooldown):
        return 0
    return cooldown - _elapsed_days(last_change_at, now)


def can_change_plan(
    last_change_at: datetime | None,
    now: datetime,
    cooldown_days: int | None = None,
) -> bool:
    return days_until_next_change(last_change_at, now, cooldown_days) == 0


def evaluate_plan_change(
    current_plan: str | None,
    pending_plan: str | None,
    new_plan: str,
    last_change_at: datetime | None,
    now: datetime,
    cooldown_days: int | None = None,
) -> PlanChangeDecision:
    """Decide whether ``new_plan`` may be requested at ``now``.

    Rejections are checked in priority order: already on the plan, duplicate
    pending request, then the cooldown window.
    """
    if new_plan == (current_plan or "free") and pending_plan is None:
        return PlanChangeDecision(accepted=False, code=ALREADY_ON_PLAN)

    if pending_plan is not None and new_plan == pending_plan:
        return PlanChangeDecision(accepted=False, code=PENDING_PLAN_SAME)

    remaining = days_until_next_change(last_change_at, now, cooldown_days)
    if remaining > 0:
        return PlanChangeDecision(
            accepted=False,
            code=PLAN_CHANGE_COOLDOWN,
            days_remaining=remaining,
        )

    return PlanChangeDecision(accepted=True, pending_plan=new_plan, last_change_at=now)
