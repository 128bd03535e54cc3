"""Usage counting and retention — active workflows and executions per billing period."""

import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.billing.plans import PlanCatalog, effective_plan, get_plan_limits
from app.database import utcnow
from app.models.subscription import Subscription
from app.models.workflow import Execution, Workflow

logger = logging.getLogger(__name__)

_PURGE_BATCH_SIZE = 500


@dataclass(frozen=True)
class UsageSnapshot:
    active_workflows: int
    monthly_executions: int
    period_start: datetime


def get_period_start(subscription: Subscription | None, now: datetime | None = None) -> datetime:
    """Get the start of the current billing period (naive UTC)."""
    if subscription is not None and subscription.current_period_start is not None:
        return subscription.current_period_start
    # No Stripe period yet: use first day of current month
    now = now or utcnow()
    return datetime(now.year, now.month, 1)


async def count_active_workflows(db: AsyncSession, user_id) -> int:
    result = await db.execute(
        select(func.count())
        .select_from(Workflow)
        .where(Workflow.user_id == user_id, Workflow.active.is_(True))
    )
    return result.scalar_one()


async def count_executions_since(db: AsyncSession, user_id, since: datetime) -> int:
    result = await db.execute(
        select(func.count())
        .select_from(Execution)
        .where(Execution.user_id == user_id, Execution.created_at >= since)
    )
    return result.scalar_one()


async def get_usage(
    db: AsyncSession, subscription: Subscription, now: datetime | None = None
) -> UsageSnapshot:
    period_start = get_period_start(subscription, now)
    return UsageSnapshot(
        active_workflows=await count_active_workflows(db, subscription.user_id),
        monthly_executions=await count_executions_since(db, subscription.user_id, period_start),
        period_start=period_start,
    )


async def purge_expired_executions(
    db: AsyncSession, now: datetime | None = None, catalog: PlanCatalog | None = None
) -> dict[str, int]:
    """Delete executions older than the owner's plan log retention.

    Returns the number of deleted rows per plan. The caller commits.
    """
    now = now or utcnow()
    result = await db.execute(select(Subscription.user_id, Subscription.plan))
    users_by_plan: dict[str, list] = defaultdict(list)
    for user_id, plan in result.all():
        users_by_plan[effective_plan(plan)].append(user_id)

    deleted: dict[str, int] = {}
    for plan, user_ids in users_by_plan.items():
        cutoff = now - timedelta(days=get_plan_limits(plan, catalog).log_retention_days)
        count = 0
        for start in range(0, len(user_ids), _PURGE_BATCH_SIZE):
            batch = user_ids[start : start + _PURGE_BATCH_SIZE]
            purge = await db.execute(
                delete(Execution)
                .where(Execution.user_id.in_(batch), Execution.created_at < cutoff)
                .execution_options(synchronize_session=False)
            )
            count += purge.rowcount
        deleted[plan] = count
        if count:
            logger.info("Purged %d %s-plan executions older than %s", count, plan, cutoff)
    return deleted
