"""Fake Stripe objects, row builders and auth helpers shared by the test modules."""

import uuid
from datetime import datetime
from types import SimpleNamespace

from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.tokens import create_access_token
from app.models.user import User
from app.models.workflow import Execution, Workflow


class StripeObj(SimpleNamespace):
    """SimpleNamespace with bracket notation support (like Stripe API objects).

    Stripe API 2025-08-27 (basil) changed subscription.items to require
    bracket notation to avoid collision with Python dict .items().
    """

    def __getitem__(self, key: str):
        return getattr(self, key)


def make_event(event_type: str, data_object: dict, event_id: str | None = None) -> StripeObj:
    """Create a fake Stripe Event-like object."""
    return StripeObj(
        type=event_type,
        id=event_id or f"evt_test_{uuid.uuid4().hex[:8]}",
        data=StripeObj(object=StripeObj(**data_object)),
    )


def make_stripe_sub(
    price_id: str,
    status: str = "active",
    period_start: int = 1700000000,
    period_end: int = 1702600000,
    cancel_at_period_end: bool = False,
    sub_id: str = "sub_test_123",
    customer: str = "cus_test_123",
    trial_end: int | None = None,
) -> dict:
    """Fields of a fake Stripe Subscription (period on the item, as in basil)."""
    return {
        "id": sub_id,
        "customer": customer,
        "status": status,
        "cancel_at_period_end": cancel_at_period_end,
        "trial_end": trial_end,
        "items": StripeObj(
            data=[
                StripeObj(
                    id="si_plan",
                    price=StripeObj(id=price_id),
                    current_period_start=period_start,
                    current_period_end=period_end,
                )
            ]
        ),
    }


def make_invoice(subscription_id: str | None, customer: str | None = None, period_end: int | None = None) -> dict:
    """Fields of a fake Stripe Invoice."""
    lines = []
    if period_end is not None:
        lines.append(StripeObj(period=StripeObj(start=period_end - 2592000, end=period_end)))
    return {
        "id": f"in_{uuid.uuid4().hex[:8]}",
        "subscription": subscription_id,
        "customer": customer,
        "lines": StripeObj(data=lines),
    }


def auth_headers_for(user: User) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(user.id, user.email)}"}


async def add_workflows(
    db: AsyncSession, user: User, count: int, active: bool = True, **fields
) -> list[Workflow]:
    """Persist ``count`` workflows owned by ``user``."""
    fields.setdefault("trigger", {"type": "schedule"})
    fields.setdefault("actions", [{"id": "1", "type": "set_data"}])
    workflows = [
        Workflow(user_id=user.id, name=f"Workflow {i}", active=active, **fields) for i in range(count)
    ]
    db.add_all(workflows)
    await db.commit()
    return workflows


async def add_executions(
    db: AsyncSession, workflow: Workflow, count: int, created_at: datetime | None = None
) -> None:
    """Persist ``count`` executions of ``workflow`` (created now unless given)."""
    extra = {"created_at": created_at} if created_at is not None else {}
    db.add_all(
        Execution(workflow_id=workflow.id, user_id=workflow.user_id, status="succeeded", **extra)
        for _ in range(count)
    )
    await db.commit()
