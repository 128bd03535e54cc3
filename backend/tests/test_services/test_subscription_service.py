"""Tests for subscription persistence: provisioning, plan-change claims and webhook transitions."""

from datetime import datetime, timedelta
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.subscription import SubscriptionStatus
from app.models.user import User
from app.services.subscription_service import (
    claim_plan_change,
    ensure_stripe_customer,
    get_or_create_subscription,
    get_subscription_by_stripe_customer,
    get_subscription_by_stripe_subscription,
    mark_canceled,
    mark_payment_failed,
    mark_payment_succeeded,
    release_plan_change,
    update_subscription_from_stripe,
)
from factories import StripeObj

NOW = datetime(2026, 3, 1, 12, 0, 0)


@pytest.mark.asyncio
class TestProvisioning:
    async def test_creates_free_unsubscribed_row(self, db_session: AsyncSession):
        user = User(email="new@test.com", name="New")
        db_session.add(user)
        await db_session.flush()

        sub = await get_or_create_subscription(db_session, user)

        assert sub.plan == "free"
        assert sub.status == "none"
        assert sub.status_enum == SubscriptionStatus.UNSUBSCRIBED
        assert sub.pending_plan is None

    async def test_returns_existing_row(self, db_session: AsyncSession, test_user):
        sub = await get_or_create_subscription(db_session, test_user)
        assert sub.id == test_user.subscription.id
        assert sub.plan == "starter"

    async def test_lookup_by_stripe_ids(self, db_session: AsyncSession, test_user):
        sub = test_user.subscription
        assert (await get_subscription_by_stripe_customer(db_session, sub.stripe_customer_id)).id == sub.id
        assert (await get_subscription_by_stripe_subscription(db_session, sub.stripe_subscription_id)).id == sub.id
        assert await get_subscription_by_stripe_customer(db_session, None) is None
        assert await get_subscription_by_stripe_subscription(db_session, "") is None


@pytest.mark.asyncio
class TestEnsureStripeCustomer:
    async def test_existing_customer_is_reused(self, db_session: AsyncSession, test_user):
        with patch("app.services.subscription_service.create_customer", new_callable=AsyncMock) as create:
            customer_id = await ensure_stripe_customer(db_session, test_user, test_user.subscription)
        assert customer_id == test_user.subscription.stripe_customer_id
        create.assert_not_awaited()

    async def test_creates_and_links_customer(self, db_session: AsyncSession, test_free_user):
        with patch(
            "app.services.subscription_service.create_customer",
            new_callable=AsyncMock,
            return_value=StripeObj(id="cus_created"),
        ) as create:
            customer_id = await ensure_stripe_customer(db_session, test_free_user, test_free_user.subscription)

        assert customer_id == "cus_created"
        assert test_free_user.subscription.stripe_customer_id == "cus_created"
        create.assert_awaited_once_with(
            email=test_free_user.email, name=test_free_user.name, user_id=str(test_free_user.id)
        )


@pytest.mark.asyncio
class TestPlanChangeClaim:
    async def test_first_claim_succeeds(self, db_session: AsyncSession, test_user):
        sub = test_user.subscription
        assert await claim_plan_change(db_session, sub, "pro", "yearly", None, NOW)
        assert sub.pending_plan == "pro"
        assert sub.billing_period == "yearly"
        assert sub.last_plan_change_at == NOW
        assert sub.plan == "starter"

    async def test_stale_read_loses(self, db_session: AsyncSession, make_user):
        earlier = NOW - timedelta(days=20)
        user = await make_user(last_plan_change_at=earlier)
        sub = user.subscription

        assert await claim_plan_change(db_session, sub, "pro", "monthly", earlier, NOW)
        # A second request that read the row before the first claim
        assert not await claim_plan_change(db_session, sub, "agency", "monthly", earlier, NOW)
        assert sub.pending_plan == "pro"

    async def test_release_restores_previous_values(self, db_session: AsyncSession, test_user):
        sub = test_user.subscription
        await claim_plan_change(db_session, sub, "pro", "monthly", None, NOW)

        assert await release_plan_change(db_session, sub, None, None, claimed_at=NOW)
        assert sub.pending_plan is None
        assert sub.last_plan_change_at is None

    async def test_release_does_not_clobber_newer_claim(self, db_session: AsyncSession, test_user):
        sub = test_user.subscription
        later = NOW + timedelta(seconds=1)
        await claim_plan_change(db_session, sub, "pro", "monthly", None, NOW)
        await claim_plan_change(db_session, sub, "agency", "monthly", NOW, later)

        assert not await release_plan_change(db_session, sub, None, None, claimed_at=NOW)
        assert sub.pending_plan == "agency"


@pytest.mark.asyncio
class TestTransitions:
    async def test_update_from_stripe(self, db_session: AsyncSession, test_user):
        sub = test_user.subscription
        await update_subscription_from_stripe(
            db_session,
            subscription=sub,
            stripe_subscription_id="sub_resync",
            status="trialing",
            plan="pro",
            trial_ends_at=NOW + timedelta(days=3),
            current_period_start=NOW,
            renewal_at=NOW + timedelta(days=30),
        )
        assert sub.stripe_subscription_id == "sub_resync"
        assert sub.plan == "pro"
        assert sub.status_enum == SubscriptionStatus.SUBSCRIBED
        assert sub.trial_ends_at == NOW + timedelta(days=3)

    async def test_failed_then_succeeded_promotes_pending(self, db_session: AsyncSession, make_user):
        user = await make_user(plan="starter", pending_plan="pro")
        sub = user.subscription

        await mark_payment_failed(db_session, sub)
        assert (sub.plan, sub.pending_plan, sub.status) == ("starter", "pro", "past_due")

        await mark_payment_succeeded(db_session, sub, renewal_at=NOW + timedelta(days=30))
        assert (sub.plan, sub.pending_plan, sub.status) == ("pro", None, "active")
        assert sub.status_enum == SubscriptionStatus.SUBSCRIBED
        assert sub.renewal_at == NOW + timedelta(days=30)

    async def test_succeeded_without_renewal_keeps_existing(self, db_session: AsyncSession, make_user):
        user = await make_user(renewal_at=NOW)
        await mark_payment_succeeded(db_session, user.subscription)
        assert user.subscription.renewal_at == NOW

    async def test_canceled(self, db_session: AsyncSession, make_user):
        user = await make_user(plan="agency", pending_plan="pro", renewal_at=NOW)
        sub = user.subscription

        await mark_canceled(db_session, sub, NOW)

        assert sub.plan == "agency"
        assert sub.pending_plan is None
        assert sub.renewal_at is None
        assert sub.ends_at == NOW
        assert sub.status_enum == SubscriptionStatus.UNSUBSCRIBED
