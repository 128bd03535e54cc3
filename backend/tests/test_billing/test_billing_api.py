"""Tests for billing API endpoints with mocked Stripe calls."""

from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest
import stripe
from httpx import AsyncClient
from sqlalchemy.exc import OperationalError

from app.billing.plans import PlanCatalog
from app.config import settings
from app.database import utcnow
from app.models.subscription import SubscriptionStatus
from factories import StripeObj, add_workflows, auth_headers_for

STRIPE = "app.billing.stripe_client"


class TestListPlans:
    """Test GET /api/v1/billing/plans."""

    @pytest.mark.asyncio
    async def test_list_plans_returns_4_plans(self, client: AsyncClient):
        """Should return all 4 plans, cheapest first."""
        response = await client.get("/api/v1/billing/plans")
        assert response.status_code == 200
        plans = response.json()["plans"]
        assert [p["name"] for p in plans] == ["free", "starter", "pro", "agency"]

    @pytest.mark.asyncio
    async def test_plan_details_structure(self, client: AsyncClient):
        """Each plan has its limits and feature flags."""
        response = await client.get("/api/v1/billing/plans")
        agency = response.json()["plans"][3]
        assert agency["max_active_workflows"] == 40
        assert agency["max_monthly_executions"] == 100000
        assert agency["allowed_integration_tier"] == "all+custom"
        assert "white_label" in agency["feature_flags"]


class TestBillingState:
    """Test GET /api/v1/billing/state."""

    @pytest.mark.asyncio
    async def test_requires_auth(self, client: AsyncClient):
        response = await client.get("/api/v1/billing/state")
        assert response.status_code == 401
        assert response.json()["success"] is False

    @pytest.mark.asyncio
    async def test_subscribed_user(self, client: AsyncClient, db_session, test_user, auth_headers):
        """Subscribed starter user sees full access and usage against limits."""
        await add_workflows(db_session, test_user, 2)
        customer = StripeObj(invoice_settings=StripeObj(default_payment_method="pm_1"))
        with patch(f"{STRIPE}.retrieve_customer", new_callable=AsyncMock, return_value=customer):
            response = await client.get("/api/v1/billing/state", headers=auth_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["plan"] == "starter"
        assert data["access_level"] == "full"
        assert data["usage"]["workflows"] == {"current": 2, "max": 3}
        assert data["has_payment_method"] is True
        assert data["degraded"] is False

    @pytest.mark.asyncio
    async def test_free_user(self, client: AsyncClient, free_auth_headers):
        response = await client.get("/api/v1/billing/state", headers=free_auth_headers)
        data = response.json()
        assert data["plan"] == "free"
        assert data["access_level"] == "minimal"
        assert data["can_change_plan"] is True

    @pytest.mark.asyncio
    async def test_degraded_state_on_failure(self, client: AsyncClient, auth_headers):
        """An internal failure returns the safe default instead of an error."""
        with patch(
            "app.services.billing_service.get_billing_state",
            side_effect=RuntimeError("database exploded"),
        ):
            response = await client.get("/api/v1/billing/state", headers=auth_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["degraded"] is True
        assert data["plan"] == "free"
        assert data["access_level"] == "minimal"
        assert data["usage"]["executions"] == {"current": 0, "max": 0}

    @pytest.mark.asyncio
    async def test_degraded_state_when_user_lookup_fails(self, client: AsyncClient, auth_headers):
        """A database failure while loading the user still yields the safe default."""
        with patch(
            "app.api.v1.billing.load_user",
            side_effect=OperationalError("SELECT users", {}, Exception("connection refused")),
        ):
            response = await client.get("/api/v1/billing/state", headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["degraded"] is True
        assert response.json()["plan"] == "free"

    @pytest.mark.asyncio
    async def test_invalid_token_is_not_degraded(self, client: AsyncClient):
        response = await client.get(
            "/api/v1/billing/state", headers={"Authorization": "Bearer not-a-jwt"}
        )
        assert response.status_code == 401


class TestSubscribe:
    """Test POST /api/v1/billing/subscribe."""

    @pytest.mark.asyncio
    async def test_subscribe_starts_trial(self, client: AsyncClient, make_user):
        user = await make_user(
            plan="free",
            status="none",
            status_enum=SubscriptionStatus.UNSUBSCRIBED,
            stripe_subscription_id=None,
        )
        trial_end = int((utcnow() + timedelta(days=3)).timestamp())
        with patch(
            f"{STRIPE}.create_subscription",
            new_callable=AsyncMock,
            return_value=StripeObj(id="sub_api", status="trialing", trial_end=trial_end),
        ):
            response = await client.post(
                "/api/v1/billing/subscribe",
                json={"plan": "pro", "billing_period": "yearly"},
                headers=auth_headers_for(user),
            )

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["code"] == "SUBSCRIBED"
        assert body["plan"] == "pro"
        assert body["billing_period"] == "yearly"

    @pytest.mark.asyncio
    async def test_subscribe_without_payment_method(self, client: AsyncClient, free_auth_headers):
        response = await client.post(
            "/api/v1/billing/subscribe", json={"plan": "starter"}, headers=free_auth_headers
        )
        assert response.status_code == 400
        assert response.json()["code"] == "PAYMENT_METHOD_REQUIRED"

    @pytest.mark.asyncio
    async def test_missing_plan_is_validation_error(self, client: AsyncClient, auth_headers):
        response = await client.post("/api/v1/billing/subscribe", json={}, headers=auth_headers)
        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"


class TestSwitchPlan:
    """Test POST /api/v1/billing/switch-plan."""

    @pytest.mark.asyncio
    async def test_switch_records_pending_plan(self, client: AsyncClient, test_user, auth_headers):
        with patch(f"{STRIPE}.switch_subscription_price", new_callable=AsyncMock):
            response = await client.post(
                "/api/v1/billing/switch-plan", json={"plan": "pro"}, headers=auth_headers
            )

        assert response.status_code == 200
        body = response.json()
        assert body["code"] == "PLAN_CHANGE_PENDING"
        assert body["plan"] == "starter"
        assert body["pending_plan"] == "pro"

    @pytest.mark.asyncio
    async def test_second_switch_hits_cooldown(self, client: AsyncClient, auth_headers):
        with patch(f"{STRIPE}.switch_subscription_price", new_callable=AsyncMock):
            await client.post("/api/v1/billing/switch-plan", json={"plan": "pro"}, headers=auth_headers)
            response = await client.post(
                "/api/v1/billing/switch-plan", json={"plan": "agency"}, headers=auth_headers
            )

        assert response.status_code == 403
        body = response.json()
        assert body["code"] == "PLAN_CHANGE_COOLDOWN"
        assert body["days_remaining"] == 14

    @pytest.mark.asyncio
    async def test_switch_to_free_rejected(self, client: AsyncClient, auth_headers):
        response = await client.post(
            "/api/v1/billing/switch-plan", json={"plan": "free"}, headers=auth_headers
        )
        assert response.status_code == 400
        assert response.json()["code"] == "INVALID_PLAN"

    @pytest.mark.asyncio
    async def test_provider_error(self, client: AsyncClient, auth_headers):
        with patch(
            f"{STRIPE}.switch_subscription_price",
            side_effect=stripe.APIConnectionError("unreachable"),
        ):
            response = await client.post(
                "/api/v1/billing/switch-plan", json={"plan": "pro"}, headers=auth_headers
            )

        assert response.status_code == 502
        assert response.json()["code"] == "BILLING_PROVIDER_ERROR"

    @pytest.mark.asyncio
    async def test_missing_price_configuration(self, client: AsyncClient, auth_headers):
        """A plan without a configured Stripe price is a server-side configuration error."""
        with patch("app.services.billing_service.get_catalog") as get_catalog:
            get_catalog.return_value = PlanCatalog.from_price_ids({})
            response = await client.post(
                "/api/v1/billing/switch-plan", json={"plan": "pro"}, headers=auth_headers
            )

        assert response.status_code == 500
        assert response.json()["code"] == "BILLING_NOT_CONFIGURED"

    @pytest.mark.asyncio
    async def test_missing_secret_key_leaves_no_cooldown(
        self, client: AsyncClient, db_session, test_user, auth_headers
    ):
        with patch.object(settings, "stripe_secret_key", ""):
            response = await client.post(
                "/api/v1/billing/switch-plan", json={"plan": "pro"}, headers=auth_headers
            )
        assert response.status_code == 500
        assert response.json()["code"] == "BILLING_NOT_CONFIGURED"

        sub = test_user.subscription
        await db_session.refresh(sub)
        assert sub.pending_plan is None
        assert sub.last_plan_change_at is None

    @pytest.mark.asyncio
    async def test_empty_body_is_validation_error(self, client: AsyncClient, auth_headers):
        response = await client.post("/api/v1/billing/switch-plan", json={}, headers=auth_headers)
        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"


class TestCancelAndReactivate:
    """Test POST /api/v1/billing/cancel and /reactivate."""

    @pytest.mark.asyncio
    async def test_cancel_requires_confirmation(self, client: AsyncClient, auth_headers):
        response = await client.post(
            "/api/v1/billing/cancel", json={"confirmation": "unsubscribe"}, headers=auth_headers
        )
        assert response.status_code == 400
        assert response.json()["code"] == "CONFIRMATION_REQUIRED"

    @pytest.mark.asyncio
    async def test_cancel_then_reactivate(self, client: AsyncClient, auth_headers):
        with patch(
            f"{STRIPE}.set_cancel_at_period_end",
            new_callable=AsyncMock,
            return_value=StripeObj(id="sub_x", status="active"),
        ):
            cancel = await client.post(
                "/api/v1/billing/cancel",
                json={"confirmation": "UNSUBSCRIBE", "reason": "Too expensive"},
                headers=auth_headers,
            )
            reactivate = await client.post("/api/v1/billing/reactivate", headers=auth_headers)

        assert cancel.status_code == 200
        assert cancel.json()["status"] == "cancels_at_period_end"
        assert reactivate.status_code == 200
        assert reactivate.json()["code"] == "SUBSCRIPTION_REACTIVATED"

    @pytest.mark.asyncio
    async def test_reactivate_without_cancellation(self, client: AsyncClient, auth_headers):
        response = await client.post("/api/v1/billing/reactivate", headers=auth_headers)
        assert response.status_code == 409
        assert response.json()["code"] == "NOT_CANCELED"


class TestPaymentMethod:
    """Test POST/DELETE /api/v1/billing/payment-method."""

    @pytest.mark.asyncio
    async def test_attach(self, client: AsyncClient, auth_headers):
        with patch(f"{STRIPE}.attach_payment_method", new_callable=AsyncMock):
            response = await client.post(
                "/api/v1/billing/payment-method",
                json={"payment_method_id": "pm_card_visa"},
                headers=auth_headers,
            )
        assert response.status_code == 200
        assert response.json()["has_payment_method"] is True

    @pytest.mark.asyncio
    async def test_attach_empty_id(self, client: AsyncClient, auth_headers):
        response = await client.post(
            "/api/v1/billing/payment-method", json={"payment_method_id": ""}, headers=auth_headers
        )
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_remove(self, client: AsyncClient, auth_headers):
        with (
            patch(
                f"{STRIPE}.list_payment_methods",
                new_callable=AsyncMock,
                return_value=[StripeObj(id="pm_1")],
            ),
            patch(f"{STRIPE}.detach_payment_method", new_callable=AsyncMock),
        ):
            response = await client.delete("/api/v1/billing/payment-method", headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["code"] == "PAYMENT_METHOD_REMOVED"


class TestIntegrations:
    """Test GET /api/v1/billing/integrations."""

    @pytest.mark.asyncio
    async def test_starter_integrations(self, client: AsyncClient, auth_headers):
        response = await client.get("/api/v1/billing/integrations", headers=auth_headers)
        data = response.json()
        assert data["plan"] == "starter"
        assert len(data["integrations"]) == 15
        assert "gmail" in data["integrations"]
        assert data["categories"] == {"basic": True, "advanced": False, "custom": False}

    @pytest.mark.asyncio
    async def test_free_user_has_none(self, client: AsyncClient, free_auth_headers):
        response = await client.get("/api/v1/billing/integrations", headers=free_auth_headers)
        assert response.json()["integrations"] == []

    @pytest.mark.asyncio
    async def test_past_due_user_has_none(self, client: AsyncClient, make_user):
        user = await make_user(plan="agency", status="past_due", status_enum=SubscriptionStatus.UNSUBSCRIBED)
        response = await client.get("/api/v1/billing/integrations", headers=auth_headers_for(user))
        data = response.json()
        assert data["access_level"] == "minimal"
        assert data["integrations"] == []


class TestIntegrationCheck:
    """Test GET /api/v1/billing/integrations/{name}."""

    @pytest.mark.asyncio
    async def test_allowed_on_plan(self, client: AsyncClient, auth_headers):
        response = await client.get("/api/v1/billing/integrations/Google Sheets", headers=auth_headers)
        assert response.status_code == 200
        body = response.json()
        assert body["code"] == "INTEGRATION_ALLOWED"
        assert body["integration"] == "google-sheets"
        assert body["category"] == "basic"

    @pytest.mark.asyncio
    async def test_plan_too_low(self, client: AsyncClient, auth_headers):
        response = await client.get("/api/v1/billing/integrations/notion", headers=auth_headers)
        assert response.status_code == 403
        body = response.json()
        assert body["code"] == "INTEGRATION_NOT_AVAILABLE"
        assert body["plan"] == "starter"
        assert body["required_plan"] == "pro"

    @pytest.mark.asyncio
    async def test_unsupported_integration(self, client: AsyncClient, auth_headers):
        response = await client.get("/api/v1/billing/integrations/myspace", headers=auth_headers)
        assert response.status_code == 400
        assert response.json()["code"] == "INTEGRATION_NOT_SUPPORTED"

    @pytest.mark.asyncio
    async def test_free_user_needs_subscription(self, client: AsyncClient, free_auth_headers):
        response = await client.get("/api/v1/billing/integrations/gmail", headers=free_auth_headers)
        assert response.status_code == 403
        assert response.json()["code"] == "SUBSCRIPTION_REQUIRED"
        assert response.json()["required_plan"] == "starter"

    @pytest.mark.asyncio
    async def test_lapsed_payment_blocks_connection(self, client: AsyncClient, make_user):
        user = await make_user(plan="agency", status="past_due", status_enum=SubscriptionStatus.UNSUBSCRIBED)
        response = await client.get("/api/v1/billing/integrations/stripe", headers=auth_headers_for(user))
        assert response.status_code == 403
        body = response.json()
        assert body["code"] == "SUBSCRIPTION_REQUIRED"
        assert body["plan"] == "agency"
