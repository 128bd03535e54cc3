"""Create Stripe products and prices in test mode.

Run once from the backend directory:
    python -m app.billing.scripts.create_stripe_products

Outputs price IDs to set in .env:
    STRIPE_STARTER_PRICE_ID=price_xxx
    STRIPE_STARTER_YEARLY_PRICE_ID=price_xxx
    ...
"""

import asyncio

from app.billing.plans import PAID_PLANS, PLAN_LIMITS, PlanLimits
from app.billing.stripe_client import BillingConfigurationError, get_stripe_client

# Yearly billing charges ten months
YEARLY_MONTHS_CHARGED = 10


def _describe(limits: PlanLimits) -> str:
    return (
        f"{limits.max_active_workflows} active workflows, "
        f"{limits.max_monthly_executions:,} executions/mo, "
        f"{limits.allowed_integration_tier} integrations, {limits.support_tier} support"
    )


async def main() -> None:
    try:
        client = get_stripe_client()
    except BillingConfigurationError:
        print("ERROR: STRIPE_SECRET_KEY is not set in .env")
        return

    env_lines: list[str] = []
    for plan in PAID_PLANS:
        limits = PLAN_LIMITS[plan]
        product = await client.v1.products.create_async(
            params={
                "name": f"Synth {limits.display_name}",
                "description": _describe(limits),
                "metadata": {"synth_plan": plan},
            }
        )
        monthly = await client.v1.prices.create_async(
            params={
                "product": product.id,
                "unit_amount": limits.price_monthly_cents,
                "currency": "usd",
                "recurring": {"interval": "month"},
            }
        )
        yearly = await client.v1.prices.create_async(
            params={
                "product": product.id,
                "unit_amount": limits.price_monthly_cents * YEARLY_MONTHS_CHARGED,
                "currency": "usd",
                "recurring": {"interval": "year"},
            }
        )
        print(f"Created product: {product.name} ({product.id})")
        print(f"  Monthly: ${limits.price_monthly_cents / 100:.2f}/mo ({monthly.id})")
        print(f"  Yearly:  ${limits.price_monthly_cents * YEARLY_MONTHS_CHARGED / 100:.2f}/yr ({yearly.id})")

        env_lines.append(f"STRIPE_{plan.upper()}_PRICE_ID={monthly.id}")
        env_lines.append(f"STRIPE_{plan.upper()}_YEARLY_PRICE_ID={yearly.id}")

    print("\n--- Add these to your .env ---")
    for line in env_lines:
        print(line)


if __name__ == "__main__":
    asyncio.run(main())
