"""add_subscription_status_enum

Revision ID: 8d41e6c2f7a9
Revises: 3f9c2a71b0d4
Create Date: 2026-09-16 14:30:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '8d41e6c2f7a9'
down_revision: Union[str, Sequence[str], None] = '3f9c2a71b0d4'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

subscription_status = sa.Enum("SUBSCRIBED", "UNSUBSCRIBED", name="subscription_status")


def upgrade() -> None:
    # Step 1: Create the enum type and a nullable column (NULL = not migrated)
    subscription_status.create(op.get_bind(), checkfirst=True)
    op.add_column("subscriptions", sa.Column("status_enum", subscription_status, nullable=True))

    # Step 2: Backfill from the legacy status for rows we can classify
    op.execute("""
        UPDATE subscriptions
        SET status_enum = 'SUBSCRIBED'
        WHERE lower(status) IN ('active', 'trialing', 'cancels_at_period_end')
    """)
    op.execute("""
        UPDATE subscriptions
        SET status_enum = 'UNSUBSCRIBED'
        WHERE lower(status) IN (
            'none', 'canceled', 'incomplete', 'incomplete_expired', 'unpaid', 'past_due'
        )
    """)


def downgrade() -> None:
    op.drop_column("subscriptions", "status_enum")
    subscription_status.drop(op.get_bind(), checkfirst=True)
