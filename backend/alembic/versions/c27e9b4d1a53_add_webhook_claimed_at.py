"""add_webhook_claimed_at

Revision ID: c27e9b4d1a53
Revises: 8d41e6c2f7a9
Create Date: 2026-10-19 10:15:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = 'c27e9b4d1a53'
down_revision: Union[str, Sequence[str], None] = '8d41e6c2f7a9'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.add_column("webhook_event_logs", sa.Column("claimed_at", sa.DateTime(), nullable=True))


def downgrade() -> None:
    op.drop_column("webhook_event_logs", "claimed_at")
