"""Subscription model — Stripe billing and entitlement state per user."""

import enum
import uuid
from datetime import datetime

from sqlalchemy import Boolean, Enum, ForeignKey, String, false
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base, TimestampMixin, UUIDPrimaryKeyMixin


class SubscriptionStatus(str, enum.Enum):
    """Authoritative subscription status (replaces the free-text ``status``)."""

    SUBSCRIBED = "SUBSCRIBED"
    UNSUBSCRIBED = "UNSUBSCRIBED"


class Subscription(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """Tracks a user's plan, pending plan change, trial window and Stripe handles."""

    __tablename__ = "subscriptions"

    # Foreign key: one subscription per user (UNIQUE enforces one-to-one)
    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
        index=True,
    )

    # Stripe identifiers
    stripe_customer_id: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)
    stripe_subscription_id: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)
    stripe_payment_method_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Plan & status
    plan: Mapped[str | None] = mapped_column(String(50), nullable=True, server_default="free")
    pending_plan: Mapped[str | None] = mapped_column(String(50), nullable=True)
    billing_period: Mapped[str] = mapped_column(String(20), nullable=False, default="monthly", server_default="monthly")
    status_enum: Mapped[SubscriptionStatus | None] = mapped_column(
        Enum(SubscriptionStatus, name="subscription_status"), nullable=True
    )
    # Legacy Stripe-style status, kept for audit/debug only
    status: Mapped[str | None] = mapped_column(String(50), nullable=True, server_default="none")

    # Time windows
    trial_ends_at: Mapped[datetime | None] = mapped_column(nullable=True)
    last_plan_change_at: Mapped[datetime | None] = mapped_column(nullable=True)
    current_period_start: Mapped[datetime | None] = mapped_column(nullable=True)
    renewal_at: Mapped[datetime | None] = mapped_column(nullable=True)
    ends_at: Mapped[datetime | None] = mapped_column(nullable=True)
    cancel_at_period_end: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=false()
    )

    # Cached so billing state survives Stripe outages
    payment_method_on_file: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=false()
    )

    # Relationships
    user: Mapped["User"] = relationship(back_populates="subscription", lazy="selectin")  # type: ignore[name-defined]  # noqa: F821

    def __repr__(self) -> str:
        return (
            f"<Subscription(id={self.id}, user_id={self.user_id}, plan={self.plan}, "
            f"pending_plan={self.pending_plan}, status={self.status_enum})>"
        )
