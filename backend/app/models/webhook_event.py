"""Webhook event log — idempotency record per Stripe event id."""

from datetime import datetime

from sqlalchemy import Boolean, Integer, String, Text, false
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base, TimestampMixin, UUIDPrimaryKeyMixin

EVENT_RECORDED = "recorded"
EVENT_PROCESSING = "processing"
EVENT_PROCESSED = "processed"
EVENT_FAILED = "failed"


class WebhookEventLog(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """One row per Stripe event id; ``processed`` rows are never reapplied."""

    __tablename__ = "webhook_event_logs"

    stripe_event_id: Mapped[str] = mapped_column(String(255), unique=True, index=True, nullable=False)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=EVENT_RECORDED)
    processed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=false())
    claimed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return (
            f"<WebhookEventLog(stripe_event_id={self.stripe_event_id!r}, "
            f"type={self.event_type!r}, status={self.status!r})>"
        )
