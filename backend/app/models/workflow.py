"""Workflow and execution models — read by usage counting and integration checks."""

import uuid
from datetime import datetime

from sqlalchemy import JSON, Boolean, ForeignKey, String, false, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base, TimestampMixin, UUIDPrimaryKeyMixin, utcnow


class Workflow(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """An automation: one trigger plus an ordered list of actions."""

    __tablename__ = "workflows"

    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=false())
    trigger: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    actions: Mapped[list | None] = mapped_column(JSON, nullable=True)

    # Relationships
    user: Mapped["User"] = relationship(back_populates="workflows", lazy="raise")  # type: ignore[name-defined]  # noqa: F821

    def __repr__(self) -> str:
        return f"<Workflow(id={self.id}, name={self.name!r}, active={self.active})>"


class Execution(UUIDPrimaryKeyMixin, Base):
    """A single workflow run, counted against the monthly execution limit."""

    __tablename__ = "executions"

    workflow_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("workflows.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    status: Mapped[str] = mapped_column(String(50), nullable=False, default="queued")
    created_at: Mapped[datetime] = mapped_column(default=utcnow, server_default=func.now(), index=True)

    def __repr__(self) -> str:
        return f"<Execution(id={self.id}, workflow_id={self.workflow_id}, status={self.status!r})>"
