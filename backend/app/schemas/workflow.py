"""Pydantic v2 schemas for workflow drafts and integration validation."""

import uuid
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class WorkflowDefinition(BaseModel):
    """A workflow draft: one trigger plus an ordered list of actions.

    Trigger and action bodies are free-form; an action may declare
    ``origin_kind`` ("internal" or "external") to skip keyword classification.
    """

    name: str = Field(default="Untitled workflow", min_length=1, max_length=255)
    trigger: dict[str, Any] | None = None
    actions: list[dict[str, Any]] = Field(default_factory=list)


class RestrictedIntegrationResponse(BaseModel):
    name: str
    reason: str  # not_supported, plan_required, external_on_free
    integration_id: str | None = None
    required_plan: str | None = None
    action_id: str | None = None


class WorkflowResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    name: str
    active: bool
    trigger: dict[str, Any] | None = None
    actions: list[dict[str, Any]] | None = None
