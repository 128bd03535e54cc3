"""Workflow endpoints — integration validation, activation and runs under plan limits."""

import dataclasses
import logging
import uuid

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import (
    check_execution_limit,
    get_current_subscription,
    get_db,
    require_full_access,
)
from app.api.responses import ApiError, envelope
from app.billing.dependencies import enforce_entitlement
from app.billing.entitlements import IntegrationValidation, validate_workflow_integrations
from app.models.subscription import Subscription
from app.models.workflow import Execution, Workflow
from app.schemas.workflow import WorkflowDefinition, WorkflowResponse
from app.services.usage_service import count_active_workflows

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/workflows", tags=["workflows"])


def _restricted_payload(validation: IntegrationValidation) -> list[dict]:
    return [dataclasses.asdict(item) for item in validation.restricted_integrations]


def _raise_if_restricted(validation: IntegrationValidation, subscription: Subscription) -> None:
    if validation.valid:
        return
    raise ApiError(
        403,
        "INTEGRATIONS_RESTRICTED",
        "This workflow uses integrations that are not available on your plan.",
        plan=subscription.plan or "free",
        restricted_integrations=_restricted_payload(validation),
    )


async def _get_owned_workflow(
    db: AsyncSession, workflow_id: uuid.UUID, subscription: Subscription
) -> Workflow:
    result = await db.execute(
        select(Workflow).where(
            Workflow.id == workflow_id,
            Workflow.user_id == subscription.user_id,
        )
    )
    workflow = result.scalar_one_or_none()
    if workflow is None:
        raise ApiError(404, "WORKFLOW_NOT_FOUND", "Workflow not found.")
    return workflow


@router.post("/validate")
async def validate_workflow(
    body: WorkflowDefinition,
    subscription: Subscription = Depends(get_current_subscription),
) -> JSONResponse:
    """Check a draft's trigger and actions against the user's plan."""
    validation = validate_workflow_integrations(subscription.plan, body.model_dump())
    if validation.valid:
        return envelope(
            True,
            "VALID",
            "All integrations are available on your plan.",
            valid=True,
            restricted_integrations=[],
        )
    return envelope(
        False,
        "INTEGRATIONS_RESTRICTED",
        "This workflow uses integrations that are not available on your plan.",
        valid=False,
        restricted_integrations=_restricted_payload(validation),
    )


@router.post("", status_code=201)
async def create_workflow(
    body: WorkflowDefinition,
    db: AsyncSession = Depends(get_db),
    subscription: Subscription = Depends(require_full_access),
) -> JSONResponse:
    """Save a new (inactive) workflow after validating its integrations."""
    validation = validate_workflow_integrations(subscription.plan, body.model_dump())
    _raise_if_restricted(validation, subscription)

    workflow = Workflow(
        user_id=subscription.user_id,
        name=body.name,
        active=False,
        trigger=body.trigger,
        actions=body.actions,
    )
    db.add(workflow)
    await db.flush()
    logger.info("User %s created workflow %s", subscription.user_id, workflow.id)
    return envelope(
        True,
        "WORKFLOW_CREATED",
        "Workflow created.",
        status_code=201,
        workflow=WorkflowResponse.model_validate(workflow).model_dump(mode="json"),
    )


@router.post("/{workflow_id}/activate")
async def activate_workflow(
    workflow_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    subscription: Subscription = Depends(require_full_access),
) -> JSONResponse:
    """Activate a workflow, re-checking integrations and the active-workflow limit."""
    workflow = await _get_owned_workflow(db, workflow_id, subscription)
    if workflow.active:
        return envelope(True, "ALREADY_ACTIVE", "Workflow is already active.", workflow_id=workflow.id)

    # The plan may have changed since the workflow was saved
    _raise_if_restricted(validate_workflow_integrations(subscription.plan, workflow), subscription)

    current = await count_active_workflows(db, subscription.user_id)
    enforce_entitlement(subscription, "max_active_workflows", usage=current)

    workflow.active = True
    await db.flush()
    logger.info("User %s activated workflow %s", subscription.user_id, workflow.id)
    return envelope(
        True,
        "WORKFLOW_ACTIVATED",
        "Workflow activated.",
        workflow_id=workflow.id,
        active_workflows=current + 1,
    )


@router.post("/{workflow_id}/run", status_code=202)
async def run_workflow(
    workflow_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    subscription: Subscription = Depends(check_execution_limit),
) -> JSONResponse:
    """Queue one execution of an active workflow, counted against the monthly limit."""
    workflow = await _get_owned_workflow(db, workflow_id, subscription)
    if not workflow.active:
        raise ApiError(409, "WORKFLOW_INACTIVE", "Activate the workflow before running it.")

    execution = Execution(workflow_id=workflow.id, user_id=subscription.user_id, status="queued")
    db.add(execution)
    await db.flush()
    return envelope(
        True,
        "EXECUTION_QUEUED",
        "Workflow run queued.",
        status_code=202,
        execution_id=execution.id,
        workflow_id=workflow.id,
    )
