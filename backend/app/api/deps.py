"""Shared API dependencies — single import point for all routers.

Re-exports database session, authentication and plan gating dependencies so
that router modules can import everything they need from one place::

    from app.api.deps import get_db, get_current_subscription, require_full_access
"""

from app.auth.dependencies import get_current_subscription, get_current_user, get_token_identity
from app.billing.dependencies import (
    check_execution_limit,
    check_workflow_limit,
    require_feature,
    require_full_access,
)
from app.database import get_db

__all__ = [
    "get_db",
    "get_token_identity",
    "get_current_user",
    "get_current_subscription",
    "require_full_access",
    "check_workflow_limit",
    "check_execution_limit",
    "require_feature",
]
