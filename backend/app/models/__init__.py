"""SQLAlchemy models for Synth.

All models are imported here so that Alembic's autogenerate can discover
them via Base.metadata. If you add a new model, import it in this file.
"""

from app.models.subscription import Subscription, SubscriptionStatus
from app.models.user import User
from app.models.webhook_event import WebhookEventLog
from app.models.workflow import Execution, Workflow

__all__ = [
    "Execution",
    "Subscription",
    "SubscriptionStatus",
    "User",
    "WebhookEventLog",
    "Workflow",
]
