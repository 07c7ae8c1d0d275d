"""PostgreSQL storage layer."""

from caseflow.storage.postgres.models import (
    Base,
    WorkflowTemplateModel,
    WorkflowInstanceModel,
    TaskIndexModel,
    NotificationModel,
    WorkflowEventModel,
)
from caseflow.storage.postgres.repository import PostgresWorkflowStore
from caseflow.storage.postgres.database import Database

__all__ = [
    "Base",
    "WorkflowTemplateModel",
    "WorkflowInstanceModel",
    "TaskIndexModel",
    "NotificationModel",
    "WorkflowEventModel",
    "PostgresWorkflowStore",
    "Database",
]
