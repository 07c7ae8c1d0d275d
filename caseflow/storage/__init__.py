"""Storage layer for templates, instances, notifications and the event log."""

from caseflow.storage.base import WorkflowStore
from caseflow.storage.memory import InMemoryWorkflowStore

__all__ = ["WorkflowStore", "InMemoryWorkflowStore"]
