"""Workflow orchestration components."""

from caseflow.orchestrator.coordinator import InstanceLockRegistry
from caseflow.orchestrator.engine import WorkflowOrchestrator

__all__ = ["WorkflowOrchestrator", "InstanceLockRegistry"]
