"""Core domain models and business logic."""

from caseflow.core.models import (
    StageTemplate,
    TaskTemplate,
    WorkflowTemplate,
    StageInstance,
    TaskInstance,
    WorkflowInstance,
    TriggerRule,
    BusinessEvent,
    EscalationRule,
    Notification,
    WorkflowEvent,
)
from caseflow.core.state_machine import (
    TaskStatus,
    StageStatus,
    InstanceStatus,
    TaskStateMachine,
)
from caseflow.core.dag import DependencyValidator, DependencyResolver, validate_template

__all__ = [
    "StageTemplate",
    "TaskTemplate",
    "WorkflowTemplate",
    "StageInstance",
    "TaskInstance",
    "WorkflowInstance",
    "TriggerRule",
    "BusinessEvent",
    "EscalationRule",
    "Notification",
    "WorkflowEvent",
    "TaskStatus",
    "StageStatus",
    "InstanceStatus",
    "TaskStateMachine",
    "DependencyValidator",
    "DependencyResolver",
    "validate_template",
]
