"""
Error kinds raised by the workflow engine.

Validation errors on mutating commands are raised synchronously to the
caller. Trigger action failures and notification delivery failures are
recovered locally and only ever logged.
"""

from typing import Any, Optional


class WorkflowError(Exception):
    """Base class for all engine errors."""

    code = "WORKFLOW_ERROR"

    def __init__(self, message: str, **details: Any):
        self.message = message
        self.details = details
        super().__init__(message)


class TemplateNotFoundError(WorkflowError):
    """Raised when a template id (or version) is unknown."""

    code = "TEMPLATE_NOT_FOUND"

    def __init__(self, template_id: str, version: Optional[int] = None):
        self.template_id = template_id
        self.version = version
        suffix = f" (version {version})" if version is not None else ""
        super().__init__(f"Template not found: {template_id}{suffix}")


class InstanceNotFoundError(WorkflowError):
    """Raised when a workflow instance id is unknown."""

    code = "INSTANCE_NOT_FOUND"

    def __init__(self, instance_id: str):
        self.instance_id = instance_id
        super().__init__(f"Workflow instance not found: {instance_id}")


class TaskNotFoundError(WorkflowError):
    """Raised when a task id is unknown."""

    code = "TASK_NOT_FOUND"

    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"Task not found: {task_id}")


class StageNotFoundError(WorkflowError):
    """Raised when a stage does not belong to the instance."""

    code = "STAGE_NOT_FOUND"

    def __init__(self, stage_ref: str, instance_id: Optional[str] = None):
        self.stage_ref = stage_ref
        self.instance_id = instance_id
        where = f" in instance {instance_id}" if instance_id else ""
        super().__init__(f"Stage not found: {stage_ref}{where}")


class CaseNotFoundError(WorkflowError):
    """Raised when the case registry does not know the case."""

    code = "CASE_NOT_FOUND"

    def __init__(self, case_id: str):
        self.case_id = case_id
        super().__init__(f"Case not found: {case_id}")


class NotificationNotFoundError(WorkflowError):
    """Raised when a notification id is unknown."""

    code = "NOTIFICATION_NOT_FOUND"

    def __init__(self, notification_id: str):
        self.notification_id = notification_id
        super().__init__(f"Notification not found: {notification_id}")


class InstanceFrozenError(WorkflowError):
    """Raised when mutating an instance that is cancelled or completed."""

    code = "INSTANCE_FROZEN"

    def __init__(self, instance_id: str, status: str):
        self.instance_id = instance_id
        self.status = status
        super().__init__(f"Workflow instance {instance_id} is frozen ({status})")


class InvalidTransitionError(WorkflowError):
    """Raised when a task transition is illegal or gated by dependencies."""

    code = "INVALID_TRANSITION"

    def __init__(self, from_state: str, to_state: str, message: str = ""):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            f"Invalid transition from {from_state} to {to_state}"
            + (f": {message}" if message else "")
        )


class CyclicDependencyError(WorkflowError):
    """Raised at publish time when the dependency graph has a cycle."""

    code = "CYCLIC_DEPENDENCY"

    def __init__(self, scope: str, cycle_nodes: list[str]):
        self.scope = scope
        self.cycle_nodes = cycle_nodes
        super().__init__(
            f"Circular {scope} dependencies involving: {cycle_nodes}"
        )


class TemplateValidationError(WorkflowError):
    """Raised when a template has structural errors other than cycles."""

    code = "TEMPLATE_INVALID"

    def __init__(self, errors: list[str]):
        self.errors = errors
        super().__init__(f"Template validation failed: {errors}")


class TaskSpecError(WorkflowError):
    """Raised when an ad hoc task specification is inconsistent."""

    code = "TASK_SPEC_INVALID"


class RuleValidationError(WorkflowError):
    """Raised when a trigger rule is rejected at registration time."""

    code = "RULE_INVALID"


class ConcurrentModificationError(WorkflowError):
    """Raised when an optimistic version check fails on save."""

    code = "CONCURRENT_MODIFICATION"

    def __init__(self, instance_id: str, expected: int, actual: Optional[int]):
        self.instance_id = instance_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Instance {instance_id} was modified concurrently "
            f"(expected version {expected}, found {actual})"
        )
