"""
Domain models for the case workflow engine.

All models use Pydantic for validation and serialization with full Python 3.10+ type hints.
"""

import random
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from caseflow.core.state_machine import InstanceStatus, StageStatus, TaskStatus


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def generate_id(prefix: str) -> str:
    """Generate a prefixed unique identifier, e.g. ``task_3f9c1a2b4d5e``."""
    return f"{prefix}_{uuid4().hex[:12]}"


class Priority(str, Enum):
    """Task priority levels."""

    CRITICAL = "Critical"
    HIGH = "High"
    MEDIUM = "Medium"
    LOW = "Low"


class RetryConfig(BaseModel):
    """Configuration for retry behavior."""

    max_retries: int = Field(default=3, ge=0, le=100, description="Maximum retry attempts")
    initial_delay: float = Field(default=1.0, ge=0.0, description="Initial delay in seconds")
    max_delay: float = Field(default=60.0, ge=0.0, description="Maximum delay in seconds")
    exponential_base: float = Field(default=2.0, ge=1.0, le=10.0, description="Backoff base")
    jitter: bool = Field(default=True, description="Add randomized jitter")

    @model_validator(mode="after")
    def validate_delays(self) -> "RetryConfig":
        """Ensure max_delay is greater than initial_delay."""
        if self.max_delay < self.initial_delay:
            raise ValueError("max_delay must be >= initial_delay")
        return self

    def compute_delay(self, attempt: int) -> float:
        """Backoff delay before retry number ``attempt`` (1-based)."""
        delay = min(
            self.initial_delay * (self.exponential_base ** max(attempt - 1, 0)),
            self.max_delay,
        )
        if self.jitter and delay > 0:
            delay = random.uniform(delay / 2, delay)
        return delay


# ==================== Templates ====================


class TaskTemplate(BaseModel):
    """Definition of a task inside a stage template."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1, max_length=255, description="Task id, unique within the template")
    title: str = Field(..., min_length=1, max_length=255)
    assignee_role: Optional[str] = Field(default=None, description="Role resolved to a user at instantiation")
    priority: Priority = Field(default=Priority.MEDIUM)
    estimated_hours: float = Field(default=0.0, ge=0.0)
    sla_hours: Optional[float] = Field(default=None, gt=0.0, description="Hours from stage start until due")
    automated_trigger: Optional[str] = Field(default=None, description="Event name that starts this task")
    related_module: Optional[str] = Field(default=None, description="e.g. Documents, Discovery, Billing")
    dependencies: list[str] = Field(default_factory=list, description="Task ids this task depends on")

    @field_validator("dependencies")
    @classmethod
    def validate_dependencies(cls, v: list[str]) -> list[str]:
        """Validate dependencies list."""
        if len(v) != len(set(v)):
            raise ValueError("Duplicate dependencies not allowed")
        return v


class StageTemplate(BaseModel):
    """Definition of an ordered stage inside a workflow template."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1, max_length=255, description="Stage id, unique within the template")
    title: str = Field(..., min_length=1, max_length=255)
    order: int = Field(..., ge=0)
    tasks: list[TaskTemplate] = Field(default_factory=list)
    dependencies: list[str] = Field(default_factory=list, description="Stage ids this stage depends on")
    estimated_duration: float = Field(default=0.0, ge=0.0, description="Estimated duration in days")

    @field_validator("dependencies")
    @classmethod
    def validate_dependencies(cls, v: list[str]) -> list[str]:
        """Validate dependencies list."""
        if len(v) != len(set(v)):
            raise ValueError("Duplicate dependencies not allowed")
        return v


class WorkflowTemplate(BaseModel):
    """
    Versioned, immutable workflow template.

    Publishing an existing template id yields a new version; published
    versions are never modified.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1, max_length=255, description="Template id shared by all versions")
    version: int = Field(default=1, ge=1)
    name: str = Field(..., min_length=1, max_length=255)
    matter_type: Optional[str] = Field(default=None, description="Case matter type this template serves")
    stages: list[StageTemplate] = Field(..., min_length=1)
    estimated_duration: Optional[float] = Field(default=None, ge=0.0, description="Days; defaults to sum of stages")
    description: Optional[str] = Field(default=None)
    published_at: Optional[datetime] = Field(default=None)
    published_by: Optional[str] = Field(default=None)

    @field_validator("stages")
    @classmethod
    def validate_unique_ids(cls, v: list[StageTemplate]) -> list[StageTemplate]:
        """Ensure stage ids and task ids are unique across the template."""
        stage_ids = [stage.id for stage in v]
        if len(stage_ids) != len(set(stage_ids)):
            duplicates = {x for x in stage_ids if stage_ids.count(x) > 1}
            raise ValueError(f"Duplicate stage IDs found: {duplicates}")
        task_ids = [task.id for stage in v for task in stage.tasks]
        if len(task_ids) != len(set(task_ids)):
            duplicates = {x for x in task_ids if task_ids.count(x) > 1}
            raise ValueError(f"Duplicate task IDs found: {duplicates}")
        return sorted(v, key=lambda s: s.order)

    @property
    def total_estimated_duration(self) -> float:
        """Estimated duration in days."""
        if self.estimated_duration is not None:
            return self.estimated_duration
        return sum(stage.estimated_duration for stage in self.stages)

    def get_stage(self, stage_id: str) -> Optional[StageTemplate]:
        """Get stage template by ID."""
        for stage in self.stages:
            if stage.id == stage_id:
                return stage
        return None


# ==================== Instances ====================


class Comment(BaseModel):
    """A comment attached to a task."""

    id: str = Field(default_factory=lambda: generate_id("cmt"))
    author: str = Field(..., min_length=1)
    body: str = Field(..., min_length=1, max_length=10000)
    created_at: datetime = Field(default_factory=utcnow)


class TaskInstance(BaseModel):
    """Runtime state of a task within a workflow instance."""

    id: str = Field(default_factory=lambda: generate_id("task"))
    template_task_id: Optional[str] = Field(default=None, description="None for ad hoc tasks")
    title: str = Field(..., min_length=1, max_length=255)
    status: TaskStatus = Field(default=TaskStatus.PENDING)
    assignee: Optional[str] = Field(default=None)
    assignee_role: Optional[str] = Field(default=None)
    priority: Priority = Field(default=Priority.MEDIUM)

    # Timing
    due_date: Optional[datetime] = Field(default=None)
    start_date: Optional[datetime] = Field(default=None)
    completed_date: Optional[datetime] = Field(default=None)
    created_at: datetime = Field(default_factory=utcnow)
    sla_hours: Optional[float] = Field(default=None, description="Allotted hours from stage start")
    estimated_hours: float = Field(default=0.0, ge=0.0)

    # SLA flags (derived)
    sla_warning: bool = Field(default=False)
    sla_breached: bool = Field(default=False)
    escalation_level: int = Field(default=0, ge=0, description="Highest escalation level applied while overdue")

    automated_trigger: Optional[str] = Field(default=None)
    related_module: Optional[str] = Field(default=None)
    dependencies: list[str] = Field(default_factory=list, description="Task instance ids")
    comments: list[Comment] = Field(default_factory=list)


class StageInstance(BaseModel):
    """Runtime state of a stage within a workflow instance."""

    id: str = Field(default_factory=lambda: generate_id("stage"))
    template_stage_id: Optional[str] = Field(default=None)
    title: str = Field(..., min_length=1, max_length=255)
    status: StageStatus = Field(default=StageStatus.PENDING)
    order: int = Field(..., ge=0)
    start_date: Optional[datetime] = Field(default=None)
    end_date: Optional[datetime] = Field(default=None)
    estimated_duration: float = Field(default=0.0, ge=0.0, description="Days")
    dependencies: list[str] = Field(default_factory=list, description="Stage instance ids")
    activated: bool = Field(default=False, description="Stage has been opened for work")
    handoff_pending: bool = Field(
        default=False,
        description="Next stage after a completed one; opens once its dependencies allow",
    )
    tasks: list[TaskInstance] = Field(default_factory=list)

    def get_task(self, task_id: str) -> Optional[TaskInstance]:
        """Get task by ID."""
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None


class PendingAutomation(BaseModel):
    """An AdvanceStage action waiting for its stage to become eligible."""

    id: str = Field(default_factory=lambda: generate_id("auto"))
    rule_id: str
    stage_id: str
    event_name: str
    recorded_at: datetime = Field(default_factory=utcnow)
    attempts: int = Field(default=0, ge=0)


class WorkflowInstance(BaseModel):
    """
    Runtime aggregate for one case workflow.

    The instance is the unit of consistency: stages, tasks and derived
    fields are always read and written together.
    """

    id: str = Field(default_factory=lambda: generate_id("wf"))
    template_id: Optional[str] = Field(default=None, description="None for ad hoc workflows")
    template_version: Optional[int] = Field(default=None)
    case_id: str = Field(..., min_length=1)
    title: str = Field(default="")
    status: InstanceStatus = Field(default=InstanceStatus.ACTIVE)
    current_stage_id: Optional[str] = Field(default=None)
    progress: int = Field(default=0, ge=0, le=100)

    # Timing
    start_date: datetime = Field(default_factory=utcnow)
    estimated_end_date: Optional[datetime] = Field(default=None)
    actual_end_date: Optional[datetime] = Field(default=None)

    stages: list[StageInstance] = Field(default_factory=list)
    pending_automations: list[PendingAutomation] = Field(default_factory=list)

    frozen: bool = Field(default=False, description="Set on cancellation/completion")
    version: int = Field(default=0, ge=0, description="Optimistic concurrency counter")
    created_by: Optional[str] = Field(default=None)
    updated_at: datetime = Field(default_factory=utcnow)

    def iter_tasks(self):
        """Yield (stage, task) pairs in stage order."""
        for stage in self.stages:
            for task in stage.tasks:
                yield stage, task

    def find_task(self, task_id: str) -> Optional[tuple[StageInstance, TaskInstance]]:
        """Locate a task and its owning stage."""
        for stage, task in self.iter_tasks():
            if task.id == task_id:
                return stage, task
        return None

    def get_stage(self, stage_id: str) -> Optional[StageInstance]:
        """Get stage by instance ID."""
        for stage in self.stages:
            if stage.id == stage_id:
                return stage
        return None

    def find_stage(self, ref: str) -> Optional[StageInstance]:
        """Resolve a stage by instance id, template stage id or title."""
        stage = self.get_stage(ref)
        if stage:
            return stage
        for candidate in self.stages:
            if candidate.template_stage_id == ref:
                return candidate
        lowered = ref.strip().lower()
        for candidate in self.stages:
            if candidate.title.lower() == lowered:
                return candidate
        return None

    def task_ids(self) -> list[str]:
        return [task.id for _, task in self.iter_tasks()]


class TaskSpec(BaseModel):
    """Specification for a task inserted outside the template definition."""

    title: str = Field(..., min_length=1, max_length=255)
    assignee: Optional[str] = Field(default=None)
    assignee_role: Optional[str] = Field(default=None)
    priority: Priority = Field(default=Priority.MEDIUM)
    due_date: Optional[datetime] = Field(default=None)
    sla_hours: Optional[float] = Field(default=None, gt=0.0)
    estimated_hours: float = Field(default=0.0, ge=0.0)
    automated_trigger: Optional[str] = Field(default=None)
    related_module: Optional[str] = Field(default=None)
    dependencies: list[str] = Field(default_factory=list, description="Existing task instance ids")


class InstanceFilter(BaseModel):
    """Filter for listing workflow instances."""

    case_id: Optional[str] = None
    status: Optional[InstanceStatus] = None
    template_id: Optional[str] = None
    started_after: Optional[datetime] = None
    started_before: Optional[datetime] = None

    def matches(self, instance: WorkflowInstance) -> bool:
        if self.case_id and instance.case_id != self.case_id:
            return False
        if self.status and instance.status != self.status:
            return False
        if self.template_id and instance.template_id != self.template_id:
            return False
        if self.started_after and instance.start_date < self.started_after:
            return False
        if self.started_before and instance.start_date > self.started_before:
            return False
        return True


# ==================== Triggers ====================


class CreateTaskAction(BaseModel):
    """Insert a new Pending task into a stage."""

    type: Literal["create_task"] = "create_task"
    stage: str = Field(..., min_length=1, description="Stage id, template stage id or title")
    title: str = Field(..., min_length=1, max_length=255, description="May contain {{ event.* }} placeholders")
    priority: Priority = Field(default=Priority.MEDIUM)
    assignee: Optional[str] = Field(default=None)
    assignee_role: Optional[str] = Field(default=None)
    sla_hours: Optional[float] = Field(default=None, gt=0.0)
    related_module: Optional[str] = Field(default=None)


class AdvanceStageAction(BaseModel):
    """Force a stage to Active once its stage dependencies are Completed."""

    type: Literal["advance_stage"] = "advance_stage"
    stage: str = Field(..., min_length=1, description="Stage id, template stage id or title")


class NotifyAction(BaseModel):
    """Enqueue a notification."""

    type: Literal["notify"] = "notify"
    kind: str = Field(default="automation", min_length=1)
    title: str = Field(..., min_length=1, max_length=255)
    message: str = Field(default="")
    recipient: Optional[str] = Field(default=None, description="Explicit user id")
    recipient_role: Optional[str] = Field(default=None, description="Role resolved via identity service")
    stage_assignees: Optional[str] = Field(default=None, description="Notify every assignee of this stage")

    @model_validator(mode="after")
    def validate_recipient(self) -> "NotifyAction":
        """At least one recipient target is required."""
        if not (self.recipient or self.recipient_role or self.stage_assignees):
            raise ValueError("notify action needs recipient, recipient_role or stage_assignees")
        return self


TriggerAction = Annotated[
    Union[CreateTaskAction, AdvanceStageAction, NotifyAction],
    Field(discriminator="type"),
]


class BusinessEvent(BaseModel):
    """An external event emitted by a collaborating module."""

    name: str = Field(..., min_length=1, description="e.g. DocumentUploaded, DiscoveryServed")
    case_id: str = Field(..., min_length=1)
    module_tag: Optional[str] = Field(default=None, description="Emitting module, e.g. Documents")
    payload: dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=utcnow)


class MatchCondition(BaseModel):
    """Additional filter applied after the event name matches."""

    module_tag: Optional[str] = Field(default=None)
    payload: dict[str, Any] = Field(default_factory=dict, description="Key/value pairs the payload must contain")

    def matches(self, event: BusinessEvent) -> bool:
        if self.module_tag and (event.module_tag or "").lower() != self.module_tag.lower():
            return False
        for key, expected in self.payload.items():
            if event.payload.get(key) != expected:
                return False
        return True


class TriggerRule(BaseModel):
    """Declarative mapping from an external event to an automated action."""

    id: str = Field(default_factory=lambda: generate_id("rule"))
    event_name: str = Field(..., min_length=1)
    match_condition: MatchCondition = Field(default_factory=MatchCondition)
    action: TriggerAction
    description: Optional[str] = Field(default=None)
    enabled: bool = Field(default=True)
    created_by: Optional[str] = Field(default=None)
    created_at: datetime = Field(default_factory=utcnow)

    def matches(self, event: BusinessEvent) -> bool:
        return (
            self.enabled
            and self.event_name == event.name
            and self.match_condition.matches(event)
        )


class EscalationRule(BaseModel):
    """
    Escalation of overdue tasks.

    A task that has been overdue for at least ``after_hours_overdue`` hours is
    raised to ``level`` once. Higher levels with later thresholds form a ladder.
    """

    id: str = Field(default_factory=lambda: generate_id("esc"))
    name: Optional[str] = Field(default=None)
    level: int = Field(default=1, ge=1)
    after_hours_overdue: float = Field(default=0.0, ge=0.0)
    escalate_to_user: Optional[str] = Field(default=None)
    escalate_to_role: Optional[str] = Field(default=None, description="Resolved against the task's case")
    auto_reassign: bool = Field(default=False, description="Hand the task to the escalation target")
    notify_original_assignee: bool = Field(default=True)
    priorities: list[Priority] = Field(default_factory=list, description="Empty means every priority")
    enabled: bool = Field(default=True)
    created_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def validate_target(self) -> "EscalationRule":
        if not (self.escalate_to_user or self.escalate_to_role):
            raise ValueError("escalation rule needs escalate_to_user or escalate_to_role")
        return self

    def applies_to(self, priority: Priority) -> bool:
        return self.enabled and (not self.priorities or priority in self.priorities)


# ==================== Notifications ====================


class DeliveryStatus(str, Enum):
    """Outbound delivery state of a notification."""

    QUEUED = "queued"
    DELIVERED = "delivered"
    FAILED = "failed"


class Notification(BaseModel):
    """A message in a user's mailbox."""

    id: str = Field(default_factory=lambda: generate_id("notif"))
    user_id: str = Field(..., min_length=1)
    kind: str = Field(..., min_length=1, description="e.g. task_assigned, sla_breach, automation")
    title: str = Field(default="")
    message: str = Field(default="")
    payload: dict[str, Any] = Field(default_factory=dict)
    case_id: Optional[str] = None
    instance_id: Optional[str] = None
    task_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    read: bool = Field(default=False)
    idempotency_key: Optional[str] = Field(default=None)
    delivery_status: DeliveryStatus = Field(default=DeliveryStatus.QUEUED)
    delivery_attempts: int = Field(default=0, ge=0)
    last_error: Optional[str] = Field(default=None)


# ==================== Event log ====================


class EventKind(str, Enum):
    """Kinds of entries in the append-only workflow event log."""

    INSTANCE_CREATED = "InstanceCreated"
    INSTANCE_COMPLETED = "InstanceCompleted"
    INSTANCE_CANCELLED = "InstanceCancelled"
    INSTANCE_PAUSED = "InstancePaused"
    INSTANCE_RESUMED = "InstanceResumed"
    TASK_CREATED = "TaskCreated"
    TASK_TRANSITIONED = "TaskTransitioned"
    TASK_REOPENED = "TaskReopened"
    TASK_REASSIGNED = "TaskReassigned"
    COMMENT_ADDED = "CommentAdded"
    STAGE_ACTIVATED = "StageActivated"
    STAGE_COMPLETED = "StageCompleted"
    TRIGGER_FIRED = "TriggerFired"
    TRIGGER_ACTION_FAILED = "TriggerActionFailed"
    PENDING_AUTOMATION_RECORDED = "PendingAutomationRecorded"
    SLA_BREACHED = "SlaBreached"
    TASK_ESCALATED = "TaskEscalated"
    TEMPLATE_PUBLISHED = "TemplatePublished"


class WorkflowEvent(BaseModel):
    """An entry in the append-only event log."""

    id: str = Field(default_factory=lambda: generate_id("evt"))
    kind: EventKind
    instance_id: Optional[str] = None
    case_id: Optional[str] = None
    actor: str = Field(default="system")
    occurred_at: datetime = Field(default_factory=utcnow)
    data: dict[str, Any] = Field(default_factory=dict)
