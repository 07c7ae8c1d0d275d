"""
Instance lifecycle rules.

Pure functions that mutate a WorkflowInstance in place: instantiation, task
transitions, derived stage/instance status, stage auto-activation, pending
automations and SLA flags. Callers apply them to a private copy of the
instance and commit the copy only when every step succeeds, so a failure
leaves the stored instance untouched.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Iterable, Optional

from caseflow.core.dag import DependencyResolver
from caseflow.core.errors import (
    InstanceFrozenError,
    InvalidTransitionError,
    StageNotFoundError,
    TaskNotFoundError,
    TaskSpecError,
)
from caseflow.core.escalation import find_due_escalations
from caseflow.core.models import (
    EscalationRule,
    EventKind,
    Notification,
    StageInstance,
    StageTemplate,
    TaskInstance,
    TaskSpec,
    WorkflowEvent,
    WorkflowInstance,
    generate_id,
    utcnow,
)
from caseflow.core.sla import SLAFlagChange, SLAPolicy, evaluate
from caseflow.core.state_machine import (
    InstanceStatus,
    StageStatus,
    TaskStateMachine,
    TaskStatus,
    compute_progress,
    compute_stage_status,
)

logger = logging.getLogger(__name__)


@dataclass
class InstanceChanges:
    """
    Side effects collected while mutating one instance.

    Events and notifications are only published after the mutated instance
    has been saved.
    """

    actor: str = "system"
    now: Optional[datetime] = None
    events: list[WorkflowEvent] = field(default_factory=list)
    notifications: list[Notification] = field(default_factory=list)

    def record(self, instance: WorkflowInstance, kind: EventKind, **data: Any) -> WorkflowEvent:
        event = WorkflowEvent(
            kind=kind,
            instance_id=instance.id,
            case_id=instance.case_id,
            actor=self.actor,
            occurred_at=self.now or utcnow(),
            data=data,
        )
        self.events.append(event)
        return event

    def notify(
        self,
        instance: WorkflowInstance,
        user_id: Optional[str],
        kind: str,
        title: str,
        message: str = "",
        task_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        payload: Optional[dict[str, Any]] = None,
    ) -> None:
        if not user_id:
            return
        self.notifications.append(Notification(
            user_id=user_id,
            kind=kind,
            title=title,
            message=message,
            case_id=instance.case_id,
            instance_id=instance.id,
            task_id=task_id,
            idempotency_key=idempotency_key,
            payload=payload or {},
            created_at=self.now or utcnow(),
        ))


# ==================== Instantiation ====================


def allotted_hours(
    sla_hours: Optional[float],
    estimated_hours: float,
    stage_estimate_days: float,
) -> Optional[float]:
    """Hours a task gets from its stage start: SLA, else estimate, else stage estimate."""
    if sla_hours:
        return sla_hours
    if estimated_hours:
        return estimated_hours
    if stage_estimate_days:
        return stage_estimate_days * 24
    return None


def build_instance(
    stages: Iterable[StageTemplate],
    case_id: str,
    now: datetime,
    assignees: Optional[dict[str, Optional[str]]] = None,
    *,
    template_id: Optional[str] = None,
    template_version: Optional[int] = None,
    title: str = "",
    created_by: Optional[str] = None,
    estimated_duration: Optional[float] = None,
) -> WorkflowInstance:
    """
    Clone stage and task definitions into a fresh instance.

    Stage k is planned to start at now + the estimated days of all stages
    before it; tasks are due at their stage start + allotted hours. The
    first stage starts Active, the rest Pending.

    Args:
        stages: Stage definitions (validated)
        case_id: Owning case
        now: Instantiation clock
        assignees: Resolved user id per assignee role
    """
    assignees = assignees or {}
    ordered = sorted(stages, key=lambda s: s.order)

    stage_ids = {stage.id: generate_id("stage") for stage in ordered}
    task_ids = {
        task.id: generate_id("task")
        for stage in ordered
        for task in stage.tasks
    }

    stage_instances: list[StageInstance] = []
    offset_days = 0.0

    for stage in ordered:
        start = now + timedelta(days=offset_days)
        tasks = []
        for task in stage.tasks:
            hours = allotted_hours(task.sla_hours, task.estimated_hours, stage.estimated_duration)
            tasks.append(TaskInstance(
                id=task_ids[task.id],
                template_task_id=task.id,
                title=task.title,
                assignee=assignees.get(task.assignee_role) if task.assignee_role else None,
                assignee_role=task.assignee_role,
                priority=task.priority,
                due_date=start + timedelta(hours=hours) if hours else None,
                created_at=now,
                sla_hours=task.sla_hours,
                estimated_hours=task.estimated_hours,
                automated_trigger=task.automated_trigger,
                related_module=task.related_module,
                dependencies=[task_ids[dep] for dep in task.dependencies],
            ))

        stage_instances.append(StageInstance(
            id=stage_ids[stage.id],
            template_stage_id=stage.id,
            title=stage.title,
            order=stage.order,
            start_date=start,
            estimated_duration=stage.estimated_duration,
            dependencies=[stage_ids[dep] for dep in stage.dependencies],
            tasks=tasks,
        ))
        offset_days += stage.estimated_duration

    if stage_instances:
        first = stage_instances[0]
        first.activated = True
        first.status = StageStatus.ACTIVE
        first.start_date = now

    total_days = estimated_duration if estimated_duration is not None else offset_days

    instance = WorkflowInstance(
        template_id=template_id,
        template_version=template_version,
        case_id=case_id,
        title=title,
        start_date=now,
        estimated_end_date=now + timedelta(days=total_days),
        stages=stage_instances,
        created_by=created_by,
        updated_at=now,
    )
    instance.current_stage_id = _current_stage_id(instance)
    return instance


# ==================== Guards ====================


def ensure_mutable(instance: WorkflowInstance) -> None:
    """Raise InstanceFrozenError on cancelled or completed instances."""
    if instance.frozen:
        raise InstanceFrozenError(instance.id, instance.status.value)


def ensure_running(instance: WorkflowInstance, from_state: str, to_state: str) -> None:
    ensure_mutable(instance)
    if instance.status == InstanceStatus.PAUSED:
        raise InvalidTransitionError(from_state, to_state, "instance is paused")


def locate_task(instance: WorkflowInstance, task_id: str) -> tuple[StageInstance, TaskInstance]:
    located = instance.find_task(task_id)
    if located is None:
        raise TaskNotFoundError(task_id)
    return located


def locate_stage(instance: WorkflowInstance, stage_ref: str) -> StageInstance:
    stage = instance.find_stage(stage_ref)
    if stage is None:
        raise StageNotFoundError(stage_ref, instance.id)
    return stage


# ==================== Task transitions ====================


def transition_task(
    instance: WorkflowInstance,
    task_id: str,
    to_status: TaskStatus,
    now: datetime,
    changes: InstanceChanges,
    reason: Optional[str] = None,
) -> TaskInstance:
    """
    Move a task to ``to_status`` after checking legality and gating.

    Raises:
        InstanceFrozenError: If the instance is archived
        InvalidTransitionError: Illegal move, paused instance, unmet dependencies
        TaskNotFoundError: If the task is not part of the instance
    """
    stage, task = locate_task(instance, task_id)
    from_status = task.status
    ensure_running(instance, from_status.value, to_status.value)

    machine = TaskStateMachine(from_status)

    if to_status in TaskStateMachine.GATED_STATES and machine.can_transition_to(to_status):
        resolver = DependencyResolver(instance)
        blocking = resolver.blocking_tasks(task.id)
        if blocking:
            raise InvalidTransitionError(
                from_status.value,
                to_status.value,
                f"waiting on dependencies {blocking}",
            )
        if stage.status == StageStatus.PENDING:
            blocking_stages = resolver.blocking_stages(stage.id)
            if blocking_stages:
                raise InvalidTransitionError(
                    from_status.value,
                    to_status.value,
                    f"stage '{stage.title}' waiting on stages {blocking_stages}",
                )

    machine.transition(to_status)

    task.status = machine.state
    if to_status == TaskStatus.IN_PROGRESS:
        task.start_date = task.start_date or now
    elif to_status == TaskStatus.PENDING:
        task.start_date = None
    elif to_status == TaskStatus.DONE:
        task.completed_date = now
        # Done tasks carry no SLA flags, even when this completes the instance
        task.sla_warning = False
        task.sla_breached = False

    changes.record(
        instance,
        EventKind.TASK_TRANSITIONED,
        task_id=task.id,
        stage_id=stage.id,
        from_status=from_status.value,
        to_status=to_status.value,
        reason=reason,
    )
    refresh(instance, now, changes)
    return task


def reopen_task(
    instance: WorkflowInstance,
    task_id: str,
    now: datetime,
    changes: InstanceChanges,
    reason: Optional[str] = None,
) -> TaskInstance:
    """Correction path Done -> InProgress; reverts a Completed stage to Active."""
    stage, task = locate_task(instance, task_id)
    ensure_running(instance, task.status.value, TaskStatus.IN_PROGRESS.value)

    if task.status != TaskStatus.DONE:
        raise InvalidTransitionError(
            task.status.value,
            TaskStatus.IN_PROGRESS.value,
            "only Done tasks can be reopened",
        )

    task.status = TaskStatus.IN_PROGRESS
    task.completed_date = None
    task.escalation_level = 0

    changes.record(
        instance,
        EventKind.TASK_REOPENED,
        task_id=task.id,
        stage_id=stage.id,
        reason=reason,
    )
    refresh(instance, now, changes)
    return task


def reassign_task(
    instance: WorkflowInstance,
    task_id: str,
    assignee: str,
    now: datetime,
    changes: InstanceChanges,
    reason: Optional[str] = None,
    notify: bool = True,
) -> Optional[TaskInstance]:
    """
    Hand a task to ``assignee``; the old and new assignee are notified.

    Returns the task, or None when it already belongs to ``assignee``.
    """
    ensure_mutable(instance)
    stage, task = locate_task(instance, task_id)
    previous = task.assignee
    if previous == assignee:
        return None

    task.assignee = assignee
    instance.updated_at = now
    changes.record(
        instance,
        EventKind.TASK_REASSIGNED,
        task_id=task.id,
        stage_id=stage.id,
        from_assignee=previous,
        to_assignee=assignee,
        reason=reason,
    )
    if not notify:
        return task

    stamp = now.isoformat()
    changes.notify(
        instance,
        assignee,
        "task_assigned",
        f"Task reassigned to you: {task.title}",
        reason or "",
        task_id=task.id,
        idempotency_key=f"reassigned:{task.id}:{assignee}:{stamp}",
    )
    changes.notify(
        instance,
        previous,
        "task_unassigned",
        f"Task reassigned: {task.title}",
        f"'{task.title}' now belongs to {assignee}",
        task_id=task.id,
        idempotency_key=f"unassigned:{task.id}:{previous}:{stamp}",
    )
    return task


def insert_task(
    instance: WorkflowInstance,
    stage: StageInstance,
    spec: TaskSpec,
    now: datetime,
    changes: InstanceChanges,
) -> TaskInstance:
    """
    Insert a Pending task outside the template definition.

    The due date defaults to max(stage start, now) + allotted hours and may
    never precede the stage start.
    """
    ensure_mutable(instance)

    known = set(instance.task_ids())
    unknown = [dep for dep in spec.dependencies if dep not in known]
    if unknown:
        raise TaskSpecError(f"Unknown dependency task ids: {unknown}", dependencies=unknown)

    anchor = max(stage.start_date, now) if stage.start_date else now
    due_date = spec.due_date
    if due_date is None:
        hours = allotted_hours(spec.sla_hours, spec.estimated_hours, 0.0)
        due_date = anchor + timedelta(hours=hours) if hours else None
    elif stage.start_date and due_date < stage.start_date:
        raise TaskSpecError(
            f"Due date {due_date.isoformat()} precedes stage start "
            f"{stage.start_date.isoformat()}",
            stage_id=stage.id,
        )

    task = TaskInstance(
        title=spec.title,
        assignee=spec.assignee,
        assignee_role=spec.assignee_role,
        priority=spec.priority,
        due_date=due_date,
        created_at=now,
        sla_hours=spec.sla_hours,
        estimated_hours=spec.estimated_hours,
        automated_trigger=spec.automated_trigger,
        related_module=spec.related_module,
        dependencies=list(spec.dependencies),
    )
    stage.tasks.append(task)

    changes.record(
        instance,
        EventKind.TASK_CREATED,
        task_id=task.id,
        stage_id=stage.id,
        title=task.title,
    )
    changes.notify(
        instance,
        task.assignee,
        "task_assigned",
        f"New task: {task.title}",
        f"You have been assigned '{task.title}' in {stage.title}",
        task_id=task.id,
        idempotency_key=f"assigned:{task.id}:{task.assignee}",
    )
    refresh(instance, now, changes)
    return task


# ==================== Stages and instance ====================


def open_stage(
    instance: WorkflowInstance,
    stage: StageInstance,
    now: datetime,
    changes: InstanceChanges,
    **event_data: Any,
) -> None:
    """
    Mark a stage as opened for work.

    The stage start moves to ``now``; due dates of unfinished tasks are
    pushed out so they never precede the new start.
    """
    stage.activated = True
    stage.start_date = now
    if stage.status == StageStatus.PENDING:
        stage.status = StageStatus.ACTIVE

    for task in stage.tasks:
        if task.status == TaskStatus.DONE:
            continue
        hours = allotted_hours(task.sla_hours, task.estimated_hours, stage.estimated_duration)
        earliest = now + timedelta(hours=hours) if hours else now
        if task.due_date is not None:
            task.due_date = max(task.due_date, earliest)
        elif hours:
            task.due_date = earliest

    changes.record(
        instance,
        EventKind.STAGE_ACTIVATED,
        stage_id=stage.id,
        title=stage.title,
        **event_data,
    )
    notify_stage_assignees(instance, stage, changes)


def notify_stage_assignees(
    instance: WorkflowInstance,
    stage: StageInstance,
    changes: InstanceChanges,
) -> None:
    """Tell the assignee of every unfinished task that the stage is open."""
    for task in stage.tasks:
        if task.status == TaskStatus.DONE:
            continue
        changes.notify(
            instance,
            task.assignee,
            "task_assigned",
            f"New task: {task.title}",
            f"You have been assigned '{task.title}' in {stage.title}",
            task_id=task.id,
            idempotency_key=f"assigned:{task.id}:{task.assignee}",
        )


def activate_stage(
    instance: WorkflowInstance,
    stage: StageInstance,
    now: datetime,
    changes: InstanceChanges,
    **event_data: Any,
) -> bool:
    """
    Force a Pending stage to Active.

    Returns False when the stage was already Active or Completed.
    """
    ensure_mutable(instance)
    if stage.status != StageStatus.PENDING:
        return False
    open_stage(instance, stage, now, changes, **event_data)
    refresh(instance, now, changes)
    return True


def refresh(instance: WorkflowInstance, now: datetime, changes: InstanceChanges) -> None:
    """
    Recompute every derived field of the instance.

    Stage statuses, auto-activation of the next stage, current stage,
    progress and instance completion.
    """
    completed_now: list[StageInstance] = []
    for stage in instance.stages:
        previous = stage.status
        status = compute_stage_status((t.status for t in stage.tasks), stage.activated)

        if status == StageStatus.COMPLETED and previous != StageStatus.COMPLETED:
            stage.end_date = now
            completed_now.append(stage)
            changes.record(instance, EventKind.STAGE_COMPLETED, stage_id=stage.id, title=stage.title)
        elif previous == StageStatus.COMPLETED and status != StageStatus.COMPLETED:
            stage.end_date = None

        stage.status = status
        if status == StageStatus.ACTIVE and not stage.activated:
            # Work started directly on a stage that was never opened
            open_stage(instance, stage, now, changes, reason="task_started")

    for stage in completed_now:
        successor = _next_pending_stage(instance, stage)
        if successor is not None:
            successor.handoff_pending = True

    # A handed-off stage blocked on its dependencies is retried on every refresh
    resolver = DependencyResolver(instance)
    for stage in instance.stages:
        if not stage.handoff_pending:
            continue
        if stage.status != StageStatus.PENDING:
            stage.handoff_pending = False
        elif resolver.is_stage_eligible(stage.id):
            stage.handoff_pending = False
            open_stage(instance, stage, now, changes, reason="previous_stage_completed")

    done = sum(1 for _, task in instance.iter_tasks() if task.status == TaskStatus.DONE)
    instance.progress = compute_progress(done, len(instance.task_ids()))
    instance.current_stage_id = _current_stage_id(instance)
    instance.updated_at = now

    if (
        instance.stages
        and instance.status == InstanceStatus.ACTIVE
        and all(stage.status == StageStatus.COMPLETED for stage in instance.stages)
    ):
        instance.status = InstanceStatus.COMPLETED
        instance.frozen = True
        instance.actual_end_date = now
        instance.pending_automations = []
        changes.record(instance, EventKind.INSTANCE_COMPLETED)
        logger.info(f"Workflow instance {instance.id} completed")


def _next_pending_stage(instance: WorkflowInstance, completed: StageInstance) -> Optional[StageInstance]:
    """First Pending stage after ``completed`` by order, skipping stages already open."""
    for stage in sorted(instance.stages, key=lambda s: s.order):
        if stage.order > completed.order and stage.status == StageStatus.PENDING:
            return stage
    return None


def _current_stage_id(instance: WorkflowInstance) -> Optional[str]:
    for stage in instance.stages:
        if stage.status == StageStatus.ACTIVE:
            return stage.id
    for stage in instance.stages:
        if stage.status == StageStatus.PENDING:
            return stage.id
    return instance.stages[-1].id if instance.stages else None


def retry_pending_automations(
    instance: WorkflowInstance,
    now: datetime,
    changes: InstanceChanges,
    max_attempts: int,
) -> int:
    """
    Re-check AdvanceStage automations that were waiting on stage dependencies.

    Returns the number of stages activated.
    """
    if not instance.pending_automations or instance.frozen:
        return 0

    activated = 0
    remaining = []
    resolver = DependencyResolver(instance)

    for pending in instance.pending_automations:
        stage = instance.get_stage(pending.stage_id)
        if stage is None or stage.status != StageStatus.PENDING:
            continue

        if resolver.is_stage_eligible(stage.id):
            open_stage(
                instance,
                stage,
                now,
                changes,
                reason="pending_automation",
                rule_id=pending.rule_id,
                event_name=pending.event_name,
            )
            activated += 1
            continue

        pending.attempts += 1
        if pending.attempts >= max_attempts:
            logger.warning(
                f"Dropping pending automation {pending.id} for stage {stage.id} "
                f"after {pending.attempts} attempts"
            )
            continue
        remaining.append(pending)

    instance.pending_automations = remaining
    if activated:
        refresh(instance, now, changes)
    return activated


def apply_sla(
    instance: WorkflowInstance,
    now: datetime,
    changes: InstanceChanges,
    policy: SLAPolicy,
    notify_assignee: bool = True,
) -> list[SLAFlagChange]:
    """
    Re-evaluate SLA flags and emit warnings/breaches on rising edges.

    Returns the flag changes, one per task whose flags moved.
    """
    flag_changes = evaluate(instance, now, policy)

    for change in flag_changes:
        _, task = locate_task(instance, change.task_id)
        due = task.due_date.isoformat() if task.due_date else "none"

        if change.breach_raised:
            changes.record(
                instance,
                EventKind.SLA_BREACHED,
                task_id=task.id,
                stage_id=change.stage_id,
                due_date=due,
            )
            logger.warning(f"SLA breached for task {task.id} in instance {instance.id}")
            if notify_assignee:
                changes.notify(
                    instance,
                    task.assignee,
                    "sla_breach",
                    f"SLA breached: {task.title}",
                    f"'{task.title}' was due {due}",
                    task_id=task.id,
                    idempotency_key=f"sla_breach:{task.id}:{due}",
                )
        elif change.warning_raised and notify_assignee:
            changes.notify(
                instance,
                task.assignee,
                "sla_warning",
                f"SLA warning: {task.title}",
                f"'{task.title}' is due {due}",
                task_id=task.id,
                idempotency_key=f"sla_warning:{task.id}:{due}",
            )

    return flag_changes


def apply_escalations(
    instance: WorkflowInstance,
    now: datetime,
    changes: InstanceChanges,
    policy: SLAPolicy,
    rules: list[EscalationRule],
    targets: dict[str, Optional[str]],
) -> list[TaskInstance]:
    """
    Raise overdue tasks to the escalation level they have reached.

    Args:
        targets: Escalation target per rule id, with roles already resolved

    Returns:
        The escalated tasks
    """
    escalated = []
    for due in find_due_escalations(instance, now, policy, rules):
        task, rule = due.task, due.rule
        target = targets.get(rule.id)
        if not target:
            logger.warning(
                f"Escalation rule {rule.id} has no target for task {task.id} "
                f"in case {instance.case_id}"
            )
            continue

        original = task.assignee
        task.escalation_level = rule.level
        instance.updated_at = now
        changes.record(
            instance,
            EventKind.TASK_ESCALATED,
            task_id=task.id,
            stage_id=due.stage.id,
            level=rule.level,
            rule_id=rule.id,
            escalated_to=target,
            hours_overdue=round(due.hours_overdue, 1),
        )
        logger.warning(f"Task {task.id} escalated to level {rule.level} ({target})")

        if rule.auto_reassign:
            reassign_task(
                instance,
                task.id,
                target,
                now,
                changes,
                reason=f"escalation level {rule.level}",
                notify=False,
            )

        changes.notify(
            instance,
            target,
            "escalation",
            f"Task escalated: {task.title}",
            f"Escalated to you (level {rule.level}): overdue by {due.hours_overdue:.1f}h",
            task_id=task.id,
            idempotency_key=f"escalation:{task.id}:{rule.level}:{target}",
            payload={"level": rule.level, "rule_id": rule.id},
        )
        if rule.notify_original_assignee and original != target:
            changes.notify(
                instance,
                original,
                "escalation",
                f"Task escalated: {task.title}",
                f"Your task was escalated to {target} (level {rule.level})",
                task_id=task.id,
                idempotency_key=f"escalation:{task.id}:{rule.level}:{original}",
                payload={"level": rule.level, "rule_id": rule.id},
            )
        escalated.append(task)

    return escalated


def settle(
    instance: WorkflowInstance,
    now: datetime,
    changes: InstanceChanges,
    policy: SLAPolicy,
    max_pending_attempts: int,
    notify_assignee: bool = True,
) -> None:
    """Run the follow-up steps every committed mutation goes through."""
    refresh(instance, now, changes)
    retry_pending_automations(instance, now, changes, max_pending_attempts)
    apply_sla(instance, now, changes, policy, notify_assignee)
