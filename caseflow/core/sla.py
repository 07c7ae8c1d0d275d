"""
SLA evaluation for workflow instances.

Flags are a pure function of (now, due date, status): repeated evaluation with
the same clock produces the same warning/breach flags.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from caseflow.config import get_settings
from caseflow.core.models import Priority, StageInstance, TaskInstance, WorkflowInstance
from caseflow.core.state_machine import TaskStatus


@dataclass(frozen=True)
class SLARule:
    """
    Per-priority SLA hours.

    ``breach_hours`` is the deadline, counted from the stage start, for a task
    that carries no due date of its own. ``warning_hours`` replaces the
    policy's minimum warning window for tasks of this priority.
    """

    priority: Priority
    warning_hours: float
    breach_hours: float


DEFAULT_SLA_RULES: dict[Priority, SLARule] = {
    Priority.CRITICAL: SLARule(Priority.CRITICAL, warning_hours=4, breach_hours=8),
    Priority.HIGH: SLARule(Priority.HIGH, warning_hours=24, breach_hours=48),
    Priority.MEDIUM: SLARule(Priority.MEDIUM, warning_hours=72, breach_hours=120),
    Priority.LOW: SLARule(Priority.LOW, warning_hours=168, breach_hours=336),
}


@dataclass(frozen=True)
class SLAPolicy:
    """
    Warning window policy: max(min_hours, fraction * allotted time).

    With per-priority ``rules`` the task's rule supplies the minimum window
    and a fallback deadline.
    """

    warning_min_hours: float = 24.0
    warning_fraction: float = 0.2
    rules: dict[Priority, SLARule] = field(default_factory=dict, hash=False)

    @classmethod
    def from_settings(cls) -> "SLAPolicy":
        settings = get_settings().sla
        rules: dict[Priority, SLARule] = {}
        if settings.priority_rules_enabled:
            rules = dict(DEFAULT_SLA_RULES)
            for name, (warning_hours, breach_hours) in settings.priority_hours.items():
                priority = Priority(name)
                rules[priority] = SLARule(priority, warning_hours, breach_hours)
        return cls(
            warning_min_hours=settings.warning_min_hours,
            warning_fraction=settings.warning_fraction,
            rules=rules,
        )

    @classmethod
    def with_priority_rules(cls, **kwargs) -> "SLAPolicy":
        return cls(rules=dict(DEFAULT_SLA_RULES), **kwargs)

    def rule_for(self, priority: Priority) -> Optional[SLARule]:
        return self.rules.get(priority)

    def warning_window(self, allotted: timedelta, priority: Optional[Priority] = None) -> timedelta:
        rule = self.rule_for(priority) if priority else None
        min_hours = rule.warning_hours if rule else self.warning_min_hours
        fraction = allotted * self.warning_fraction if allotted > timedelta(0) else timedelta(0)
        return max(timedelta(hours=min_hours), fraction)

    def deadline(self, task: TaskInstance, stage_start: Optional[datetime]) -> Optional[datetime]:
        """The task's due date, else breach_hours after its stage start."""
        if task.due_date is not None:
            return task.due_date
        rule = self.rule_for(task.priority)
        if rule is None or stage_start is None:
            return None
        return stage_start + timedelta(hours=rule.breach_hours)


@dataclass
class SLAFlagChange:
    """A task whose flags changed during an evaluation."""

    task_id: str
    stage_id: str
    assignee: Optional[str]
    warning: bool
    breached: bool
    warning_raised: bool = False
    breach_raised: bool = False


def compute_flags(
    task: TaskInstance,
    now: datetime,
    anchor: Optional[datetime],
    policy: SLAPolicy,
    stage_start: Optional[datetime] = None,
) -> tuple[bool, bool]:
    """
    Compute (warning, breached) for a single task.

    Args:
        task: Task to evaluate
        now: Evaluation clock
        anchor: Start of the allotted time (stage start, else task creation)
        policy: Warning window policy
        stage_start: Start of the task's stage, planned or actual

    Returns:
        Tuple of (sla_warning, sla_breached)
    """
    if task.status == TaskStatus.DONE:
        return False, False

    due = policy.deadline(task, stage_start)
    if due is None:
        return False, False

    if now > due:
        return False, True

    allotted = due - anchor if anchor else timedelta(0)
    remaining = due - now
    return remaining <= policy.warning_window(allotted, task.priority), False


def _anchor(stage: StageInstance, task: TaskInstance) -> datetime:
    return stage.start_date or task.created_at


def evaluate(
    instance: WorkflowInstance,
    now: datetime,
    policy: Optional[SLAPolicy] = None,
) -> list[SLAFlagChange]:
    """
    Recompute SLA flags for every task of the instance in place.

    Returns the tasks whose flags changed, with rising edges marked.
    """
    policy = policy or SLAPolicy()
    changes: list[SLAFlagChange] = []

    for stage, task in instance.iter_tasks():
        warning, breached = compute_flags(task, now, _anchor(stage, task), policy, stage.start_date)
        if warning == task.sla_warning and breached == task.sla_breached:
            continue

        changes.append(SLAFlagChange(
            task_id=task.id,
            stage_id=stage.id,
            assignee=task.assignee,
            warning=warning,
            breached=breached,
            warning_raised=warning and not task.sla_warning,
            breach_raised=breached and not task.sla_breached,
        ))
        task.sla_warning = warning
        task.sla_breached = breached

    return changes


def check_sla_breaches(instance: WorkflowInstance) -> list[TaskInstance]:
    """Tasks currently flagged as breached."""
    return [task for _, task in instance.iter_tasks() if task.sla_breached]


def needs_evaluation(instance: WorkflowInstance, now: datetime, policy: SLAPolicy) -> bool:
    """True if evaluating at ``now`` would change any flag."""
    for stage, task in instance.iter_tasks():
        warning, breached = compute_flags(task, now, _anchor(stage, task), policy, stage.start_date)
        if warning != task.sla_warning or breached != task.sla_breached:
            return True
    return False
