"""
Escalation of overdue tasks.

Rules form a ladder of levels. A task climbs to the highest level whose
overdue threshold it has passed and never drops back while it stays open.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional

from caseflow.core.models import EscalationRule, StageInstance, TaskInstance, WorkflowInstance
from caseflow.core.sla import SLAPolicy
from caseflow.core.state_machine import TaskStatus


@dataclass
class DueEscalation:
    """A task that has passed the threshold of a level above its current one."""

    stage: StageInstance
    task: TaskInstance
    rule: EscalationRule
    hours_overdue: float


def hours_overdue(
    task: TaskInstance,
    stage: StageInstance,
    now: datetime,
    policy: SLAPolicy,
) -> Optional[float]:
    """Hours past the task's deadline, None if it is not overdue."""
    if task.status == TaskStatus.DONE:
        return None
    due = policy.deadline(task, stage.start_date)
    if due is None or now <= due:
        return None
    return (now - due).total_seconds() / 3600


def select_rule(
    task: TaskInstance,
    overdue: float,
    rules: Iterable[EscalationRule],
) -> Optional[EscalationRule]:
    """Highest-level applicable rule above the task's level; earliest registered wins ties."""
    best: Optional[EscalationRule] = None
    for rule in rules:
        if not rule.applies_to(task.priority):
            continue
        if rule.level <= task.escalation_level or overdue < rule.after_hours_overdue:
            continue
        if best is None or rule.level > best.level:
            best = rule
    return best


def find_due_escalations(
    instance: WorkflowInstance,
    now: datetime,
    policy: SLAPolicy,
    rules: list[EscalationRule],
) -> list[DueEscalation]:
    if not rules:
        return []

    due: list[DueEscalation] = []
    for stage, task in instance.iter_tasks():
        overdue = hours_overdue(task, stage, now, policy)
        if overdue is None:
            continue
        rule = select_rule(task, overdue, rules)
        if rule is not None:
            due.append(DueEscalation(stage=stage, task=task, rule=rule, hours_overdue=overdue))
    return due
