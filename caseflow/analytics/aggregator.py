"""
Read-only workflow metrics.

Computed from instance snapshots; records with missing dates are excluded
from averages rather than treated as zero.
"""

from collections import defaultdict
from datetime import datetime, timedelta
from statistics import mean
from typing import Iterable, Optional

from pydantic import BaseModel, Field

from caseflow.core.models import WorkflowInstance
from caseflow.core.state_machine import InstanceStatus, StageStatus, TaskStatus

# A stage is a bottleneck when it runs this much longer than estimated
BOTTLENECK_THRESHOLD = 1.25
VELOCITY_WINDOW_DAYS = 7


class StageBottleneck(BaseModel):
    """A stage whose actual duration exceeds its estimate."""

    stage_key: str = Field(..., description="Template stage id, or title for ad hoc stages")
    title: str
    estimated_days: float
    mean_actual_days: float
    overage_percent: float
    sample_size: int


class WorkflowMetrics(BaseModel):
    """Aggregate metrics over a set of instances."""

    total_count: int = 0
    active_count: int = 0
    paused_count: int = 0
    completed_count: int = 0
    cancelled_count: int = 0
    avg_completion_time: Optional[float] = Field(default=None, description="Hours, completed instances only")
    bottlenecks: list[StageBottleneck] = Field(default_factory=list)
    tasks_by_status: dict[str, int] = Field(default_factory=dict)
    sla_compliance: float = Field(default=100.0, description="Percent of evaluated tasks on time")
    overdue_count: int = 0
    velocity: float = Field(default=0.0, description="Tasks completed per day over the last week")


def _days(delta: timedelta) -> float:
    return delta.total_seconds() / 86400


def find_bottlenecks(instances: Iterable[WorkflowInstance]) -> list[StageBottleneck]:
    """
    Flag stages whose mean actual duration exceeds the estimate by more than 25%.

    Only completed instances contribute; stages without a start/end date or
    without an estimate are skipped. Sorted by overage, largest first.
    """
    durations: dict[str, list[float]] = defaultdict(list)
    estimates: dict[str, list[float]] = defaultdict(list)
    titles: dict[str, str] = {}

    for instance in instances:
        if instance.status != InstanceStatus.COMPLETED:
            continue
        for stage in instance.stages:
            if stage.start_date is None or stage.end_date is None:
                continue
            key = stage.template_stage_id or stage.title
            titles.setdefault(key, stage.title)
            durations[key].append(_days(stage.end_date - stage.start_date))
            estimates[key].append(stage.estimated_duration)

    bottlenecks = []
    for key, samples in durations.items():
        estimated = mean(estimates[key])
        if estimated <= 0:
            continue
        actual = mean(samples)
        if actual > estimated * BOTTLENECK_THRESHOLD:
            bottlenecks.append(StageBottleneck(
                stage_key=key,
                title=titles[key],
                estimated_days=round(estimated, 2),
                mean_actual_days=round(actual, 2),
                overage_percent=round((actual - estimated) / estimated * 100, 1),
                sample_size=len(samples),
            ))

    return sorted(bottlenecks, key=lambda b: b.overage_percent, reverse=True)


def compute_sla_compliance(instances: Iterable[WorkflowInstance], now: datetime) -> float:
    """
    Percent of tasks that met their due date.

    Done tasks count as on time when completed by their due date; unfinished
    tasks count only once they are past due (as misses).
    """
    on_time = 0
    evaluated = 0

    for instance in instances:
        for _, task in instance.iter_tasks():
            if task.due_date is None:
                continue
            if task.status == TaskStatus.DONE:
                if task.completed_date is None:
                    continue
                evaluated += 1
                if task.completed_date <= task.due_date:
                    on_time += 1
            elif now > task.due_date:
                evaluated += 1

    if evaluated == 0:
        return 100.0
    return round(100 * on_time / evaluated, 1)


def compute_metrics(
    instances: Iterable[WorkflowInstance],
    now: datetime,
) -> WorkflowMetrics:
    """Compute aggregate metrics for a set of instances."""
    instances = list(instances)
    metrics = WorkflowMetrics(total_count=len(instances))

    completion_hours = []
    tasks_by_status = {status.value: 0 for status in TaskStatus}
    completed_recently = 0
    window_start = now - timedelta(days=VELOCITY_WINDOW_DAYS)

    for instance in instances:
        if instance.status == InstanceStatus.ACTIVE:
            metrics.active_count += 1
        elif instance.status == InstanceStatus.PAUSED:
            metrics.paused_count += 1
        elif instance.status == InstanceStatus.COMPLETED:
            metrics.completed_count += 1
            if instance.actual_end_date is not None:
                delta = instance.actual_end_date - instance.start_date
                completion_hours.append(delta.total_seconds() / 3600)
        elif instance.status == InstanceStatus.CANCELLED:
            metrics.cancelled_count += 1

        for _, task in instance.iter_tasks():
            tasks_by_status[task.status.value] += 1
            if task.status != TaskStatus.DONE and task.due_date and now > task.due_date:
                metrics.overdue_count += 1
            if task.completed_date and window_start <= task.completed_date <= now:
                completed_recently += 1

    if completion_hours:
        metrics.avg_completion_time = round(mean(completion_hours), 2)

    metrics.tasks_by_status = tasks_by_status
    metrics.bottlenecks = find_bottlenecks(instances)
    metrics.sla_compliance = compute_sla_compliance(instances, now)
    metrics.velocity = round(completed_recently / VELOCITY_WINDOW_DAYS, 2)
    return metrics


def stage_status_counts(instances: Iterable[WorkflowInstance]) -> dict[str, int]:
    """Number of stages per status across instances."""
    counts = {status.value: 0 for status in StageStatus}
    for instance in instances:
        for stage in instance.stages:
            counts[stage.status.value] += 1
    return counts
