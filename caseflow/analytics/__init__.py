"""Read-only workflow analytics."""

from caseflow.analytics.aggregator import (
    StageBottleneck,
    WorkflowMetrics,
    compute_metrics,
    compute_sla_compliance,
    find_bottlenecks,
    stage_status_counts,
)

__all__ = [
    "StageBottleneck",
    "WorkflowMetrics",
    "compute_metrics",
    "compute_sla_compliance",
    "find_bottlenecks",
    "stage_status_counts",
]
