"""
Dependency graph validation and resolution.

Implements cycle detection using Kahn's algorithm at template publish time,
and eligibility queries over instantiated workflows.
"""

from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from caseflow.core.errors import (
    CyclicDependencyError,
    StageNotFoundError,
    TaskNotFoundError,
    TemplateValidationError,
)
from caseflow.core.models import StageTemplate, WorkflowInstance, WorkflowTemplate
from caseflow.core.state_machine import StageStatus, TaskStatus


@dataclass
class ValidationError:
    """Represents a single validation error."""

    code: str
    message: str
    node_id: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class ValidationResult:
    """Result of dependency graph validation."""

    is_valid: bool
    errors: list[ValidationError] = field(default_factory=list)
    warnings: list[ValidationError] = field(default_factory=list)

    # Computed graph properties (populated on successful validation)
    topological_order: list[str] = field(default_factory=list)
    levels: dict[str, int] = field(default_factory=dict)  # node_id -> level in graph

    def add_error(
        self,
        code: str,
        message: str,
        node_id: Optional[str] = None,
        **details: Any,
    ) -> None:
        """Add a validation error."""
        self.errors.append(ValidationError(code, message, node_id, details))
        self.is_valid = False

    def add_warning(
        self,
        code: str,
        message: str,
        node_id: Optional[str] = None,
        **details: Any,
    ) -> None:
        """Add a validation warning."""
        self.warnings.append(ValidationError(code, message, node_id, details))

    @property
    def cycle_nodes(self) -> list[str]:
        for error in self.errors:
            if error.code == "CYCLE_DETECTED":
                return error.details.get("cycle_nodes", [])
        return []


class DependencyValidator:
    """
    Validates a dependency graph and detects cycles.

    Nodes are given as a mapping of node id to the ids it depends on.
    Uses Kahn's algorithm for topological sorting and cycle detection.
    """

    def __init__(self, graph: dict[str, list[str]]):
        self.graph = graph
        self._adjacency_list: dict[str, list[str]] = defaultdict(list)
        self._in_degree: dict[str, int] = {}

        self._build_graph()

    def _build_graph(self) -> None:
        """Build internal graph representation."""
        for node_id, dependencies in self.graph.items():
            self._in_degree[node_id] = len(dependencies)

        for node_id, dependencies in self.graph.items():
            for dep in dependencies:
                # dep -> node (forward edge)
                self._adjacency_list[dep].append(node_id)

    def validate(self) -> ValidationResult:
        """
        Perform full validation of the graph.

        Returns:
            ValidationResult with errors, warnings, and computed properties
        """
        result = ValidationResult(is_valid=True)

        self._validate_node_references(result)
        self._validate_no_self_loops(result)
        self._detect_cycles_and_compute_order(result)
        self._compute_levels(result)

        return result

    def _validate_node_references(self, result: ValidationResult) -> None:
        """Validate that all dependency references point to existing nodes."""
        for node_id, dependencies in self.graph.items():
            for dep in dependencies:
                if dep not in self.graph:
                    result.add_error(
                        code="INVALID_DEPENDENCY",
                        message=f"'{node_id}' references non-existent dependency '{dep}'",
                        node_id=node_id,
                        dependency=dep,
                    )

    def _validate_no_self_loops(self, result: ValidationResult) -> None:
        """Check for self-referential dependencies."""
        for node_id, dependencies in self.graph.items():
            if node_id in dependencies:
                result.add_error(
                    code="SELF_LOOP",
                    message=f"'{node_id}' has a self-referential dependency",
                    node_id=node_id,
                )

    def _detect_cycles_and_compute_order(self, result: ValidationResult) -> None:
        """
        Detect cycles using Kahn's algorithm and compute topological order.

        Kahn's Algorithm:
        1. Find all nodes with in-degree 0
        2. Remove them and their outgoing edges
        3. Repeat until no nodes left
        4. If nodes remain, there's a cycle
        """
        if not result.is_valid:
            return

        in_degree = self._in_degree.copy()

        queue = deque([
            node_id for node_id, degree in in_degree.items()
            if degree == 0
        ])

        topological_order: list[str] = []

        while queue:
            node_id = queue.popleft()
            topological_order.append(node_id)

            for neighbor in self._adjacency_list[node_id]:
                in_degree[neighbor] -= 1
                if in_degree[neighbor] == 0:
                    queue.append(neighbor)

        if len(topological_order) != len(self.graph):
            remaining = set(self.graph) - set(topological_order)
            cycle_nodes = self._find_cycle_nodes(remaining)

            result.add_error(
                code="CYCLE_DETECTED",
                message=f"Circular dependencies involving: {cycle_nodes}",
                cycle_nodes=list(cycle_nodes),
            )
        else:
            result.topological_order = topological_order

    def _find_cycle_nodes(self, candidates: set[str]) -> list[str]:
        """Find nodes that are part of a cycle using DFS."""
        visited = set()
        rec_stack = set()
        cycle_path: list[str] = []

        def dfs(node: str, path: list[str]) -> bool:
            visited.add(node)
            rec_stack.add(node)
            path.append(node)

            for neighbor in self._adjacency_list.get(node, []):
                if neighbor not in visited:
                    if dfs(neighbor, path):
                        return True
                elif neighbor in rec_stack:
                    cycle_start = path.index(neighbor)
                    cycle_path.extend(path[cycle_start:])
                    return True

            path.pop()
            rec_stack.remove(node)
            return False

        for node in sorted(candidates):
            if node not in visited:
                if dfs(node, []):
                    break

        return cycle_path if cycle_path else sorted(candidates)

    def _compute_levels(self, result: ValidationResult) -> None:
        """Compute the level (depth) of each node in the graph."""
        if not result.topological_order:
            return

        levels: dict[str, int] = {}

        for node_id in result.topological_order:
            dependencies = self.graph[node_id]
            if not dependencies:
                levels[node_id] = 0
            else:
                levels[node_id] = max(levels.get(dep, 0) for dep in dependencies) + 1

        result.levels = levels


@dataclass
class TemplateGraphReport:
    """Validated stage and task graphs of a template."""

    stages: ValidationResult
    tasks: ValidationResult

    @property
    def warnings(self) -> list[ValidationError]:
        return self.stages.warnings + self.tasks.warnings


def validate_stage_graph(stages: Iterable[StageTemplate]) -> TemplateGraphReport:
    """
    Validate the stage-level and task-level dependency graphs.

    Raises:
        CyclicDependencyError: If either graph contains a cycle
        TemplateValidationError: On dangling references or self loops
    """
    stages = list(stages)
    stage_graph = {stage.id: list(stage.dependencies) for stage in stages}
    task_graph = {
        task.id: list(task.dependencies)
        for stage in stages
        for task in stage.tasks
    }

    stage_result = DependencyValidator(stage_graph).validate()
    task_result = DependencyValidator(task_graph).validate()

    for scope, result in (("stage", stage_result), ("task", task_result)):
        if result.cycle_nodes:
            raise CyclicDependencyError(scope, result.cycle_nodes)

    errors = [
        f"{e.code}: {e.message}"
        for e in stage_result.errors + task_result.errors
    ]
    if errors:
        raise TemplateValidationError(errors)

    # A task waiting on a later stage cannot finish before that stage opens
    stage_order = {stage.id: stage.order for stage in stages}
    task_stage = {task.id: stage.id for stage in stages for task in stage.tasks}
    for stage in stages:
        for task in stage.tasks:
            for dep in task.dependencies:
                dep_stage = task_stage[dep]
                if stage_order[dep_stage] > stage.order:
                    task_result.add_warning(
                        code="FORWARD_TASK_DEPENDENCY",
                        message=(
                            f"Task '{task.id}' in stage '{stage.id}' depends on "
                            f"'{dep}' from later stage '{dep_stage}'"
                        ),
                        node_id=task.id,
                    )

    return TemplateGraphReport(stages=stage_result, tasks=task_result)


def validate_template(template: WorkflowTemplate) -> TemplateGraphReport:
    """Validate a template before publication."""
    return validate_stage_graph(template.stages)


class DependencyResolver:
    """
    Answers eligibility queries over an instantiated workflow.

    Instances inherit an already-validated graph, so no cycle check is
    performed here.
    """

    def __init__(self, instance: WorkflowInstance):
        self.instance = instance
        self._task_status: dict[str, TaskStatus] = {
            task.id: task.status for _, task in instance.iter_tasks()
        }
        self._stage_status: dict[str, StageStatus] = {
            stage.id: stage.status for stage in instance.stages
        }

    def is_task_eligible(self, task_id: str) -> bool:
        """True iff every dependency task is Done."""
        return not self.blocking_tasks(task_id)

    def blocking_tasks(self, task_id: str) -> list[str]:
        """Dependency task ids that are not Done yet."""
        located = self.instance.find_task(task_id)
        if located is None:
            raise TaskNotFoundError(task_id)
        _, task = located
        return [
            dep for dep in task.dependencies
            if self._task_status.get(dep) != TaskStatus.DONE
        ]

    def is_stage_eligible(self, stage_id: str) -> bool:
        """True iff every dependency stage is Completed."""
        return not self.blocking_stages(stage_id)

    def blocking_stages(self, stage_id: str) -> list[str]:
        """Dependency stage ids that are not Completed yet."""
        stage = self.instance.get_stage(stage_id)
        if stage is None:
            raise StageNotFoundError(stage_id, self.instance.id)
        return [
            dep for dep in stage.dependencies
            if self._stage_status.get(dep) != StageStatus.COMPLETED
        ]

    def ready_tasks(self) -> list[str]:
        """Pending tasks whose dependencies are all Done."""
        return [
            task.id
            for _, task in self.instance.iter_tasks()
            if task.status == TaskStatus.PENDING and self.is_task_eligible(task.id)
        ]
