"""
Unit tests for dependency graph validation and eligibility.
"""

from datetime import datetime, timezone

import pytest

from caseflow.core.dag import DependencyResolver, DependencyValidator, validate_stage_graph, validate_template
from caseflow.core.errors import (
    CyclicDependencyError,
    StageNotFoundError,
    TaskNotFoundError,
    TemplateValidationError,
)
from caseflow.core.lifecycle import build_instance
from caseflow.core.models import StageTemplate, TaskTemplate, WorkflowTemplate
from caseflow.core.state_machine import StageStatus, TaskStatus

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class TestDependencyValidator:
    """Tests for graph validation."""

    def test_valid_linear_graph(self):
        """Test validation of a linear chain."""
        result = DependencyValidator({"a": [], "b": ["a"], "c": ["b"]}).validate()

        assert result.is_valid
        assert result.errors == []
        assert result.topological_order == ["a", "b", "c"]
        assert result.levels == {"a": 0, "b": 1, "c": 2}

    def test_parallel_nodes_share_a_level(self):
        """Test fan-out/fan-in levels."""
        graph = {"a": [], "b": ["a"], "c": ["a"], "d": ["b", "c"]}
        result = DependencyValidator(graph).validate()

        assert result.is_valid
        assert result.topological_order[0] == "a"
        assert result.topological_order[-1] == "d"
        assert result.levels["b"] == result.levels["c"] == 1
        assert result.levels["d"] == 2

    def test_cycle_detection(self):
        """Test that cycles are detected and reported."""
        result = DependencyValidator({"a": ["c"], "b": ["a"], "c": ["b"]}).validate()

        assert not result.is_valid
        assert any(e.code == "CYCLE_DETECTED" for e in result.errors)
        assert set(result.cycle_nodes) == {"a", "b", "c"}
        assert result.topological_order == []

    def test_self_loop_detection(self):
        """Test detection of self-referential dependencies."""
        result = DependencyValidator({"a": ["a"]}).validate()

        assert not result.is_valid
        assert any(e.code == "SELF_LOOP" for e in result.errors)

    def test_invalid_dependency_reference(self):
        """Test detection of dangling references."""
        result = DependencyValidator({"a": ["ghost"]}).validate()

        assert not result.is_valid
        error = result.errors[0]
        assert error.code == "INVALID_DEPENDENCY"
        assert error.details["dependency"] == "ghost"


class TestTemplateValidation:
    """Tests for stage and task graph validation at publish time."""

    def test_two_stage_cycle_is_rejected(self):
        """Test stages {A depends on B, B depends on A}."""
        stages = [
            StageTemplate(id="A", title="A", order=0, dependencies=["B"]),
            StageTemplate(id="B", title="B", order=1, dependencies=["A"]),
        ]

        with pytest.raises(CyclicDependencyError) as exc_info:
            validate_stage_graph(stages)

        assert exc_info.value.scope == "stage"
        assert set(exc_info.value.cycle_nodes) == {"A", "B"}

    def test_task_cycle_is_rejected(self):
        stages = [
            StageTemplate(
                id="s",
                title="S",
                order=0,
                tasks=[
                    TaskTemplate(id="t1", title="One", dependencies=["t2"]),
                    TaskTemplate(id="t2", title="Two", dependencies=["t1"]),
                ],
            ),
        ]

        with pytest.raises(CyclicDependencyError) as exc_info:
            validate_stage_graph(stages)

        assert exc_info.value.scope == "task"

    def test_unknown_stage_reference(self):
        stages = [StageTemplate(id="s", title="S", order=0, dependencies=["nowhere"])]

        with pytest.raises(TemplateValidationError) as exc_info:
            validate_stage_graph(stages)

        assert "INVALID_DEPENDENCY" in exc_info.value.errors[0]

    def test_forward_task_dependency_warns(self):
        """Test a task waiting on a task of a later stage produces a warning."""
        template = WorkflowTemplate(
            id="odd",
            name="Odd",
            stages=[
                StageTemplate(
                    id="first",
                    title="First",
                    order=0,
                    tasks=[TaskTemplate(id="early", title="Early", dependencies=["late"])],
                ),
                StageTemplate(
                    id="second",
                    title="Second",
                    order=1,
                    tasks=[TaskTemplate(id="late", title="Late")],
                ),
            ],
        )

        report = validate_template(template)

        assert [w.code for w in report.warnings] == ["FORWARD_TASK_DEPENDENCY"]

    def test_valid_template(self, litigation_template):
        report = validate_template(litigation_template)

        assert report.stages.topological_order == ["intake", "discovery"]
        assert report.tasks.levels == {"conflict-check": 0, "initial-disclosures": 1}
        assert report.warnings == []


class TestDependencyResolver:
    """Tests for eligibility queries on instances."""

    def _instance(self, template):
        return build_instance(template.stages, "C-1", NOW)

    def test_task_eligibility(self, three_stage_template):
        instance = self._instance(three_stage_template)
        discovery = instance.stages[1]
        requests, subpoenas, review = discovery.tasks
        resolver = DependencyResolver(instance)

        assert resolver.is_task_eligible(requests.id)
        assert not resolver.is_task_eligible(review.id)
        assert set(resolver.blocking_tasks(review.id)) == {requests.id, subpoenas.id}

        requests.status = TaskStatus.DONE
        subpoenas.status = TaskStatus.DONE
        assert DependencyResolver(instance).is_task_eligible(review.id)

    def test_stage_eligibility(self, three_stage_template):
        instance = self._instance(three_stage_template)
        intake, discovery, trial = instance.stages
        resolver = DependencyResolver(instance)

        assert resolver.is_stage_eligible(intake.id)
        assert not resolver.is_stage_eligible(discovery.id)
        assert resolver.blocking_stages(trial.id) == [intake.id, discovery.id]

        intake.status = StageStatus.COMPLETED
        resolver = DependencyResolver(instance)
        assert resolver.is_stage_eligible(discovery.id)
        assert resolver.blocking_stages(trial.id) == [discovery.id]

    def test_ready_tasks(self, three_stage_template):
        instance = self._instance(three_stage_template)
        ready = DependencyResolver(instance).ready_tasks()

        titles = {task.title for _, task in instance.iter_tasks() if task.id in ready}
        assert titles == {"Open File", "Serve Requests", "Issue Subpoenas", "Trial Preparation"}

    def test_unknown_ids(self, three_stage_template):
        resolver = DependencyResolver(self._instance(three_stage_template))

        with pytest.raises(TaskNotFoundError):
            resolver.is_task_eligible("task_missing")
        with pytest.raises(StageNotFoundError):
            resolver.is_stage_eligible("stage_missing")
