"""
Unit tests for escalation of overdue tasks.
"""

import logging
from datetime import datetime, timedelta, timezone

import pytest

from caseflow.core.escalation import find_due_escalations, hours_overdue, select_rule
from caseflow.core.lifecycle import InstanceChanges, apply_escalations, build_instance, reopen_task, transition_task
from caseflow.core.models import EscalationRule, EventKind, Priority, TaskInstance
from caseflow.core.sla import SLAPolicy
from caseflow.core.state_machine import TaskStatus

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
ASSIGNEES = {"paralegal": "pat", "attorney": "alex"}


@pytest.fixture
def instance(litigation_template):
    """Standard Litigation instantiated at NOW; Conflict Check is due NOW + 48h."""
    return build_instance(litigation_template.stages, "C-1", NOW, ASSIGNEES)


def conflict_check(instance):
    return instance.stages[0].tasks[0]


class TestSelectRule:
    """Tests for picking the escalation level a task has reached."""

    def test_highest_reached_level(self):
        task = TaskInstance(title="Conflict Check")
        first = EscalationRule(level=1, after_hours_overdue=0, escalate_to_user="morgan")
        second = EscalationRule(level=2, after_hours_overdue=24, escalate_to_user="sam")

        assert select_rule(task, 2, [first, second]) is first
        assert select_rule(task, 30, [first, second]) is second

    def test_levels_already_applied_are_skipped(self):
        task = TaskInstance(title="Conflict Check", escalation_level=1)
        first = EscalationRule(level=1, escalate_to_user="morgan")

        assert select_rule(task, 100, [first]) is None

    def test_priority_filter(self):
        rule = EscalationRule(escalate_to_user="morgan", priorities=[Priority.CRITICAL, Priority.HIGH])

        assert select_rule(TaskInstance(title="Motion", priority=Priority.HIGH), 1, [rule]) is rule
        assert select_rule(TaskInstance(title="Filing", priority=Priority.LOW), 1, [rule]) is None

    def test_disabled_rule_ignored(self):
        rule = EscalationRule(escalate_to_user="morgan", enabled=False)

        assert select_rule(TaskInstance(title="Conflict Check"), 10, [rule]) is None

    def test_rule_needs_target(self):
        with pytest.raises(ValueError):
            EscalationRule(level=1)


class TestFindDueEscalations:
    """Tests for scanning an instance for overdue tasks."""

    def test_only_overdue_tasks(self, instance):
        rule = EscalationRule(escalate_to_user="morgan")

        assert find_due_escalations(instance, NOW + timedelta(hours=47), SLAPolicy(), [rule]) == []

        due = find_due_escalations(instance, NOW + timedelta(hours=50), SLAPolicy(), [rule])
        assert [d.task.id for d in due] == [conflict_check(instance).id]
        assert due[0].hours_overdue == pytest.approx(2.0)

    def test_done_task_is_not_overdue(self, instance):
        task = conflict_check(instance)
        task.status = TaskStatus.DONE

        assert hours_overdue(task, instance.stages[0], NOW + timedelta(days=10), SLAPolicy()) is None

    def test_no_rules(self, instance):
        assert find_due_escalations(instance, NOW + timedelta(days=10), SLAPolicy(), []) == []


class TestApplyEscalations:
    """Tests for the escalation side effects on an instance."""

    def test_escalation_notifies_target_and_assignee(self, instance):
        rule = EscalationRule(level=1, escalate_to_role="partner")
        changes = InstanceChanges(now=NOW + timedelta(hours=50))

        escalated = apply_escalations(
            instance, changes.now, changes, SLAPolicy(), [rule], {rule.id: "morgan"}
        )

        task = conflict_check(instance)
        assert escalated == [task]
        assert task.escalation_level == 1
        assert task.assignee == "pat"
        event = changes.events[-1]
        assert event.kind == EventKind.TASK_ESCALATED
        assert event.data["escalated_to"] == "morgan"
        assert event.data["hours_overdue"] == 2.0
        assert [(n.user_id, n.kind) for n in changes.notifications] == [
            ("morgan", "escalation"),
            ("pat", "escalation"),
        ]

    def test_each_level_applies_once(self, instance):
        rule = EscalationRule(level=1, escalate_to_user="morgan")
        later = NOW + timedelta(hours=50)

        apply_escalations(instance, later, InstanceChanges(now=later), SLAPolicy(), [rule], {rule.id: "morgan"})
        changes = InstanceChanges(now=later + timedelta(hours=5))
        again = apply_escalations(instance, changes.now, changes, SLAPolicy(), [rule], {rule.id: "morgan"})

        assert again == []
        assert changes.events == []

    def test_auto_reassign(self, instance):
        rule = EscalationRule(level=2, escalate_to_user="sam", auto_reassign=True, notify_original_assignee=False)
        changes = InstanceChanges(now=NOW + timedelta(hours=50))

        apply_escalations(instance, changes.now, changes, SLAPolicy(), [rule], {rule.id: "sam"})

        task = conflict_check(instance)
        assert task.assignee == "sam"
        assert task.escalation_level == 2
        kinds = [e.kind for e in changes.events]
        assert kinds == [EventKind.TASK_ESCALATED, EventKind.TASK_REASSIGNED]
        assert changes.events[-1].data["reason"] == "escalation level 2"
        assert [(n.user_id, n.kind) for n in changes.notifications] == [("sam", "escalation")]

    def test_reopened_task_escalates_again(self, instance):
        rule = EscalationRule(level=1, escalate_to_user="morgan")
        task = conflict_check(instance)
        later = NOW + timedelta(hours=50)
        changes = InstanceChanges(now=later)

        apply_escalations(instance, later, changes, SLAPolicy(), [rule], {rule.id: "morgan"})
        for status in (TaskStatus.IN_PROGRESS, TaskStatus.REVIEW, TaskStatus.DONE):
            transition_task(instance, task.id, status, later, changes)
        reopen_task(instance, task.id, later, changes, reason="missed a party")

        assert task.escalation_level == 0
        again = apply_escalations(instance, later, changes, SLAPolicy(), [rule], {rule.id: "morgan"})
        assert again == [task]

    def test_unresolved_target_skips_task(self, instance, caplog):
        rule = EscalationRule(level=1, escalate_to_role="judge")
        changes = InstanceChanges(now=NOW + timedelta(hours=50))

        with caplog.at_level(logging.WARNING, logger="caseflow.core.lifecycle"):
            escalated = apply_escalations(instance, changes.now, changes, SLAPolicy(), [rule], {rule.id: None})

        assert escalated == []
        assert conflict_check(instance).escalation_level == 0
        assert "has no target" in caplog.text
