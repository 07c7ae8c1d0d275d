"""
Integration tests for the trigger engine.
"""

import logging

import pytest

from caseflow.core.errors import RuleValidationError
from caseflow.core.models import BusinessEvent, EventKind, StageTemplate, TaskTemplate, TriggerRule
from caseflow.core.state_machine import StageStatus, TaskStatus
from caseflow.triggers.engine import RuleStatus


def document_uploaded(case_id="C-1", **payload):
    return BusinessEvent(
        name="DocumentUploaded",
        case_id=case_id,
        module_tag="Documents",
        payload=payload or {"document_name": "Motion to Compel"},
    )


def task_by_title(instance, title):
    for _, task in instance.iter_tasks():
        if task.title == title:
            return task
    raise AssertionError(f"no task titled {title!r}")


async def complete(orchestrator, task_id):
    for status in (TaskStatus.IN_PROGRESS, TaskStatus.REVIEW, TaskStatus.DONE):
        await orchestrator.transition_task(task_id, status)


REVIEW_RULE = {
    "id": "review-uploads",
    "event_name": "DocumentUploaded",
    "match_condition": {"module_tag": "Documents"},
    "action": {
        "type": "create_task",
        "stage": "Discovery",
        "title": "Review {{ event.payload.document_name }}",
        "assignee_role": "attorney",
    },
}


@pytest.fixture
def side_stage_template():
    """A -> B by order; C depends on A but sits after B."""
    return [
        StageTemplate(id="a", title="A", order=0, tasks=[TaskTemplate(id="a1", title="A1")]),
        StageTemplate(id="b", title="B", order=1, tasks=[TaskTemplate(id="b1", title="B1")]),
        StageTemplate(
            id="c",
            title="C",
            order=2,
            dependencies=["a"],
            tasks=[TaskTemplate(id="c1", title="C1")],
        ),
    ]


class TestRuleRegistration:
    """Tests for rule validation at registration."""

    def test_register_from_dict(self, trigger_engine):
        rule = trigger_engine.register_rule(REVIEW_RULE)

        assert rule.id == "review-uploads"
        assert trigger_engine.list_rules() == [rule]

    def test_malformed_payload_rejected(self, trigger_engine):
        with pytest.raises(RuleValidationError) as exc_info:
            trigger_engine.register_rule({
                "event_name": "DocumentUploaded",
                "action": {"type": "create_task", "title": "Missing stage"},
            })

        assert any("stage" in error for error in exc_info.value.details["errors"])
        assert trigger_engine.list_rules() == []

    def test_unknown_placeholder_rejected(self, trigger_engine):
        with pytest.raises(RuleValidationError, match="placeholder"):
            trigger_engine.register_rule({
                "event_name": "DocumentUploaded",
                "action": {"type": "notify", "recipient": "pat", "title": "{{ env.SECRET }}"},
            })

    def test_duplicate_id_rejected(self, trigger_engine):
        trigger_engine.register_rule(REVIEW_RULE)

        with pytest.raises(RuleValidationError, match="already registered"):
            trigger_engine.register_rule(REVIEW_RULE)

    def test_unregister(self, trigger_engine):
        trigger_engine.register_rule(REVIEW_RULE)

        assert trigger_engine.unregister_rule("review-uploads")
        assert not trigger_engine.unregister_rule("review-uploads")
        assert trigger_engine.list_rules() == []


class TestCreateTask:
    """Tests for the CreateTask action."""

    @pytest.mark.asyncio
    async def test_document_uploaded_creates_one_pending_task(self, orchestrator, trigger_engine, litigation_instance):
        trigger_engine.register_rule(REVIEW_RULE)

        results = await trigger_engine.handle_event(document_uploaded(), actor="documents-service")

        assert len(results) == 1
        assert results[0].status == RuleStatus.APPLIED
        instance = await orchestrator.get_instance(litigation_instance.id)
        discovery = instance.stages[1]
        created = [task for task in discovery.tasks if task.id == results[0].task_id]
        assert len(created) == 1
        task = created[0]
        assert task.title == "Review Motion to Compel"
        assert task.status == TaskStatus.PENDING
        assert task.assignee == "alex"
        assert task.related_module == "Documents"
        assert len(discovery.tasks) == 2

        events = await orchestrator.get_events(instance.id)
        fired = [e for e in events if e.kind == EventKind.TRIGGER_FIRED]
        assert fired[0].data["rule_id"] == "review-uploads"
        assert fired[0].actor == "documents-service"

    @pytest.mark.asyncio
    async def test_non_matching_events_ignored(self, orchestrator, trigger_engine, litigation_instance):
        trigger_engine.register_rule(REVIEW_RULE)

        billing = BusinessEvent(name="DocumentUploaded", case_id="C-1", module_tag="Billing")
        other_name = BusinessEvent(name="InvoiceSent", case_id="C-1", module_tag="Documents")
        other_case = document_uploaded(case_id="C-2")

        for event in (billing, other_name, other_case):
            assert await trigger_engine.handle_event(event) == []

        instance = await orchestrator.get_instance(litigation_instance.id)
        assert len(instance.task_ids()) == 2

    @pytest.mark.asyncio
    async def test_applies_to_every_active_instance(self, orchestrator, trigger_engine, litigation_instance):
        second = await orchestrator.instantiate("standard-litigation", "C-1")
        paused = await orchestrator.instantiate("standard-litigation", "C-1")
        await orchestrator.pause(paused.id)
        trigger_engine.register_rule(REVIEW_RULE)

        results = await trigger_engine.handle_event(document_uploaded())

        assert {r.instance_id for r in results} == {litigation_instance.id, second.id}
        untouched = await orchestrator.get_instance(paused.id)
        assert len(untouched.task_ids()) == 2

    @pytest.mark.asyncio
    async def test_failure_is_isolated(self, orchestrator, trigger_engine, litigation_instance, caplog):
        trigger_engine.register_rule(TriggerRule.model_validate({
            "id": "broken",
            "event_name": "DocumentUploaded",
            "action": {"type": "create_task", "stage": "Appeal", "title": "Never created"},
        }))
        trigger_engine.register_rule({
            "id": "intake-note",
            "event_name": "DocumentUploaded",
            "action": {"type": "create_task", "stage": "Intake", "title": "File {{ event.payload.document_name }}"},
        })

        with caplog.at_level(logging.ERROR):
            results = await trigger_engine.handle_event(document_uploaded())

        statuses = {r.rule_id: r.status for r in results}
        assert statuses == {"broken": RuleStatus.FAILED, "intake-note": RuleStatus.APPLIED}
        assert "TriggerActionFailed" in caplog.text

        events = await orchestrator.get_events(litigation_instance.id)
        failed = [e for e in events if e.kind == EventKind.TRIGGER_ACTION_FAILED]
        assert len(failed) == 1
        assert "StageNotFoundError" in failed[0].data["error"]

        instance = await orchestrator.get_instance(litigation_instance.id)
        assert task_by_title(instance, "File Motion to Compel").status == TaskStatus.PENDING


class TestAdvanceStage:
    """Tests for the AdvanceStage action and pending automations."""

    @pytest.mark.asyncio
    async def test_eligible_stage_activated(self, orchestrator, trigger_engine, side_stage_template):
        instance = await orchestrator.create_ad_hoc("C-1", side_stage_template)
        trigger_engine.register_rule({
            "id": "open-b",
            "event_name": "DiscoveryServed",
            "action": {"type": "advance_stage", "stage": "B"},
        })

        results = await trigger_engine.handle_event(BusinessEvent(name="DiscoveryServed", case_id="C-1"))

        assert results[0].status == RuleStatus.APPLIED
        stored = await orchestrator.get_instance(instance.id)
        assert stored.stages[1].status == StageStatus.ACTIVE

        again = await trigger_engine.handle_event(BusinessEvent(name="DiscoveryServed", case_id="C-1"))
        assert again[0].status == RuleStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_blocked_stage_recorded_then_activated(self, orchestrator, trigger_engine, side_stage_template):
        instance = await orchestrator.create_ad_hoc("C-1", side_stage_template)
        trigger_engine.register_rule({
            "id": "open-c",
            "event_name": "DiscoveryServed",
            "action": {"type": "advance_stage", "stage": "C"},
        })

        results = await trigger_engine.handle_event(BusinessEvent(name="DiscoveryServed", case_id="C-1"))

        assert results[0].status == RuleStatus.PENDING
        stored = await orchestrator.get_instance(instance.id)
        assert stored.stages[2].status == StageStatus.PENDING
        assert [p.stage_id for p in stored.pending_automations] == [stored.stages[2].id]

        repeat = await trigger_engine.handle_event(BusinessEvent(name="DiscoveryServed", case_id="C-1"))
        assert repeat[0].status == RuleStatus.PENDING
        assert len((await orchestrator.get_instance(instance.id)).pending_automations) == 1

        await complete(orchestrator, task_by_title(stored, "A1").id)

        stored = await orchestrator.get_instance(instance.id)
        a, b, c = stored.stages
        assert a.status == StageStatus.COMPLETED
        assert b.status == StageStatus.ACTIVE
        assert c.status == StageStatus.ACTIVE
        assert stored.pending_automations == []

        events = await orchestrator.get_events(instance.id)
        activated = [e for e in events if e.kind == EventKind.STAGE_ACTIVATED and e.data["stage_id"] == c.id]
        assert activated[0].data["reason"] == "pending_automation"
        assert activated[0].data["rule_id"] == "open-c"


class TestNotify:
    """Tests for the Notify action."""

    @pytest.mark.asyncio
    async def test_notify_resolves_recipients_once(self, orchestrator, trigger_engine, litigation_instance):
        trigger_engine.register_rule({
            "id": "served",
            "event_name": "DiscoveryServed",
            "action": {
                "type": "notify",
                "title": "Discovery served on {{ event.case_id }}",
                "recipient": "pat",
                "recipient_role": "partner",
                "stage_assignees": "Intake",
            },
        })
        event = BusinessEvent(name="DiscoveryServed", case_id="C-1")

        results = await trigger_engine.handle_event(event)
        await trigger_engine.handle_event(event)

        assert results[0].status == RuleStatus.APPLIED
        assert results[0].detail == "notified 3 users"
        for user in ("morgan", "sam"):
            inbox = await orchestrator.dispatcher.get_notifications(user)
            assert [n.title for n in inbox] == ["Discovery served on C-1"]
        pat = await orchestrator.dispatcher.get_notifications("pat")
        assert [n.kind for n in pat].count("automation") == 1

    @pytest.mark.asyncio
    async def test_unresolvable_recipient_sends_nothing(self, orchestrator, trigger_engine, litigation_instance):
        """A recipient that fails to resolve fails the action before anyone is notified."""
        trigger_engine.register_rule({
            "id": "served",
            "event_name": "DiscoveryServed",
            "action": {
                "type": "notify",
                "title": "Discovery served",
                "recipient": "morgan",
                "stage_assignees": "Appeal",
            },
        })

        results = await trigger_engine.handle_event(BusinessEvent(name="DiscoveryServed", case_id="C-1"))

        assert results[0].status == RuleStatus.FAILED
        assert await orchestrator.dispatcher.get_notifications("morgan") == []

    @pytest.mark.asyncio
    async def test_no_recipients_skipped(self, trigger_engine, litigation_instance):
        trigger_engine.register_rule({
            "event_name": "DiscoveryServed",
            "action": {"type": "notify", "title": "Nobody", "recipient_role": "judge"},
        })

        results = await trigger_engine.handle_event(BusinessEvent(name="DiscoveryServed", case_id="C-1"))

        assert results[0].status == RuleStatus.SKIPPED


class TestAutomatedTaskStart:
    """Tests for tasks started by their automated trigger."""

    @pytest.mark.asyncio
    async def test_trigger_starts_task_once_eligible(self, orchestrator, trigger_engine, three_stage_template):
        await orchestrator.registry.publish(three_stage_template)
        instance = await orchestrator.instantiate("full-litigation", "C-1")
        trial_date_set = BusinessEvent(name="TrialDateSet", case_id="C-1", module_tag="Calendar")

        assert await trigger_engine.handle_event(trial_date_set) == []

        for title in ("Open File", "Serve Requests", "Issue Subpoenas", "Review Production"):
            await complete(orchestrator, task_by_title(instance, title).id)

        results = await trigger_engine.handle_event(trial_date_set)

        trial_prep = task_by_title(instance, "Trial Preparation")
        assert [(r.action, r.task_id) for r in results] == [("start_task", trial_prep.id)]
        _, task = await orchestrator.get_task(trial_prep.id)
        assert task.status == TaskStatus.IN_PROGRESS
