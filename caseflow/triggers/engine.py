"""
Trigger engine.

Maps external business events (DocumentUploaded, DiscoveryServed, ...) to
automated actions on the Active workflow instances of the event's case.
Rule payloads are validated when the rule is registered; at execution time
a failing action is logged and recorded, never raised.
"""

import logging
from datetime import datetime
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, Field, ValidationError

from caseflow.core import lifecycle
from caseflow.core.dag import DependencyResolver
from caseflow.core.errors import InvalidTransitionError, RuleValidationError
from caseflow.core.lifecycle import InstanceChanges
from caseflow.core.models import (
    AdvanceStageAction,
    BusinessEvent,
    CreateTaskAction,
    EventKind,
    InstanceFilter,
    Notification,
    NotifyAction,
    PendingAutomation,
    TaskSpec,
    TriggerRule,
    WorkflowEvent,
    WorkflowInstance,
)
from caseflow.core.state_machine import InstanceStatus, StageStatus, TaskStatus
from caseflow.orchestrator.engine import WorkflowOrchestrator
from caseflow.triggers.resolver import EventPlaceholderResolver, validate_placeholders

logger = logging.getLogger(__name__)


class RuleStatus(str, Enum):
    """Outcome of applying one rule to one instance."""

    APPLIED = "applied"
    PENDING = "pending"
    SKIPPED = "skipped"
    FAILED = "failed"


class RuleExecutionResult(BaseModel):
    """Result of one action applied to one instance."""

    rule_id: Optional[str] = Field(default=None, description="None for automated task starts")
    instance_id: str
    action: str
    status: RuleStatus
    detail: Optional[str] = None
    task_id: Optional[str] = None


class TriggerEngine:
    """
    Registry of trigger rules and their executor.

    Rules run in registration order; each action is applied to each Active
    instance of the case in its own critical section.
    """

    def __init__(self, orchestrator: WorkflowOrchestrator):
        self.orchestrator = orchestrator
        self._rules: dict[str, TriggerRule] = {}

    # ==================== Rules ====================

    def register_rule(self, rule: Union[TriggerRule, dict[str, Any]]) -> TriggerRule:
        """
        Validate and activate a rule.

        Raises:
            RuleValidationError: On a malformed action payload, an unknown
                placeholder or a duplicate rule id
        """
        if isinstance(rule, dict):
            try:
                rule = TriggerRule.model_validate(rule)
            except ValidationError as e:
                errors = [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]
                raise RuleValidationError(f"Invalid trigger rule: {errors}", errors=errors) from e

        problems = []
        for text in self._action_texts(rule):
            problems.extend(validate_placeholders(text))
        if problems:
            raise RuleValidationError(f"Invalid placeholders in rule {rule.id}: {problems}", errors=problems)

        if rule.id in self._rules:
            raise RuleValidationError(f"Rule already registered: {rule.id}", rule_id=rule.id)

        self._rules[rule.id] = rule
        logger.info(f"Registered trigger rule {rule.id} on {rule.event_name} ({rule.action.type})")
        return rule

    @staticmethod
    def _action_texts(rule: TriggerRule) -> list[str]:
        action = rule.action
        if isinstance(action, CreateTaskAction):
            return [action.title]
        if isinstance(action, NotifyAction):
            return [action.title, action.message]
        return []

    def unregister_rule(self, rule_id: str) -> bool:
        removed = self._rules.pop(rule_id, None)
        if removed:
            logger.info(f"Unregistered trigger rule {rule_id}")
        return removed is not None

    def list_rules(self) -> list[TriggerRule]:
        return list(self._rules.values())

    # ==================== Events ====================

    async def handle_event(
        self,
        event: BusinessEvent,
        actor: str = "system",
    ) -> list[RuleExecutionResult]:
        """
        Apply every matching rule to every Active instance of the event's case.

        Also starts Pending tasks whose automated trigger names this event,
        when their dependencies allow it.

        Returns:
            One result per (rule, instance) pair plus one per started task
        """
        instances = await self.orchestrator.list_instances(
            InstanceFilter(case_id=event.case_id, status=InstanceStatus.ACTIVE)
        )
        rules = [rule for rule in self._rules.values() if rule.matches(event)]

        logger.info(
            f"Event {event.name} for case {event.case_id}: "
            f"{len(rules)} rules, {len(instances)} active instances"
        )

        results: list[RuleExecutionResult] = []
        for rule in rules:
            for instance in instances:
                results.append(await self._execute(rule, instance.id, event, actor))

        for instance in instances:
            results.extend(await self._start_triggered_tasks(instance, event, actor))

        return results

    async def _execute(
        self,
        rule: TriggerRule,
        instance_id: str,
        event: BusinessEvent,
        actor: str,
    ) -> RuleExecutionResult:
        action = rule.action
        try:
            if isinstance(action, CreateTaskAction):
                return await self._create_task(rule, action, instance_id, event, actor)
            elif isinstance(action, AdvanceStageAction):
                return await self._advance_stage(rule, action, instance_id, event, actor)
            return await self._notify(rule, action, instance_id, event, actor)

        except Exception as e:
            error = f"{type(e).__name__}: {e}"
            logger.error(
                f"TriggerActionFailed: rule {rule.id} ({action.type}) "
                f"on instance {instance_id}: {error}"
            )
            await self.orchestrator.store.append_events([
                WorkflowEvent(
                    kind=EventKind.TRIGGER_ACTION_FAILED,
                    instance_id=instance_id,
                    case_id=event.case_id,
                    actor=actor,
                    occurred_at=self.orchestrator.clock(),
                    data={
                        "rule_id": rule.id,
                        "event_name": event.name,
                        "action": action.type,
                        "error": error,
                    },
                )
            ])
            return RuleExecutionResult(
                rule_id=rule.id,
                instance_id=instance_id,
                action=action.type,
                status=RuleStatus.FAILED,
                detail=error,
            )

    async def _create_task(
        self,
        rule: TriggerRule,
        action: CreateTaskAction,
        instance_id: str,
        event: BusinessEvent,
        actor: str,
    ) -> RuleExecutionResult:
        resolver = EventPlaceholderResolver(event)
        assignee = action.assignee
        if assignee is None and action.assignee_role:
            assignee = await self.orchestrator.identity.resolve_role(action.assignee_role, event.case_id)

        spec = TaskSpec(
            title=resolver.resolve(action.title),
            assignee=assignee,
            assignee_role=action.assignee_role,
            priority=action.priority,
            sla_hours=action.sla_hours,
            related_module=action.related_module or event.module_tag,
        )

        def apply(instance: WorkflowInstance, changes: InstanceChanges, now: datetime) -> Optional[str]:
            if instance.status != InstanceStatus.ACTIVE:
                return None
            stage = lifecycle.locate_stage(instance, action.stage)
            task = lifecycle.insert_task(instance, stage, spec, now, changes)
            changes.record(
                instance,
                EventKind.TRIGGER_FIRED,
                rule_id=rule.id,
                event_name=event.name,
                action=action.type,
                task_id=task.id,
            )
            return task.id

        task_id = await self.orchestrator.mutate(instance_id, apply, actor)
        if task_id is None:
            return self._skipped(rule, instance_id, "instance is no longer active")
        return RuleExecutionResult(
            rule_id=rule.id,
            instance_id=instance_id,
            action=action.type,
            status=RuleStatus.APPLIED,
            task_id=task_id,
        )

    async def _advance_stage(
        self,
        rule: TriggerRule,
        action: AdvanceStageAction,
        instance_id: str,
        event: BusinessEvent,
        actor: str,
    ) -> RuleExecutionResult:

        def apply(instance: WorkflowInstance, changes: InstanceChanges, now: datetime) -> tuple[RuleStatus, Optional[str]]:
            if instance.status != InstanceStatus.ACTIVE:
                return RuleStatus.SKIPPED, "instance is no longer active"

            stage = lifecycle.locate_stage(instance, action.stage)
            if stage.status != StageStatus.PENDING:
                return RuleStatus.SKIPPED, f"stage '{stage.title}' is already {stage.status.value}"

            blocking = DependencyResolver(instance).blocking_stages(stage.id)
            if not blocking:
                lifecycle.activate_stage(
                    instance,
                    stage,
                    now,
                    changes,
                    reason="trigger",
                    rule_id=rule.id,
                )
                changes.record(
                    instance,
                    EventKind.TRIGGER_FIRED,
                    rule_id=rule.id,
                    event_name=event.name,
                    action=action.type,
                    stage_id=stage.id,
                )
                return RuleStatus.APPLIED, None

            if any(p.stage_id == stage.id for p in instance.pending_automations):
                return RuleStatus.PENDING, f"stage '{stage.title}' already waiting on {blocking}"

            pending = PendingAutomation(
                rule_id=rule.id,
                stage_id=stage.id,
                event_name=event.name,
                recorded_at=now,
            )
            instance.pending_automations.append(pending)
            changes.record(
                instance,
                EventKind.PENDING_AUTOMATION_RECORDED,
                rule_id=rule.id,
                event_name=event.name,
                stage_id=stage.id,
                blocking_stages=blocking,
            )
            return RuleStatus.PENDING, f"stage '{stage.title}' waiting on {blocking}"

        status, detail = await self.orchestrator.mutate(instance_id, apply, actor)
        return RuleExecutionResult(
            rule_id=rule.id,
            instance_id=instance_id,
            action=action.type,
            status=status,
            detail=detail,
        )

    async def _notify(
        self,
        rule: TriggerRule,
        action: NotifyAction,
        instance_id: str,
        event: BusinessEvent,
        actor: str,
    ) -> RuleExecutionResult:
        recipients: list[str] = []
        if action.recipient:
            recipients.append(action.recipient)
        if action.recipient_role:
            recipients.extend(
                await self.orchestrator.identity.users_with_role(action.recipient_role, event.case_id)
            )
        if action.stage_assignees:
            instance = await self.orchestrator.get_instance(instance_id)
            stage = lifecycle.locate_stage(instance, action.stage_assignees)
            recipients.extend(task.assignee for task in stage.tasks if task.assignee)

        # Keep first occurrence order
        recipients = list(dict.fromkeys(recipients))
        if not recipients:
            return self._skipped(rule, instance_id, "no recipients resolved")

        resolver = EventPlaceholderResolver(event)
        title = resolver.resolve(action.title)
        message = resolver.resolve(action.message)
        key = f"rule:{rule.id}:{instance_id}:{event.occurred_at.isoformat()}"
        now = self.orchestrator.clock()

        # Nothing is enqueued until every recipient has a notification
        notifications = [
            Notification(
                user_id=user_id,
                kind=action.kind,
                title=title,
                message=message,
                case_id=event.case_id,
                instance_id=instance_id,
                payload={"rule_id": rule.id, "event_name": event.name},
                idempotency_key=key,
                created_at=now,
            )
            for user_id in recipients
        ]
        await self.orchestrator.dispatcher.enqueue_many(notifications)

        await self.orchestrator.store.append_events([
            WorkflowEvent(
                kind=EventKind.TRIGGER_FIRED,
                instance_id=instance_id,
                case_id=event.case_id,
                actor=actor,
                occurred_at=now,
                data={
                    "rule_id": rule.id,
                    "event_name": event.name,
                    "action": action.type,
                    "recipients": recipients,
                },
            )
        ])
        return RuleExecutionResult(
            rule_id=rule.id,
            instance_id=instance_id,
            action=action.type,
            status=RuleStatus.APPLIED,
            detail=f"notified {len(recipients)} users",
        )

    async def _start_triggered_tasks(
        self,
        instance: WorkflowInstance,
        event: BusinessEvent,
        actor: str,
    ) -> list[RuleExecutionResult]:
        """Start Pending tasks whose automated trigger is this event."""
        if not any(
            task.automated_trigger == event.name and task.status == TaskStatus.PENDING
            for _, task in instance.iter_tasks()
        ):
            return []

        def apply(working: WorkflowInstance, changes: InstanceChanges, now: datetime) -> list[str]:
            if working.status != InstanceStatus.ACTIVE:
                return []
            started = []
            for _, task in list(working.iter_tasks()):
                if task.automated_trigger != event.name or task.status != TaskStatus.PENDING:
                    continue
                try:
                    lifecycle.transition_task(
                        working,
                        task.id,
                        TaskStatus.IN_PROGRESS,
                        now,
                        changes,
                        reason=f"automated trigger {event.name}",
                    )
                except InvalidTransitionError as e:
                    logger.debug(f"Task {task.id} not started by {event.name}: {e}")
                    continue
                changes.record(
                    working,
                    EventKind.TRIGGER_FIRED,
                    event_name=event.name,
                    action="start_task",
                    task_id=task.id,
                )
                started.append(task.id)
            return started

        try:
            started = await self.orchestrator.mutate(instance.id, apply, actor)
        except Exception as e:
            logger.error(f"TriggerActionFailed: starting tasks for {event.name} on instance {instance.id}: {e}")
            return []

        return [
            RuleExecutionResult(
                instance_id=instance.id,
                action="start_task",
                status=RuleStatus.APPLIED,
                task_id=task_id,
            )
            for task_id in started
        ]

    @staticmethod
    def _skipped(rule: TriggerRule, instance_id: str, detail: str) -> RuleExecutionResult:
        return RuleExecutionResult(
            rule_id=rule.id,
            instance_id=instance_id,
            action=rule.action.type,
            status=RuleStatus.SKIPPED,
            detail=detail,
        )
