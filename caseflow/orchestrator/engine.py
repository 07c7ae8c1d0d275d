"""
Workflow orchestrator engine.

Manages the lifecycle of case workflow instances including:
- Instantiation from published templates and ad hoc stage lists
- Task transitions with dependency gating
- Stage auto-activation and instance completion
- SLA evaluation, escalation and the background sweep
- Bulk reassignment
- Publication of event log entries and notifications after each commit
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Iterable, Optional, TypeVar, Union

from pydantic import ValidationError

from caseflow.analytics.aggregator import WorkflowMetrics, compute_metrics
from caseflow.config import get_settings
from caseflow.core import lifecycle
from caseflow.core.dag import DependencyResolver, validate_stage_graph
from caseflow.core.errors import (
    CaseNotFoundError,
    ConcurrentModificationError,
    InstanceNotFoundError,
    InvalidTransitionError,
    RuleValidationError,
    TaskNotFoundError,
    WorkflowError,
)
from caseflow.core.escalation import find_due_escalations
from caseflow.core.lifecycle import InstanceChanges
from caseflow.core.models import (
    Comment,
    EscalationRule,
    EventKind,
    InstanceFilter,
    StageTemplate,
    TaskInstance,
    TaskSpec,
    WorkflowEvent,
    WorkflowInstance,
    utcnow,
)
from caseflow.core.sla import SLAFlagChange, SLAPolicy, needs_evaluation
from caseflow.core.state_machine import InstanceStatus, TaskStatus
from caseflow.integrations import CaseInfo, CaseRegistry, IdentityService, InMemoryCaseRegistry, RoleDirectory
from caseflow.notifications.dispatcher import NotificationDispatcher
from caseflow.orchestrator.coordinator import InstanceLockRegistry
from caseflow.storage.base import WorkflowStore
from caseflow.template.registry import TemplateRegistry

logger = logging.getLogger(__name__)

T = TypeVar("T")
Mutation = Callable[[WorkflowInstance, InstanceChanges, datetime], T]


class WorkflowOrchestrator:
    """
    Main orchestrator for case workflows.

    Responsibilities:
    - Instantiate workflows for cases
    - Serialize every mutation of an instance behind its lock
    - Commit mutations with an optimistic version check
    - Publish events and notifications once a mutation is committed
    - Keep SLA flags current
    """

    def __init__(
        self,
        store: WorkflowStore,
        registry: Optional[TemplateRegistry] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
        case_registry: Optional[CaseRegistry] = None,
        identity: Optional[IdentityService] = None,
        clock: Optional[Callable[[], datetime]] = None,
        sla_policy: Optional[SLAPolicy] = None,
    ):
        self.settings = get_settings()
        self.store = store
        self.registry = registry or TemplateRegistry(store)
        self.dispatcher = dispatcher or NotificationDispatcher(store)
        self.case_registry = case_registry or InMemoryCaseRegistry(allow_unknown=True)
        self.identity = identity or RoleDirectory()
        self.clock = clock or utcnow
        self.sla_policy = sla_policy or SLAPolicy.from_settings()
        self.locks = InstanceLockRegistry()
        self._escalation_rules: dict[str, EscalationRule] = {}

        self._running = False
        self._sweep_task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        """Start notification delivery and the SLA sweep."""
        if self._running:
            return

        self._running = True
        await self.dispatcher.start()
        self._sweep_task = asyncio.create_task(self._sla_sweep_loop())
        logger.info("Workflow orchestrator started")

    async def stop(self) -> None:
        """Stop the orchestrator gracefully."""
        if not self._running:
            return

        self._running = False
        logger.info("Stopping workflow orchestrator")

        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None

        await self.dispatcher.stop()

    # ==================== Mutation protocol ====================

    async def mutate(
        self,
        instance_id: str,
        mutation: Mutation[T],
        actor: str = "system",
        settle: bool = True,
    ) -> T:
        """
        Apply ``mutation`` to an instance and commit it.

        The mutation runs on a private copy while the instance lock is
        held. Any exception discards the copy. On a version conflict the
        instance is reloaded and the mutation re-applied, up to
        ORCHESTRATOR_MAX_CONFLICT_RETRIES times.

        Args:
            instance_id: Instance to mutate
            mutation: Called as mutation(instance, changes, now)
            actor: Principal recorded on events
            settle: Run stage refresh, pending automations and SLA afterwards

        Returns:
            Whatever the mutation returned
        """
        max_retries = self.settings.orchestrator.max_conflict_retries

        async with self.locks.hold(instance_id):
            attempt = 0
            while True:
                instance = await self.store.get_instance(instance_id)
                if instance is None:
                    raise InstanceNotFoundError(instance_id)

                now = self.clock()
                changes = InstanceChanges(actor=actor, now=now)
                result = mutation(instance, changes, now)
                if settle and instance.status == InstanceStatus.ACTIVE:
                    self._settle(instance, now, changes)

                try:
                    await self.store.save_instance(instance, expected_version=instance.version)
                except ConcurrentModificationError:
                    attempt += 1
                    if attempt > max_retries:
                        raise
                    logger.warning(
                        f"Version conflict on instance {instance_id}, "
                        f"retrying ({attempt}/{max_retries})"
                    )
                    continue
                break

        await self._publish(changes)
        return result

    def _settle(self, instance: WorkflowInstance, now: datetime, changes: InstanceChanges) -> None:
        lifecycle.settle(
            instance,
            now,
            changes,
            self.sla_policy,
            self.settings.orchestrator.pending_automation_max_attempts,
            notify_assignee=self.settings.sla.notify_assignee,
        )

    async def _publish(self, changes: InstanceChanges) -> None:
        """Append events and hand notifications to the dispatcher."""
        if changes.events:
            await self.store.append_events(changes.events)
        if changes.notifications:
            try:
                await self.dispatcher.enqueue_many(changes.notifications)
            except Exception as e:
                # The mutation is already committed
                logger.error(f"Failed to enqueue notifications: {e}", exc_info=True)

    # ==================== Instantiation ====================

    async def instantiate(
        self,
        template_id: str,
        case_id: str,
        actor: str = "system",
        template_version: Optional[int] = None,
        title: Optional[str] = None,
    ) -> WorkflowInstance:
        """
        Create a workflow instance for a case from a published template.

        Raises:
            TemplateNotFoundError: If the template (version) is unknown
            CaseNotFoundError: If the case registry does not know the case
        """
        template = await self.registry.get(template_id, template_version)
        case = await self._require_case(case_id)

        return await self._create_instance(
            template.stages,
            case,
            actor,
            template_id=template.id,
            template_version=template.version,
            title=title or case.title or template.name,
            estimated_duration=template.estimated_duration,
        )

    async def create_ad_hoc(
        self,
        case_id: str,
        stages: list[StageTemplate],
        actor: str = "system",
        title: Optional[str] = None,
    ) -> WorkflowInstance:
        """
        Create an instance from an inline stage list.

        The stage list is validated like a template at publish time.
        """
        validate_stage_graph(stages)
        case = await self._require_case(case_id)
        return await self._create_instance(
            stages,
            case,
            actor,
            title=title or case.title or "Ad hoc workflow",
        )

    async def _require_case(self, case_id: str) -> CaseInfo:
        case = await self.case_registry.get_case(case_id)
        if case is None:
            raise CaseNotFoundError(case_id)
        return case

    async def _resolve_roles(self, roles: Iterable[str], case_id: str) -> dict[str, Optional[str]]:
        assignees: dict[str, Optional[str]] = {}
        for role in roles:
            if role in assignees:
                continue
            assignees[role] = await self.identity.resolve_role(role, case_id)
            if assignees[role] is None:
                logger.warning(f"No user holds role '{role}' for case {case_id}")
        return assignees

    async def _create_instance(
        self,
        stages: list[StageTemplate],
        case: CaseInfo,
        actor: str,
        **options: Any,
    ) -> WorkflowInstance:
        roles = [
            task.assignee_role
            for stage in stages
            for task in stage.tasks
            if task.assignee_role
        ]
        assignees = await self._resolve_roles(roles, case.case_id)

        now = self.clock()
        instance = lifecycle.build_instance(
            stages,
            case.case_id,
            now,
            assignees,
            created_by=actor,
            **options,
        )

        changes = InstanceChanges(actor=actor, now=now)
        changes.record(
            instance,
            EventKind.INSTANCE_CREATED,
            template_id=instance.template_id,
            template_version=instance.template_version,
        )
        if instance.stages:
            first = instance.stages[0]
            changes.record(
                instance,
                EventKind.STAGE_ACTIVATED,
                stage_id=first.id,
                title=first.title,
                reason="instance_created",
            )
            lifecycle.notify_stage_assignees(instance, first, changes)
        self._settle(instance, now, changes)

        async with self.locks.hold(instance.id):
            saved = await self.store.save_instance(instance)

        await self._publish(changes)
        logger.info(
            f"Created workflow instance {saved.id} for case {case.case_id} "
            f"({len(saved.stages)} stages, {len(saved.task_ids())} tasks)"
        )
        return saved

    # ==================== Instance commands ====================

    async def add_ad_hoc_task(
        self,
        instance_id: str,
        stage_id: str,
        spec: TaskSpec,
        actor: str = "system",
    ) -> TaskInstance:
        """
        Insert a task into a stage of a running instance.

        ``stage_id`` may also be a template stage id or a stage title. A
        role without an explicit assignee is resolved through the identity
        service.
        """
        if spec.assignee is None and spec.assignee_role:
            instance = await self.get_instance(instance_id)
            user = await self.identity.resolve_role(spec.assignee_role, instance.case_id)
            spec = spec.model_copy(update={"assignee": user})

        def apply(instance: WorkflowInstance, changes: InstanceChanges, now: datetime) -> TaskInstance:
            lifecycle.ensure_mutable(instance)
            stage = lifecycle.locate_stage(instance, stage_id)
            return lifecycle.insert_task(instance, stage, spec, now, changes)

        task = await self.mutate(instance_id, apply, actor)
        logger.info(f"Added task {task.id} to instance {instance_id}")
        return task

    async def cancel(
        self,
        instance_id: str,
        actor: str = "system",
        reason: Optional[str] = None,
    ) -> WorkflowInstance:
        """
        Cancel and freeze an instance.

        Mutations already holding the lock finish first; every later one
        fails with InstanceFrozenError.
        """

        def apply(instance: WorkflowInstance, changes: InstanceChanges, now: datetime) -> WorkflowInstance:
            lifecycle.ensure_mutable(instance)
            instance.status = InstanceStatus.CANCELLED
            instance.frozen = True
            instance.pending_automations = []
            instance.updated_at = now
            changes.record(instance, EventKind.INSTANCE_CANCELLED, reason=reason)
            return instance

        instance = await self.mutate(instance_id, apply, actor, settle=False)
        logger.info(f"Cancelled workflow instance {instance_id}")
        return instance

    async def pause(self, instance_id: str, actor: str = "system") -> WorkflowInstance:
        """Suspend an Active instance; task transitions are rejected until resumed."""

        def apply(instance: WorkflowInstance, changes: InstanceChanges, now: datetime) -> WorkflowInstance:
            lifecycle.ensure_mutable(instance)
            if instance.status != InstanceStatus.ACTIVE:
                raise InvalidTransitionError(
                    instance.status.value,
                    InstanceStatus.PAUSED.value,
                    "only Active instances can be paused",
                )
            instance.status = InstanceStatus.PAUSED
            instance.updated_at = now
            changes.record(instance, EventKind.INSTANCE_PAUSED)
            return instance

        return await self.mutate(instance_id, apply, actor, settle=False)

    async def resume(self, instance_id: str, actor: str = "system") -> WorkflowInstance:
        """Resume a Paused instance."""

        def apply(instance: WorkflowInstance, changes: InstanceChanges, now: datetime) -> WorkflowInstance:
            lifecycle.ensure_mutable(instance)
            if instance.status != InstanceStatus.PAUSED:
                raise InvalidTransitionError(
                    instance.status.value,
                    InstanceStatus.ACTIVE.value,
                    "instance is not paused",
                )
            instance.status = InstanceStatus.ACTIVE
            instance.updated_at = now
            changes.record(instance, EventKind.INSTANCE_RESUMED)
            return instance

        return await self.mutate(instance_id, apply, actor)

    # ==================== Task commands ====================

    async def _instance_id_for_task(self, task_id: str) -> str:
        instance_id = await self.store.find_instance_id_by_task(task_id)
        if instance_id is None:
            raise TaskNotFoundError(task_id)
        return instance_id

    async def transition_task(
        self,
        task_id: str,
        new_status: TaskStatus | str,
        actor: str = "system",
        reason: Optional[str] = None,
    ) -> TaskInstance:
        """
        Move a task to a new status.

        Raises:
            TaskNotFoundError: If no instance owns the task
            InvalidTransitionError: Illegal move, unmet dependencies or paused instance
            InstanceFrozenError: If the instance is cancelled or completed
        """
        to_status = TaskStatus(new_status)
        instance_id = await self._instance_id_for_task(task_id)

        def apply(instance: WorkflowInstance, changes: InstanceChanges, now: datetime) -> TaskInstance:
            return lifecycle.transition_task(instance, task_id, to_status, now, changes, reason)

        task = await self.mutate(instance_id, apply, actor)
        logger.info(f"Task {task_id} -> {to_status.value} by {actor}")
        return task

    async def reopen_task(
        self,
        task_id: str,
        actor: str = "system",
        reason: Optional[str] = None,
    ) -> TaskInstance:
        """Move a Done task back to InProgress."""
        instance_id = await self._instance_id_for_task(task_id)

        def apply(instance: WorkflowInstance, changes: InstanceChanges, now: datetime) -> TaskInstance:
            return lifecycle.reopen_task(instance, task_id, now, changes, reason)

        task = await self.mutate(instance_id, apply, actor)
        logger.info(f"Task {task_id} reopened by {actor}")
        return task

    async def add_comment(self, task_id: str, author: str, body: str) -> Comment:
        instance_id = await self._instance_id_for_task(task_id)

        def apply(instance: WorkflowInstance, changes: InstanceChanges, now: datetime) -> Comment:
            lifecycle.ensure_mutable(instance)
            stage, task = lifecycle.locate_task(instance, task_id)
            comment = Comment(author=author, body=body, created_at=now)
            task.comments.append(comment)
            instance.updated_at = now
            changes.record(
                instance,
                EventKind.COMMENT_ADDED,
                task_id=task.id,
                stage_id=stage.id,
                comment_id=comment.id,
            )
            return comment

        return await self.mutate(instance_id, apply, author, settle=False)

    async def reassign_task(
        self,
        task_id: str,
        assignee: str,
        actor: str = "system",
        reason: Optional[str] = None,
    ) -> TaskInstance:
        """Hand a task to another user; both the old and new assignee are notified."""
        instance_id = await self._instance_id_for_task(task_id)

        def apply(instance: WorkflowInstance, changes: InstanceChanges, now: datetime) -> TaskInstance:
            reassigned = lifecycle.reassign_task(instance, task_id, assignee, now, changes, reason)
            return reassigned or lifecycle.locate_task(instance, task_id)[1]

        return await self.mutate(instance_id, apply, actor, settle=False)

    async def reassign_tasks(
        self,
        task_ids: list[str],
        assignee: str,
        actor: str = "system",
        reason: Optional[str] = None,
    ) -> list[TaskInstance]:
        """
        Hand several tasks to one user.

        Every task id is resolved before anything changes. Tasks of the same
        instance are reassigned in one commit.

        Returns:
            The tasks in request order

        Raises:
            TaskNotFoundError: If any task id is unknown
        """
        by_instance: dict[str, list[str]] = {}
        for task_id in dict.fromkeys(task_ids):
            by_instance.setdefault(await self._instance_id_for_task(task_id), []).append(task_id)

        results: dict[str, TaskInstance] = {}
        for instance_id, ids in by_instance.items():

            def apply(instance: WorkflowInstance, changes: InstanceChanges, now: datetime) -> list[TaskInstance]:
                tasks = []
                for task_id in ids:
                    reassigned = lifecycle.reassign_task(instance, task_id, assignee, now, changes, reason)
                    tasks.append(reassigned or lifecycle.locate_task(instance, task_id)[1])
                return tasks

            for task in await self.mutate(instance_id, apply, actor, settle=False):
                results[task.id] = task

        logger.info(f"Reassigned {len(results)} tasks to {assignee} by {actor}")
        return [results[task_id] for task_id in dict.fromkeys(task_ids)]

    async def reassign_all_from_user(
        self,
        from_user: str,
        to_user: str,
        actor: str = "system",
        reason: Optional[str] = None,
    ) -> list[TaskInstance]:
        """
        Move every open task of ``from_user`` to ``to_user``.

        Covers Active and Paused instances; Done tasks keep their assignee.

        Returns:
            The reassigned tasks
        """
        if from_user == to_user:
            return []

        def owned(instance: WorkflowInstance) -> list[str]:
            return [
                task.id
                for _, task in instance.iter_tasks()
                if task.assignee == from_user and task.status != TaskStatus.DONE
            ]

        moved: list[TaskInstance] = []
        for instance in await self.store.list_instances():
            if instance.status not in (InstanceStatus.ACTIVE, InstanceStatus.PAUSED) or not owned(instance):
                continue

            def apply(working: WorkflowInstance, changes: InstanceChanges, now: datetime) -> list[TaskInstance]:
                if working.status not in (InstanceStatus.ACTIVE, InstanceStatus.PAUSED):
                    return []
                tasks = []
                for task_id in owned(working):
                    task = lifecycle.reassign_task(working, task_id, to_user, now, changes, reason)
                    if task is not None:
                        tasks.append(task)
                return tasks

            moved.extend(await self.mutate(instance.id, apply, actor, settle=False))

        logger.info(f"Moved {len(moved)} tasks from {from_user} to {to_user} by {actor}")
        return moved

    # ==================== Queries ====================

    async def get_instance(self, instance_id: str) -> WorkflowInstance:
        instance = await self.store.get_instance(instance_id)
        if instance is None:
            raise InstanceNotFoundError(instance_id)
        return instance

    async def list_instances(self, filter: Optional[InstanceFilter] = None) -> list[WorkflowInstance]:
        return await self.store.list_instances(filter)

    async def get_task(self, task_id: str) -> tuple[WorkflowInstance, TaskInstance]:
        """A task together with the instance that owns it."""
        instance = await self.get_instance(await self._instance_id_for_task(task_id))
        _, task = lifecycle.locate_task(instance, task_id)
        return instance, task

    async def get_events(
        self,
        instance_id: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> list[WorkflowEvent]:
        if instance_id is not None:
            await self.get_instance(instance_id)
        return await self.store.list_events(instance_id, since, until)

    async def is_task_eligible(self, task_id: str) -> bool:
        """True if every dependency of the task is Done."""
        instance, _ = await self.get_task(task_id)
        return DependencyResolver(instance).is_task_eligible(task_id)

    async def is_stage_eligible(self, instance_id: str, stage_id: str) -> bool:
        """True if every stage dependency of the stage is Completed."""
        instance = await self.get_instance(instance_id)
        stage = lifecycle.locate_stage(instance, stage_id)
        return DependencyResolver(instance).is_stage_eligible(stage.id)

    # ==================== SLA ====================

    async def evaluate_sla(self, instance_id: str) -> list[SLAFlagChange]:
        """Re-evaluate SLA flags of one instance now and persist them."""

        def apply(instance: WorkflowInstance, changes: InstanceChanges, now: datetime) -> list[SLAFlagChange]:
            if instance.status != InstanceStatus.ACTIVE:
                return []
            return lifecycle.apply_sla(
                instance,
                now,
                changes,
                self.sla_policy,
                notify_assignee=self.settings.sla.notify_assignee,
            )

        return await self.mutate(instance_id, apply, settle=False)

    async def check_sla_breaches(self, instance_id: str) -> list[TaskInstance]:
        """Tasks of the instance currently flagged as breached."""
        instance = await self.get_instance(instance_id)
        return [task for _, task in instance.iter_tasks() if task.sla_breached]

    async def run_sla_sweep(self) -> int:
        """
        Evaluate every Active instance whose flags are stale.

        A failure on one instance is logged and does not stop the sweep.

        Returns:
            Number of instances whose flags changed
        """
        now = self.clock()
        updated = 0

        for instance in await self.store.list_instances(InstanceFilter(status=InstanceStatus.ACTIVE)):
            if not needs_evaluation(instance, now, self.sla_policy):
                continue
            try:
                if await self.evaluate_sla(instance.id):
                    updated += 1
            except WorkflowError as e:
                logger.warning(f"SLA sweep skipped instance {instance.id}: {e}")
            except Exception as e:
                logger.error(f"SLA sweep failed for instance {instance.id}: {e}", exc_info=True)

        if updated:
            logger.info(f"SLA sweep updated {updated} instances")
        return updated

    # ==================== Escalation ====================

    def add_escalation_rule(self, rule: Union[EscalationRule, dict[str, Any]]) -> EscalationRule:
        """
        Validate and activate an escalation rule.

        Raises:
            RuleValidationError: On a malformed rule or a duplicate rule id
        """
        if isinstance(rule, dict):
            try:
                rule = EscalationRule.model_validate(rule)
            except ValidationError as e:
                errors = [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]
                raise RuleValidationError(f"Invalid escalation rule: {errors}", errors=errors) from e

        if rule.id in self._escalation_rules:
            raise RuleValidationError(f"Escalation rule already registered: {rule.id}", rule_id=rule.id)

        self._escalation_rules[rule.id] = rule
        logger.info(f"Registered escalation rule {rule.id} (level {rule.level})")
        return rule

    def remove_escalation_rule(self, rule_id: str) -> bool:
        removed = self._escalation_rules.pop(rule_id, None)
        if removed:
            logger.info(f"Removed escalation rule {rule_id}")
        return removed is not None

    def list_escalation_rules(self) -> list[EscalationRule]:
        return list(self._escalation_rules.values())

    async def _escalation_targets(self, case_id: str) -> dict[str, Optional[str]]:
        targets: dict[str, Optional[str]] = {}
        for rule in self._escalation_rules.values():
            if rule.escalate_to_user:
                targets[rule.id] = rule.escalate_to_user
            else:
                targets[rule.id] = await self.identity.resolve_role(rule.escalate_to_role, case_id)
        return targets

    async def escalate_instance(self, instance_id: str) -> list[TaskInstance]:
        """Apply due escalations to one instance now and persist them."""
        instance = await self.get_instance(instance_id)
        targets = await self._escalation_targets(instance.case_id)
        rules = self.list_escalation_rules()

        def apply(working: WorkflowInstance, changes: InstanceChanges, now: datetime) -> list[TaskInstance]:
            if working.status != InstanceStatus.ACTIVE:
                return []
            return lifecycle.apply_escalations(working, now, changes, self.sla_policy, rules, targets)

        return await self.mutate(instance_id, apply, settle=False)

    async def run_escalation_sweep(self) -> int:
        """
        Escalate overdue tasks of every Active instance.

        A failure on one instance is logged and does not stop the sweep.

        Returns:
            Number of tasks escalated
        """
        rules = self.list_escalation_rules()
        if not rules:
            return 0

        now = self.clock()
        escalated = 0
        for instance in await self.store.list_instances(InstanceFilter(status=InstanceStatus.ACTIVE)):
            if not find_due_escalations(instance, now, self.sla_policy, rules):
                continue
            try:
                escalated += len(await self.escalate_instance(instance.id))
            except WorkflowError as e:
                logger.warning(f"Escalation sweep skipped instance {instance.id}: {e}")
            except Exception as e:
                logger.error(f"Escalation sweep failed for instance {instance.id}: {e}", exc_info=True)

        if escalated:
            logger.info(f"Escalation sweep escalated {escalated} tasks")
        return escalated

    async def _sla_sweep_loop(self) -> None:
        """Periodically re-evaluate SLA flags, then escalate overdue tasks."""
        interval = self.settings.sla.sweep_interval

        while self._running:
            try:
                await self.run_sla_sweep()
                if self.settings.sla.escalation_enabled:
                    await self.run_escalation_sweep()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"SLA sweep failed: {e}", exc_info=True)

            await asyncio.sleep(interval)

    # ==================== Analytics ====================

    async def get_metrics(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> WorkflowMetrics:
        """Metrics over instances started within [start, end]."""
        instances = await self.store.list_instances(
            InstanceFilter(started_after=start, started_before=end)
        )
        return compute_metrics(instances, self.clock())
