"""
In-process store.

Backs tests and single-node deployments. Models are copied on the way in
and out so callers never share mutable state with the store.
"""

import asyncio
from collections import defaultdict
from datetime import datetime
from typing import Optional

from caseflow.core.errors import ConcurrentModificationError
from caseflow.core.models import (
    DeliveryStatus,
    InstanceFilter,
    Notification,
    WorkflowEvent,
    WorkflowInstance,
    WorkflowTemplate,
)
from caseflow.storage.base import WorkflowStore


class InMemoryWorkflowStore(WorkflowStore):
    """Dictionary-backed implementation of WorkflowStore."""

    def __init__(self):
        self._templates: dict[str, list[WorkflowTemplate]] = defaultdict(list)
        self._instances: dict[str, WorkflowInstance] = {}
        self._task_index: dict[str, str] = {}
        self._notifications: dict[str, Notification] = {}
        self._mailboxes: dict[str, list[str]] = defaultdict(list)
        self._events: list[WorkflowEvent] = []
        self._lock = asyncio.Lock()

    # ==================== Templates ====================

    async def add_template(self, template: WorkflowTemplate) -> None:
        versions = self._templates[template.id]
        if any(existing.version == template.version for existing in versions):
            raise ValueError(
                f"Template {template.id} version {template.version} already exists"
            )
        versions.append(template)
        versions.sort(key=lambda t: t.version)

    async def get_template(
        self,
        template_id: str,
        version: Optional[int] = None,
    ) -> Optional[WorkflowTemplate]:
        versions = self._templates.get(template_id)
        if not versions:
            return None
        if version is None:
            return versions[-1]
        for template in versions:
            if template.version == version:
                return template
        return None

    async def list_template_versions(self, template_id: str) -> list[WorkflowTemplate]:
        return list(self._templates.get(template_id, []))

    async def list_templates(self) -> list[WorkflowTemplate]:
        return [versions[-1] for versions in self._templates.values() if versions]

    # ==================== Instances ====================

    async def save_instance(
        self,
        instance: WorkflowInstance,
        expected_version: Optional[int] = None,
    ) -> WorkflowInstance:
        async with self._lock:
            current = self._instances.get(instance.id)
            actual = current.version if current else None

            if expected_version is None and current is not None:
                raise ConcurrentModificationError(instance.id, 0, actual)
            if expected_version is not None and actual != expected_version:
                raise ConcurrentModificationError(instance.id, expected_version, actual)

            stored = instance.model_copy(
                deep=True,
                update={"version": (actual or 0) + 1},
            )
            self._instances[stored.id] = stored
            for task_id in stored.task_ids():
                self._task_index[task_id] = stored.id

            return stored.model_copy(deep=True)

    async def get_instance(self, instance_id: str) -> Optional[WorkflowInstance]:
        instance = self._instances.get(instance_id)
        return instance.model_copy(deep=True) if instance else None

    async def list_instances(
        self,
        filter: Optional[InstanceFilter] = None,
    ) -> list[WorkflowInstance]:
        filter = filter or InstanceFilter()
        matched = [
            instance.model_copy(deep=True)
            for instance in self._instances.values()
            if filter.matches(instance)
        ]
        return sorted(matched, key=lambda i: i.start_date)

    async def find_instance_id_by_task(self, task_id: str) -> Optional[str]:
        return self._task_index.get(task_id)

    # ==================== Notifications ====================

    async def add_notification(self, notification: Notification) -> None:
        self._notifications[notification.id] = notification.model_copy(deep=True)
        self._mailboxes[notification.user_id].append(notification.id)

    async def get_notification(self, notification_id: str) -> Optional[Notification]:
        notification = self._notifications.get(notification_id)
        return notification.model_copy(deep=True) if notification else None

    async def find_notification_by_key(
        self,
        user_id: str,
        idempotency_key: str,
    ) -> Optional[Notification]:
        for notification_id in self._mailboxes.get(user_id, []):
            notification = self._notifications[notification_id]
            if notification.idempotency_key == idempotency_key:
                return notification.model_copy(deep=True)
        return None

    async def list_notifications(
        self,
        user_id: str,
        unread_only: bool = False,
    ) -> list[Notification]:
        mailbox = [
            self._notifications[notification_id]
            for notification_id in self._mailboxes.get(user_id, [])
        ]
        if unread_only:
            mailbox = [n for n in mailbox if not n.read]
        # Ties keep the newest insertion first
        ordered = sorted(reversed(mailbox), key=lambda n: n.created_at, reverse=True)
        return [n.model_copy(deep=True) for n in ordered]

    async def mark_notification_read(self, notification_id: str) -> Optional[Notification]:
        notification = self._notifications.get(notification_id)
        if notification is None:
            return None
        notification.read = True
        return notification.model_copy(deep=True)

    async def mark_all_notifications_read(self, user_id: str) -> int:
        count = 0
        for notification_id in self._mailboxes.get(user_id, []):
            notification = self._notifications[notification_id]
            if not notification.read:
                notification.read = True
                count += 1
        return count

    async def record_delivery(
        self,
        notification_id: str,
        status: DeliveryStatus,
        attempts: int,
        last_error: Optional[str] = None,
    ) -> None:
        notification = self._notifications.get(notification_id)
        if notification is None:
            return
        notification.delivery_status = status
        notification.delivery_attempts = attempts
        notification.last_error = last_error

    # ==================== Event log ====================

    async def append_events(self, events: list[WorkflowEvent]) -> None:
        self._events.extend(event.model_copy(deep=True) for event in events)

    async def list_events(
        self,
        instance_id: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> list[WorkflowEvent]:
        return [
            event.model_copy(deep=True)
            for event in self._events
            if (instance_id is None or event.instance_id == instance_id)
            and (since is None or event.occurred_at >= since)
            and (until is None or event.occurred_at <= until)
        ]
