"""
Persistence contract for the workflow engine.

Templates are append-only and versioned, instances are saved with an
optimistic version check, notifications form per-user mailboxes and the
event log is append-only.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional

from caseflow.core.models import (
    DeliveryStatus,
    InstanceFilter,
    Notification,
    WorkflowEvent,
    WorkflowInstance,
    WorkflowTemplate,
)


class WorkflowStore(ABC):
    """Abstract store used by the orchestrator and its collaborators."""

    async def init(self) -> None:
        """Prepare the backend (create tables, open pools)."""

    async def close(self) -> None:
        """Release backend resources."""

    # ==================== Templates ====================

    @abstractmethod
    async def add_template(self, template: WorkflowTemplate) -> None:
        """Store a published template version. Versions are never overwritten."""

    @abstractmethod
    async def get_template(
        self,
        template_id: str,
        version: Optional[int] = None,
    ) -> Optional[WorkflowTemplate]:
        """Get a specific version, or the latest when version is None."""

    @abstractmethod
    async def list_template_versions(self, template_id: str) -> list[WorkflowTemplate]:
        """All versions of a template, oldest first."""

    @abstractmethod
    async def list_templates(self) -> list[WorkflowTemplate]:
        """Latest version of every template."""

    # ==================== Instances ====================

    @abstractmethod
    async def save_instance(
        self,
        instance: WorkflowInstance,
        expected_version: Optional[int] = None,
    ) -> WorkflowInstance:
        """
        Insert or update an instance.

        Args:
            instance: Instance to persist
            expected_version: Version the caller read; None for inserts

        Returns:
            The stored instance with its version incremented

        Raises:
            ConcurrentModificationError: If the stored version differs
        """

    @abstractmethod
    async def get_instance(self, instance_id: str) -> Optional[WorkflowInstance]:
        """Get an instance by ID."""

    @abstractmethod
    async def list_instances(
        self,
        filter: Optional[InstanceFilter] = None,
    ) -> list[WorkflowInstance]:
        """List instances matching the filter, oldest first."""

    @abstractmethod
    async def find_instance_id_by_task(self, task_id: str) -> Optional[str]:
        """Resolve the instance that owns a task."""

    # ==================== Notifications ====================

    @abstractmethod
    async def add_notification(self, notification: Notification) -> None:
        """Append a notification to its recipient's mailbox."""

    @abstractmethod
    async def get_notification(self, notification_id: str) -> Optional[Notification]:
        """Get a notification by ID."""

    @abstractmethod
    async def find_notification_by_key(
        self,
        user_id: str,
        idempotency_key: str,
    ) -> Optional[Notification]:
        """Find a notification previously enqueued with the same key."""

    @abstractmethod
    async def list_notifications(
        self,
        user_id: str,
        unread_only: bool = False,
    ) -> list[Notification]:
        """A user's notifications, most recent first."""

    @abstractmethod
    async def mark_notification_read(self, notification_id: str) -> Optional[Notification]:
        """Set the read flag only. Returns the updated notification, None if unknown."""

    @abstractmethod
    async def mark_all_notifications_read(self, user_id: str) -> int:
        """Set the read flag on every unread notification of a user. Returns the count."""

    @abstractmethod
    async def record_delivery(
        self,
        notification_id: str,
        status: DeliveryStatus,
        attempts: int,
        last_error: Optional[str] = None,
    ) -> None:
        """
        Persist the outcome of a delivery attempt.

        Writes the delivery columns only, so a read flag set while the
        channel was sending survives.
        """

    # ==================== Event log ====================

    @abstractmethod
    async def append_events(self, events: list[WorkflowEvent]) -> None:
        """Append entries to the event log."""

    @abstractmethod
    async def list_events(
        self,
        instance_id: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> list[WorkflowEvent]:
        """Event log entries in occurrence order."""
