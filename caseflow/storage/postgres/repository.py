"""
Repository layer for workflow data access.

Provides the PostgreSQL implementation of WorkflowStore. Every public method
runs in its own session/transaction obtained from Database.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import and_, func, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.exc import IntegrityError

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
from caseflow.storage.postgres.database import Database
from caseflow.storage.postgres.models import (
    NotificationModel,
    TaskIndexModel,
    WorkflowEventModel,
    WorkflowInstanceModel,
    WorkflowTemplateModel,
)

logger = logging.getLogger(__name__)


class PostgresWorkflowStore(WorkflowStore):
    """
    WorkflowStore backed by PostgreSQL.

    Instance saves use a compare-and-set on the ``version`` column so that
    concurrent writers from other processes are detected.
    """

    def __init__(self, database: Database, create_tables: bool = False):
        self.database = database
        self._create_tables = create_tables

    async def init(self) -> None:
        if self._create_tables:
            await self.database.create_tables()

    async def close(self) -> None:
        await self.database.close()

    # ==================== Template Operations ====================

    async def add_template(self, template: WorkflowTemplate) -> None:
        async with self.database.session() as session:
            session.add(WorkflowTemplateModel(
                id=template.id,
                version=template.version,
                name=template.name,
                matter_type=template.matter_type,
                definition=template.model_dump(mode="json"),
                published_at=template.published_at,
            ))

    async def get_template(
        self,
        template_id: str,
        version: Optional[int] = None,
    ) -> Optional[WorkflowTemplate]:
        query = select(WorkflowTemplateModel).where(WorkflowTemplateModel.id == template_id)
        if version is None:
            query = query.order_by(WorkflowTemplateModel.version.desc()).limit(1)
        else:
            query = query.where(WorkflowTemplateModel.version == version)

        async with self.database.session() as session:
            result = await session.execute(query)
            model = result.scalars().first()
            return self.model_to_template(model) if model else None

    async def list_template_versions(self, template_id: str) -> list[WorkflowTemplate]:
        async with self.database.session() as session:
            result = await session.execute(
                select(WorkflowTemplateModel)
                .where(WorkflowTemplateModel.id == template_id)
                .order_by(WorkflowTemplateModel.version)
            )
            return [self.model_to_template(m) for m in result.scalars().all()]

    async def list_templates(self) -> list[WorkflowTemplate]:
        latest = (
            select(
                WorkflowTemplateModel.id,
                func.max(WorkflowTemplateModel.version).label("version"),
            )
            .group_by(WorkflowTemplateModel.id)
            .subquery()
        )
        async with self.database.session() as session:
            result = await session.execute(
                select(WorkflowTemplateModel)
                .join(
                    latest,
                    and_(
                        WorkflowTemplateModel.id == latest.c.id,
                        WorkflowTemplateModel.version == latest.c.version,
                    ),
                )
                .order_by(WorkflowTemplateModel.id)
            )
            return [self.model_to_template(m) for m in result.scalars().all()]

    # ==================== Instance Operations ====================

    async def save_instance(
        self,
        instance: WorkflowInstance,
        expected_version: Optional[int] = None,
    ) -> WorkflowInstance:
        new_version = (expected_version or 0) + 1
        stored = instance.model_copy(deep=True, update={"version": new_version})
        values = {
            "template_id": stored.template_id,
            "template_version": stored.template_version,
            "case_id": stored.case_id,
            "status": stored.status.value,
            "frozen": stored.frozen,
            "version": new_version,
            "body": stored.model_dump(mode="json"),
            "start_date": stored.start_date,
            "actual_end_date": stored.actual_end_date,
        }

        try:
            async with self.database.session() as session:
                if expected_version is None:
                    session.add(WorkflowInstanceModel(id=stored.id, **values))
                    await session.flush()
                else:
                    # Compare-and-set on the version column
                    result = await session.execute(
                        update(WorkflowInstanceModel)
                        .where(
                            and_(
                                WorkflowInstanceModel.id == stored.id,
                                WorkflowInstanceModel.version == expected_version,
                            )
                        )
                        .values(**values)
                    )
                    if result.rowcount == 0:
                        actual = await session.scalar(
                            select(WorkflowInstanceModel.version)
                            .where(WorkflowInstanceModel.id == stored.id)
                        )
                        raise ConcurrentModificationError(stored.id, expected_version, actual)

                task_ids = stored.task_ids()
                if task_ids:
                    await session.execute(
                        insert(TaskIndexModel)
                        .values([
                            {"task_id": task_id, "instance_id": stored.id}
                            for task_id in task_ids
                        ])
                        .on_conflict_do_nothing(index_elements=["task_id"])
                    )
        except IntegrityError as e:
            logger.warning(f"Insert conflict for instance {stored.id}: {e}")
            raise ConcurrentModificationError(stored.id, 0, None) from e

        return stored

    async def get_instance(self, instance_id: str) -> Optional[WorkflowInstance]:
        async with self.database.session() as session:
            model = await session.get(WorkflowInstanceModel, instance_id)
            return self.model_to_instance(model) if model else None

    async def list_instances(
        self,
        filter: Optional[InstanceFilter] = None,
    ) -> list[WorkflowInstance]:
        filter = filter or InstanceFilter()
        query = select(WorkflowInstanceModel)

        if filter.case_id:
            query = query.where(WorkflowInstanceModel.case_id == filter.case_id)
        if filter.status:
            query = query.where(WorkflowInstanceModel.status == filter.status.value)
        if filter.template_id:
            query = query.where(WorkflowInstanceModel.template_id == filter.template_id)
        if filter.started_after:
            query = query.where(WorkflowInstanceModel.start_date >= filter.started_after)
        if filter.started_before:
            query = query.where(WorkflowInstanceModel.start_date <= filter.started_before)

        async with self.database.session() as session:
            result = await session.execute(query.order_by(WorkflowInstanceModel.start_date))
            return [self.model_to_instance(m) for m in result.scalars().all()]

    async def find_instance_id_by_task(self, task_id: str) -> Optional[str]:
        async with self.database.session() as session:
            return await session.scalar(
                select(TaskIndexModel.instance_id).where(TaskIndexModel.task_id == task_id)
            )

    # ==================== Notification Operations ====================

    async def add_notification(self, notification: Notification) -> None:
        async with self.database.session() as session:
            session.add(NotificationModel(**self._notification_values(notification)))

    async def get_notification(self, notification_id: str) -> Optional[Notification]:
        async with self.database.session() as session:
            model = await session.get(NotificationModel, notification_id)
            return self.model_to_notification(model) if model else None

    async def find_notification_by_key(
        self,
        user_id: str,
        idempotency_key: str,
    ) -> Optional[Notification]:
        async with self.database.session() as session:
            result = await session.execute(
                select(NotificationModel).where(
                    and_(
                        NotificationModel.user_id == user_id,
                        NotificationModel.idempotency_key == idempotency_key,
                    )
                )
            )
            model = result.scalars().first()
            return self.model_to_notification(model) if model else None

    async def list_notifications(
        self,
        user_id: str,
        unread_only: bool = False,
    ) -> list[Notification]:
        query = select(NotificationModel).where(NotificationModel.user_id == user_id)
        if unread_only:
            query = query.where(NotificationModel.read.is_(False))

        async with self.database.session() as session:
            result = await session.execute(query.order_by(NotificationModel.created_at.desc()))
            return [self.model_to_notification(m) for m in result.scalars().all()]

    async def mark_notification_read(self, notification_id: str) -> Optional[Notification]:
        async with self.database.session() as session:
            result = await session.execute(
                update(NotificationModel)
                .where(NotificationModel.id == notification_id)
                .values(read=True)
                .returning(NotificationModel)
            )
            model = result.scalar_one_or_none()
            return self.model_to_notification(model) if model else None

    async def mark_all_notifications_read(self, user_id: str) -> int:
        async with self.database.session() as session:
            result = await session.execute(
                update(NotificationModel)
                .where(
                    and_(
                        NotificationModel.user_id == user_id,
                        NotificationModel.read.is_(False),
                    )
                )
                .values(read=True)
            )
            return result.rowcount

    async def record_delivery(
        self,
        notification_id: str,
        status: DeliveryStatus,
        attempts: int,
        last_error: Optional[str] = None,
    ) -> None:
        async with self.database.session() as session:
            await session.execute(
                update(NotificationModel)
                .where(NotificationModel.id == notification_id)
                .values(
                    delivery_status=status.value,
                    delivery_attempts=attempts,
                    last_error=last_error,
                )
            )

    # ==================== Event Log Operations ====================

    async def append_events(self, events: list[WorkflowEvent]) -> None:
        if not events:
            return
        async with self.database.session() as session:
            session.add_all([
                WorkflowEventModel(
                    id=event.id,
                    kind=event.kind.value,
                    instance_id=event.instance_id,
                    case_id=event.case_id,
                    actor=event.actor,
                    data=event.model_dump(mode="json")["data"],
                    occurred_at=event.occurred_at,
                )
                for event in events
            ])

    async def list_events(
        self,
        instance_id: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> list[WorkflowEvent]:
        query = select(WorkflowEventModel)
        if instance_id:
            query = query.where(WorkflowEventModel.instance_id == instance_id)
        if since:
            query = query.where(WorkflowEventModel.occurred_at >= since)
        if until:
            query = query.where(WorkflowEventModel.occurred_at <= until)

        async with self.database.session() as session:
            result = await session.execute(query.order_by(WorkflowEventModel.seq))
            return [
                WorkflowEvent(
                    id=m.id,
                    kind=m.kind,
                    instance_id=m.instance_id,
                    case_id=m.case_id,
                    actor=m.actor,
                    occurred_at=m.occurred_at,
                    data=m.data,
                )
                for m in result.scalars().all()
            ]

    # ==================== Helper Methods ====================

    @staticmethod
    def _notification_values(notification: Notification) -> dict:
        return {
            "id": notification.id,
            "user_id": notification.user_id,
            "kind": notification.kind,
            "title": notification.title,
            "message": notification.message,
            "payload": notification.model_dump(mode="json")["payload"],
            "case_id": notification.case_id,
            "instance_id": notification.instance_id,
            "task_id": notification.task_id,
            "read": notification.read,
            "idempotency_key": notification.idempotency_key,
            "delivery_status": notification.delivery_status.value,
            "delivery_attempts": notification.delivery_attempts,
            "last_error": notification.last_error,
            "created_at": notification.created_at,
        }

    def model_to_template(self, model: WorkflowTemplateModel) -> WorkflowTemplate:
        """Convert database model to domain model."""
        return WorkflowTemplate.model_validate(model.definition)

    def model_to_instance(self, model: WorkflowInstanceModel) -> WorkflowInstance:
        """Convert database model to domain model."""
        instance = WorkflowInstance.model_validate(model.body)
        instance.version = model.version
        return instance

    def model_to_notification(self, model: NotificationModel) -> Notification:
        """Convert database model to domain model."""
        return Notification(
            id=model.id,
            user_id=model.user_id,
            kind=model.kind,
            title=model.title,
            message=model.message,
            payload=model.payload,
            case_id=model.case_id,
            instance_id=model.instance_id,
            task_id=model.task_id,
            created_at=model.created_at,
            read=model.read,
            idempotency_key=model.idempotency_key,
            delivery_status=model.delivery_status,
            delivery_attempts=model.delivery_attempts,
            last_error=model.last_error,
        )
