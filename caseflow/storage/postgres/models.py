"""
SQLAlchemy models for PostgreSQL persistence.

Instances keep their stage/task tree embedded as JSONB; the task index
table maps task ids back to their owning instance.
"""

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    type_annotation_map = {
        dict[str, Any]: JSONB,
    }


class WorkflowTemplateModel(Base):
    """
    Stores published template versions.

    Rows are append-only: a new publish inserts version N+1.
    """

    __tablename__ = "workflow_templates"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    version: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    matter_type: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)

    # Full template (stages, tasks, dependencies) stored as JSON
    definition: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False)

    published_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now()
    )


class WorkflowInstanceModel(Base):
    """Stores workflow instance aggregates."""

    __tablename__ = "workflow_instances"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    template_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    template_version: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    case_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)

    status: Mapped[str] = mapped_column(String(50), nullable=False, default="Active", index=True)
    frozen: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Optimistic concurrency counter
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    # Stages, tasks, comments, pending automations
    body: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False)

    start_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    actual_end_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now()
    )

    __table_args__ = (
        Index("ix_workflow_instances_case_status", "case_id", "status"),
        Index("ix_workflow_instances_start_date", "start_date"),
    )


class TaskIndexModel(Base):
    """Maps task ids to the instance that owns them."""

    __tablename__ = "task_index"

    task_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    instance_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("workflow_instances.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )


class NotificationModel(Base):
    """Per-user notification mailbox entries."""

    __tablename__ = "notifications"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    kind: Mapped[str] = mapped_column(String(100), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    message: Mapped[str] = mapped_column(Text, nullable=False, default="")
    payload: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False, default=dict)

    case_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    instance_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    task_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    idempotency_key: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Delivery tracking
    delivery_status: Mapped[str] = mapped_column(String(20), nullable=False, default="queued")
    delivery_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "idempotency_key", name="uq_notification_user_key"),
        Index("ix_notifications_user_created", "user_id", "created_at"),
    )


class WorkflowEventModel(Base):
    """Append-only event log."""

    __tablename__ = "workflow_events"

    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    kind: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    instance_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    case_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    actor: Mapped[str] = mapped_column(String(255), nullable=False, default="system")
    data: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False, default=dict)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_workflow_events_occurred_at", "occurred_at"),
    )
