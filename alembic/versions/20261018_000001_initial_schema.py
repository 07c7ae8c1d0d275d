"""Initial database schema

Revision ID: 20261018_000001
Revises: 
Create Date: 2026-10-18

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '20261018_000001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Create workflow_templates table (append-only, one row per version)
    op.create_table(
        'workflow_templates',
        sa.Column('id', sa.String(255), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('matter_type', sa.String(255), nullable=True),
        sa.Column('definition', postgresql.JSONB(), nullable=False),
        sa.Column('published_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id', 'version'),
    )
    op.create_index('ix_workflow_templates_matter_type', 'workflow_templates', ['matter_type'])

    # Create workflow_instances table
    op.create_table(
        'workflow_instances',
        sa.Column('id', sa.String(64), nullable=False),
        sa.Column('template_id', sa.String(255), nullable=True),
        sa.Column('template_version', sa.Integer(), nullable=True),
        sa.Column('case_id', sa.String(255), nullable=False),
        sa.Column('status', sa.String(50), nullable=False, default='Active'),
        sa.Column('frozen', sa.Boolean(), nullable=False, default=False),
        sa.Column('version', sa.Integer(), nullable=False, default=1),
        sa.Column('body', postgresql.JSONB(), nullable=False),
        sa.Column('start_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('actual_end_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_workflow_instances_template_id', 'workflow_instances', ['template_id'])
    op.create_index('ix_workflow_instances_case_id', 'workflow_instances', ['case_id'])
    op.create_index('ix_workflow_instances_status', 'workflow_instances', ['status'])
    op.create_index('ix_workflow_instances_case_status', 'workflow_instances', ['case_id', 'status'])
    op.create_index('ix_workflow_instances_start_date', 'workflow_instances', ['start_date'])

    # Create task_index table
    op.create_table(
        'task_index',
        sa.Column('task_id', sa.String(64), nullable=False),
        sa.Column('instance_id', sa.String(64), nullable=False),
        sa.PrimaryKeyConstraint('task_id'),
        sa.ForeignKeyConstraint(['instance_id'], ['workflow_instances.id'], ondelete='CASCADE'),
    )
    op.create_index('ix_task_index_instance_id', 'task_index', ['instance_id'])

    # Create notifications table
    op.create_table(
        'notifications',
        sa.Column('id', sa.String(64), nullable=False),
        sa.Column('user_id', sa.String(255), nullable=False),
        sa.Column('kind', sa.String(100), nullable=False),
        sa.Column('title', sa.String(255), nullable=False, default=''),
        sa.Column('message', sa.Text(), nullable=False, default=''),
        sa.Column('payload', postgresql.JSONB(), nullable=False, default={}),
        sa.Column('case_id', sa.String(255), nullable=True),
        sa.Column('instance_id', sa.String(64), nullable=True),
        sa.Column('task_id', sa.String(64), nullable=True),
        sa.Column('read', sa.Boolean(), nullable=False, default=False),
        sa.Column('idempotency_key', sa.String(255), nullable=True),
        sa.Column('delivery_status', sa.String(20), nullable=False, default='queued'),
        sa.Column('delivery_attempts', sa.Integer(), nullable=False, default=0),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', 'idempotency_key', name='uq_notification_user_key'),
    )
    op.create_index('ix_notifications_user_created', 'notifications', ['user_id', 'created_at'])

    # Create workflow_events table
    op.create_table(
        'workflow_events',
        sa.Column('seq', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('id', sa.String(64), nullable=False),
        sa.Column('kind', sa.String(50), nullable=False),
        sa.Column('instance_id', sa.String(64), nullable=True),
        sa.Column('case_id', sa.String(255), nullable=True),
        sa.Column('actor', sa.String(255), nullable=False, default='system'),
        sa.Column('data', postgresql.JSONB(), nullable=False, default={}),
        sa.Column('occurred_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('seq'),
        sa.UniqueConstraint('id'),
    )
    op.create_index('ix_workflow_events_kind', 'workflow_events', ['kind'])
    op.create_index('ix_workflow_events_instance_id', 'workflow_events', ['instance_id'])
    op.create_index('ix_workflow_events_occurred_at', 'workflow_events', ['occurred_at'])


def downgrade() -> None:
    op.drop_table('workflow_events')
    op.drop_table('notifications')
    op.drop_table('task_index')
    op.drop_table('workflow_instances')
    op.drop_table('workflow_templates')
