# Copyright (c) 2025 Cade Russell (Ghost Peony)
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

"""schedule engine tables

Revision ID: 001_schedule_engine
Revises:
Create Date: 2025-06-02 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = '001_schedule_engine'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'workflow_schedules',
        sa.Column('pk', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('schedule_id', sa.String(length=64), nullable=False),
        sa.Column('canvas_id', sa.String(length=64), nullable=False),
        sa.Column('uid', sa.String(length=64), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=True),
        sa.Column('cron_expression', sa.String(length=100), nullable=False),
        sa.Column('timezone', sa.String(length=64), nullable=False, server_default='UTC'),
        sa.Column('schedule_config', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('is_enabled', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('deleted_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_run_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('next_run_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('pk'),
    )
    op.create_index('ix_workflow_schedules_schedule_id', 'workflow_schedules', ['schedule_id'], unique=True)
    op.create_index('ix_workflow_schedules_canvas_id', 'workflow_schedules', ['canvas_id'])
    op.create_index('ix_workflow_schedules_uid', 'workflow_schedules', ['uid'])
    op.create_index('ix_workflow_schedules_next_run_at', 'workflow_schedules', ['next_run_at'])
    op.create_index('ix_workflow_schedules_due', 'workflow_schedules', ['is_enabled', 'deleted_at', 'next_run_at'])
    op.create_index('ix_workflow_schedules_uid_created', 'workflow_schedules', ['uid', 'created_at'])

    op.create_table(
        'workflow_schedule_records',
        sa.Column('pk', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('schedule_record_id', sa.String(length=64), nullable=False),
        sa.Column('schedule_id', sa.String(length=64), nullable=True),
        sa.Column('uid', sa.String(length=64), nullable=False),
        sa.Column('source_canvas_id', sa.String(length=64), nullable=True),
        sa.Column('canvas_id', sa.String(length=64), nullable=False, server_default=''),
        sa.Column('workflow_title', sa.String(length=255), nullable=False, server_default=''),
        sa.Column('scheduled_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('triggered_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='scheduled'),
        sa.Column('credit_used', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('failure_reason', sa.String(length=64), nullable=True),
        sa.Column('error_details', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('workflow_execution_id', sa.String(length=64), nullable=True),
        sa.Column('priority', sa.Integer(), nullable=False, server_default='5'),
        sa.Column('snapshot_storage_key', sa.String(length=512), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('pk'),
    )
    op.create_index('ix_workflow_schedule_records_schedule_record_id', 'workflow_schedule_records',
                    ['schedule_record_id'], unique=True)
    op.create_index('ix_workflow_schedule_records_schedule_id', 'workflow_schedule_records', ['schedule_id'])
    op.create_index('ix_workflow_schedule_records_uid', 'workflow_schedule_records', ['uid'])
    op.create_index('ix_workflow_schedule_records_status', 'workflow_schedule_records', ['status'])
    op.create_index('ix_workflow_schedule_records_workflow_execution_id', 'workflow_schedule_records',
                    ['workflow_execution_id'])
    op.create_index('ix_workflow_schedule_records_schedule_status', 'workflow_schedule_records',
                    ['schedule_id', 'status'])
    op.create_index('ix_workflow_schedule_records_uid_status', 'workflow_schedule_records', ['uid', 'status'])

    # Jobs carry a caller-chosen job_id; status/priority/created_at drive claiming
    op.create_table(
        'background_tasks',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('job_id', sa.String(length=255), nullable=False),
        sa.Column('task_type', sa.String(length=100), nullable=False),
        sa.Column('payload', postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column('priority', sa.Integer(), nullable=False, server_default='5'),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='waiting'),
        sa.Column('run_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('result', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('retry_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_retries', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('backoff_delay_ms', sa.Integer(), nullable=False, server_default='1000'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_background_tasks_id', 'background_tasks', ['id'])
    op.create_index('ix_background_tasks_job_id', 'background_tasks', ['job_id'], unique=True)
    op.create_index('ix_background_tasks_task_type', 'background_tasks', ['task_type'])
    op.create_index('ix_background_tasks_priority', 'background_tasks', ['priority'])
    op.create_index('ix_background_tasks_status', 'background_tasks', ['status'])
    op.create_index('ix_background_tasks_created_at', 'background_tasks', ['created_at'])
    op.create_index('ix_background_tasks_claim', 'background_tasks', ['status', 'priority', 'created_at'])

    op.create_table(
        'distributed_locks',
        sa.Column('lock_key', sa.String(length=255), nullable=False),
        sa.Column('owner_token', sa.String(length=64), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('lock_key'),
    )

    op.create_table(
        'schedule_concurrency_counters',
        sa.Column('uid', sa.String(length=64), nullable=False),
        sa.Column('value', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('uid'),
    )

    # Read-side mirrors of account-owned data
    op.create_table(
        'users',
        sa.Column('pk', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('uid', sa.String(length=64), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=True),
        sa.Column('nickname', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('pk'),
    )
    op.create_index('ix_users_uid', 'users', ['uid'], unique=True)

    op.create_table(
        'subscriptions',
        sa.Column('pk', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('uid', sa.String(length=64), nullable=False),
        sa.Column('lookup_key', sa.String(length=100), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='active'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('pk'),
    )
    op.create_index('ix_subscriptions_uid', 'subscriptions', ['uid'])
    op.create_index('ix_subscriptions_uid_status', 'subscriptions', ['uid', 'status'])

    op.create_table(
        'canvases',
        sa.Column('pk', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('canvas_id', sa.String(length=64), nullable=False),
        sa.Column('uid', sa.String(length=64), nullable=False),
        sa.Column('title', sa.String(length=255), nullable=True),
        sa.Column('deleted_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('pk'),
    )
    op.create_index('ix_canvases_canvas_id', 'canvases', ['canvas_id'], unique=True)
    op.create_index('ix_canvases_uid', 'canvases', ['uid'])

    op.create_table(
        'credit_usages',
        sa.Column('pk', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('uid', sa.String(length=64), nullable=False),
        sa.Column('execution_id', sa.String(length=64), nullable=True),
        sa.Column('amount', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('pk'),
    )
    op.create_index('ix_credit_usages_uid', 'credit_usages', ['uid'])
    op.create_index('ix_credit_usages_execution_id', 'credit_usages', ['execution_id'])


def downgrade() -> None:
    op.drop_table('credit_usages')
    op.drop_table('canvases')
    op.drop_table('subscriptions')
    op.drop_table('users')
    op.drop_table('schedule_concurrency_counters')
    op.drop_table('distributed_locks')
    op.drop_table('background_tasks')
    op.drop_table('workflow_schedule_records')
    op.drop_table('workflow_schedules')
