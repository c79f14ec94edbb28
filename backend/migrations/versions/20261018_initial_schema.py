"""Initial schema: users, service reports, audit entries, notifications

Revision ID: 20261018_initial
Revises:
Create Date: 2026-10-18

This migration adds:
1. users (role hierarchy via team_leader_id / manager_id owner references)
2. service_reports (single status column + mapper version counter)
3. audit_entries (append-only, integrity hash)
4. notifications and notification_retries (delivery + retry / dead letters)
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '20261018_initial'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    # ==========================================================================
    # 1. USERS
    # ==========================================================================
    op.create_table('users',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('username', sa.String(length=64), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('full_name', sa.String(length=255), nullable=False),
        sa.Column('employee_id', sa.String(length=64), nullable=True),
        sa.Column('mobile', sa.String(length=32), nullable=True),
        sa.Column('role', sa.String(length=32), nullable=False),
        sa.Column('team_leader_id', sa.Integer(), nullable=True),
        sa.Column('manager_id', sa.Integer(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.CheckConstraint(
            "role IN ('admin', 'manager', 'team_leader', 'technical_executive', 'technician')",
            name='ck_users_role',
        ),
        sa.CheckConstraint('team_leader_id IS NULL OR team_leader_id != id', name='ck_users_tl_not_self'),
        sa.CheckConstraint('manager_id IS NULL OR manager_id != id', name='ck_users_manager_not_self'),
        sa.ForeignKeyConstraint(['team_leader_id'], ['users.id']),
        sa.ForeignKeyConstraint(['manager_id'], ['users.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('email'),
        sa.UniqueConstraint('employee_id'),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table('users', schema=None) as batch_op:
        batch_op.create_index('ix_users_username', ['username'], unique=True)
        batch_op.create_index('ix_users_role', ['role'], unique=False)
        batch_op.create_index('ix_users_team_leader_active', ['team_leader_id', 'is_active'], unique=False)
        batch_op.create_index('ix_users_manager_active', ['manager_id', 'is_active'], unique=False)

    # ==========================================================================
    # 2. SERVICE REPORTS
    # ==========================================================================
    op.create_table('service_reports',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('technician_id', sa.Integer(), nullable=False),
        sa.Column('title', sa.String(length=255), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('details', sa.JSON(), nullable=False),
        sa.Column('technician_signature', sa.Text(), nullable=True),
        sa.Column('team_leader_signature', sa.Text(), nullable=True),
        sa.Column('rejection_remarks', sa.Text(), nullable=True),
        sa.Column('approval_notes', sa.Text(), nullable=True),
        sa.Column('submitted_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('approved_by_user_id', sa.Integer(), nullable=True),
        sa.Column('approved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.CheckConstraint(
            "status IN ('draft', 'submitted', 'approved', 'rejected')",
            name='ck_service_reports_status',
        ),
        sa.CheckConstraint(
            "status != 'rejected' OR rejection_remarks IS NOT NULL",
            name='ck_service_reports_rejection_remarks',
        ),
        sa.ForeignKeyConstraint(['technician_id'], ['users.id']),
        sa.ForeignKeyConstraint(['approved_by_user_id'], ['users.id']),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table('service_reports', schema=None) as batch_op:
        batch_op.create_index('ix_service_reports_technician_id', ['technician_id'], unique=False)
        batch_op.create_index('ix_service_reports_status', ['status'], unique=False)
        batch_op.create_index('ix_service_reports_technician_status', ['technician_id', 'status'], unique=False)

    # ==========================================================================
    # 3. AUDIT ENTRIES (append-only)
    # ==========================================================================
    op.create_table('audit_entries',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('actor_id', sa.Integer(), nullable=True),
        sa.Column('actor_role', sa.String(length=32), nullable=True),
        sa.Column('action', sa.String(length=32), nullable=False),
        sa.Column('target_table', sa.String(length=64), nullable=False),
        sa.Column('target_id', sa.Integer(), nullable=False),
        sa.Column('before', sa.JSON(), nullable=True),
        sa.Column('after', sa.JSON(), nullable=True),
        sa.Column('context', sa.JSON(), nullable=True),
        sa.Column('occurred_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('integrity_hash', sa.String(length=64), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table('audit_entries', schema=None) as batch_op:
        batch_op.create_index('ix_audit_entries_actor_id', ['actor_id'], unique=False)
        batch_op.create_index('ix_audit_entries_action', ['action'], unique=False)
        batch_op.create_index('ix_audit_entries_occurred_at', ['occurred_at'], unique=False)
        batch_op.create_index('ix_audit_entries_target', ['target_table', 'target_id'], unique=False)
        batch_op.create_index('ix_audit_entries_actor_occurred', ['actor_id', 'occurred_at'], unique=False)

    # ==========================================================================
    # 4. NOTIFICATIONS
    # ==========================================================================
    op.create_table('notifications',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('recipient_id', sa.Integer(), nullable=False),
        sa.Column('title', sa.String(length=255), nullable=False),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('type', sa.String(length=16), nullable=False),
        sa.Column('priority', sa.String(length=16), nullable=False),
        sa.Column('data', sa.JSON(), nullable=True),
        sa.Column('is_read', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.CheckConstraint("type IN ('info', 'warning', 'error', 'success')", name='ck_notifications_type'),
        sa.CheckConstraint("priority IN ('low', 'medium', 'high', 'urgent')", name='ck_notifications_priority'),
        sa.ForeignKeyConstraint(['recipient_id'], ['users.id']),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table('notifications', schema=None) as batch_op:
        batch_op.create_index('ix_notifications_recipient_id', ['recipient_id'], unique=False)
        batch_op.create_index('ix_notifications_recipient_read', ['recipient_id', 'is_read'], unique=False)

    op.create_table('notification_retries',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('recipient_id', sa.Integer(), nullable=False),
        sa.Column('delivery_key', sa.String(length=64), nullable=False),
        sa.Column('notification_id', sa.Integer(), nullable=True),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('attempts', sa.Integer(), nullable=False),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('claimed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('recipient_id', 'delivery_key', name='uq_notification_retries_recipient_key'),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table('notification_retries', schema=None) as batch_op:
        batch_op.create_index('ix_notification_retries_recipient_id', ['recipient_id'], unique=False)
        batch_op.create_index('ix_notification_retries_status', ['status'], unique=False)


def downgrade():
    with op.batch_alter_table('notification_retries', schema=None) as batch_op:
        batch_op.drop_index('ix_notification_retries_status')
        batch_op.drop_index('ix_notification_retries_recipient_id')
    op.drop_table('notification_retries')

    with op.batch_alter_table('notifications', schema=None) as batch_op:
        batch_op.drop_index('ix_notifications_recipient_read')
        batch_op.drop_index('ix_notifications_recipient_id')
    op.drop_table('notifications')

    op.drop_table('audit_entries')
    op.drop_table('service_reports')
    op.drop_table('users')
