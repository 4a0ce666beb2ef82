"""initial_fleet_schema

Revision ID: 0001_initial_fleet
Revises:
Create Date: 2026-10-19 09:12:41.518204

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '0001_initial_fleet'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table('admin_users',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('email', sa.String(), nullable=False),
        sa.Column('phone', sa.String(), nullable=True),
        sa.Column('passcode_hash', sa.String(), nullable=False),
        sa.Column('role', sa.String(), nullable=False, server_default='ADMIN'),
        sa.Column('device_limit', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_by', sa.String(), nullable=True),
        sa.Column('last_login', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('email')
    )
    op.create_index('idx_admin_role', 'admin_users', ['role', 'is_active'], unique=False)

    op.create_table('customers',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('dealer_id', sa.String(), nullable=True),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('phone_no', sa.String(), nullable=False),
        sa.Column('aadhar_no', sa.String(), nullable=True),
        sa.Column('address', sa.Text(), nullable=True),
        sa.Column('photo_url', sa.String(), nullable=True),
        sa.Column('documents', sa.Text(), nullable=True),
        sa.Column('imei1', sa.String(), nullable=False),
        sa.Column('expected_imei', sa.String(), nullable=True),
        sa.Column('imei2', sa.String(), nullable=True),
        sa.Column('mobile_model', sa.String(), nullable=True),
        sa.Column('device_name', sa.String(), nullable=True),
        sa.Column('finance_name', sa.String(), nullable=True),
        sa.Column('total_amount', sa.Float(), nullable=True),
        sa.Column('emi_amount', sa.Float(), nullable=True),
        sa.Column('emi_date', sa.Integer(), nullable=True),
        sa.Column('total_emis', sa.Integer(), nullable=True),
        sa.Column('paid_emis', sa.Integer(), nullable=True),
        sa.Column('emi_schedule', sa.Text(), nullable=True),
        sa.Column('is_locked', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('offline_lock_token', sa.String(), nullable=True),
        sa.Column('offline_unlock_token', sa.String(), nullable=True),
        sa.Column('location_lat', sa.Float(), nullable=True),
        sa.Column('location_lng', sa.Float(), nullable=True),
        sa.Column('location_address', sa.String(), nullable=True),
        sa.Column('location_updated_at', sa.DateTime(), nullable=True),
        sa.Column('sim_operator', sa.String(), nullable=True),
        sa.Column('sim_serial', sa.String(), nullable=True),
        sa.Column('sim_phone_number', sa.String(), nullable=True),
        sa.Column('sim_imsi', sa.String(), nullable=True),
        sa.Column('sim_is_authorized', sa.Boolean(), nullable=True),
        sa.Column('sim_updated_at', sa.DateTime(), nullable=True),
        sa.Column('features', sa.Text(), nullable=True),
        sa.Column('is_enrolled', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('enrollment_token', sa.String(), nullable=True),
        sa.Column('status', sa.String(), nullable=False, server_default='pending'),
        sa.Column('last_seen', sa.DateTime(), nullable=True),
        sa.Column('last_status_update', sa.DateTime(), nullable=True),
        sa.Column('install_progress', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('verification_status', sa.String(), nullable=True),
        sa.Column('tech_brand', sa.String(), nullable=True),
        sa.Column('tech_model', sa.String(), nullable=True),
        sa.Column('tech_os_version', sa.String(), nullable=True),
        sa.Column('tech_android_id', sa.String(), nullable=True),
        sa.Column('tech_serial', sa.String(), nullable=True),
        sa.Column('technical_reported_at', sa.DateTime(), nullable=True),
        sa.Column('step_qr_scanned', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('step_app_installed', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('step_app_launched', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('step_permissions_granted', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('step_details_fetched', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('step_imei_verified', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('step_device_bound', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('remote_command', sa.String(), nullable=True),
        sa.Column('remote_command_id', sa.String(), nullable=True),
        sa.Column('remote_command_payload', sa.Text(), nullable=True),
        sa.Column('remote_command_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('imei1')
    )
    op.create_index('ix_customers_dealer_id', 'customers', ['dealer_id'], unique=False)
    op.create_index('ix_customers_last_seen', 'customers', ['last_seen'], unique=False)
    op.create_index('ix_customers_created_at', 'customers', ['created_at'], unique=False)
    op.create_index('idx_customer_dealer_created', 'customers', ['dealer_id', 'created_at'], unique=False)

    op.create_table('devices',
        sa.Column('device_id', sa.String(), nullable=False),
        sa.Column('platform', sa.String(), nullable=False, server_default='android'),
        sa.Column('state', sa.String(), nullable=False, server_default='UNASSIGNED'),
        sa.Column('dealer_id', sa.String(), nullable=True),
        sa.Column('assigned_customer_id', sa.String(), nullable=True),
        sa.Column('brand', sa.String(), nullable=True),
        sa.Column('model', sa.String(), nullable=True),
        sa.Column('manufacturer', sa.String(), nullable=True),
        sa.Column('os_version', sa.String(), nullable=True),
        sa.Column('sdk_int', sa.Integer(), nullable=True),
        sa.Column('imei1', sa.String(), nullable=True),
        sa.Column('imei2', sa.String(), nullable=True),
        sa.Column('meid', sa.String(), nullable=True),
        sa.Column('android_id', sa.String(), nullable=True),
        sa.Column('serial', sa.String(), nullable=True),
        sa.Column('sim_operator', sa.String(), nullable=True),
        sa.Column('sim_iccid', sa.String(), nullable=True),
        sa.Column('enrollment_token', sa.String(), nullable=True),
        sa.Column('enrollment_token_expires_at', sa.DateTime(), nullable=True),
        sa.Column('enrollment_token_used_at', sa.DateTime(), nullable=True),
        sa.Column('enrolled_at', sa.DateTime(), nullable=True),
        sa.Column('last_seen', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('device_id'),
        sa.UniqueConstraint('enrollment_token')
    )
    op.create_index('ix_devices_dealer_id', 'devices', ['dealer_id'], unique=False)
    op.create_index('ix_devices_assigned_customer_id', 'devices', ['assigned_customer_id'], unique=False)
    op.create_index('ix_devices_imei1', 'devices', ['imei1'], unique=False)
    op.create_index('idx_device_dealer_state', 'devices', ['dealer_id', 'state'], unique=False)

    op.create_table('device_state_history',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('device_id', sa.String(), nullable=False),
        sa.Column('state', sa.String(), nullable=False),
        sa.Column('previous_state', sa.String(), nullable=True),
        sa.Column('changed_at', sa.DateTime(), nullable=False),
        sa.Column('reason', sa.Text(), nullable=True),
        sa.Column('changed_by', sa.String(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_device_state_history_device_id', 'device_state_history', ['device_id'], unique=False)
    op.create_index('idx_state_history_device', 'device_state_history', ['device_id', 'changed_at'], unique=False)

    op.create_table('lock_events',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('customer_id', sa.String(), nullable=False),
        sa.Column('action', sa.String(), nullable=False),
        sa.Column('reason', sa.Text(), nullable=True),
        sa.Column('actor_id', sa.String(), nullable=True),
        sa.Column('timestamp', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_lock_events_customer_id', 'lock_events', ['customer_id'], unique=False)

    op.create_table('sim_changes',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('customer_id', sa.String(), nullable=False),
        sa.Column('previous_serial', sa.String(), nullable=True),
        sa.Column('serial_number', sa.String(), nullable=True),
        sa.Column('operator', sa.String(), nullable=True),
        sa.Column('detected_at', sa.DateTime(), nullable=False),
        sa.Column('ip_address', sa.String(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_sim_changes_customer_id', 'sim_changes', ['customer_id'], unique=False)

    op.create_table('audit_logs',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('actor_id', sa.String(), nullable=True),
        sa.Column('actor_role', sa.String(), nullable=True),
        sa.Column('action', sa.String(), nullable=False),
        sa.Column('target_type', sa.String(), nullable=False),
        sa.Column('target_id', sa.String(), nullable=True),
        sa.Column('dealer_id', sa.String(), nullable=True),
        sa.Column('details', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_audit_logs_dealer_id', 'audit_logs', ['dealer_id'], unique=False)
    op.create_index('ix_audit_logs_created_at', 'audit_logs', ['created_at'], unique=False)
    op.create_index('idx_audit_target', 'audit_logs', ['target_type', 'target_id'], unique=False)


def downgrade() -> None:
    op.drop_table('audit_logs')
    op.drop_table('sim_changes')
    op.drop_table('lock_events')
    op.drop_table('device_state_history')
    op.drop_table('devices')
    op.drop_table('customers')
    op.drop_table('admin_users')
