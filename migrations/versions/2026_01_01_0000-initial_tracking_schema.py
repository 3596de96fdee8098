"""Initial tracking schema

Revision ID: 001_tracking
Revises:
Create Date: 2026-01-01 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect

# revision identifiers, used by Alembic.
revision: str = '001_tracking'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


# Tables owned by other services; created here only when missing so the
# redirect service can run against an empty database
SHARED_TABLES = ('users', 'links', 'dynamic_links', 'webhook_endpoints')

EVENT_TABLES = ('click_events', 'dynamic_link_click_events', 'visits')

EVENT_INDEXED_COLUMNS = ('timestamp', 'user_id', 'user_device_id', 'device_id', 'session_id')


def _event_columns() -> list:
    """Columns shared by click_events, dynamic_link_click_events and visits."""
    return [
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('timestamp', sa.DateTime(timezone=True), nullable=False),
        sa.Column('user_id', sa.String(length=36), nullable=True),
        sa.Column('user_device_id', sa.String(length=36), nullable=True),
        sa.Column('device_id', sa.String(length=64), nullable=True),
        sa.Column('session_id', sa.String(length=36), nullable=True),
        sa.Column('ip_address', sa.String(length=45), nullable=True),
        sa.Column('user_agent', sa.Text(), nullable=True),
        sa.Column('referer', sa.Text(), nullable=True),
        sa.Column('referrer_domain', sa.String(length=255), nullable=True),
        sa.Column('browser', sa.String(length=100), nullable=True),
        sa.Column('browser_version', sa.String(length=50), nullable=True),
        sa.Column('os', sa.String(length=100), nullable=True),
        sa.Column('os_version', sa.String(length=50), nullable=True),
        sa.Column('device', sa.String(length=100), nullable=True),
        sa.Column('device_type', sa.String(length=20), nullable=True),
        sa.Column('geo_country', sa.String(length=100), nullable=True),
        sa.Column('geo_city', sa.String(length=100), nullable=True),
        sa.Column('geo_latitude', sa.Numeric(9, 6), nullable=True),
        sa.Column('geo_longitude', sa.Numeric(9, 6), nullable=True),
        sa.Column('cf_ray', sa.String(length=100), nullable=True),
        sa.Column('cf_ip_country', sa.String(length=10), nullable=True),
        sa.Column('host', sa.String(length=255), nullable=True),
        sa.Column('request_id', sa.String(length=100), nullable=True),
        sa.Column('accept_language', sa.String(length=255), nullable=True),
        sa.Column('x_platform', sa.String(length=100), nullable=True),
        sa.Column('x_time_zone', sa.String(length=100), nullable=True),
        sa.Column('x_screen_width', sa.Integer(), nullable=True),
        sa.Column('x_screen_height', sa.Integer(), nullable=True),
        sa.Column('x_device_memory', sa.Float(), nullable=True),
        sa.Column('x_color_depth', sa.Integer(), nullable=True),
        sa.Column('x_device_id', sa.String(length=255), nullable=True),
        sa.Column('utm_source', sa.String(length=100), nullable=True),
        sa.Column('utm_medium', sa.String(length=100), nullable=True),
        sa.Column('utm_campaign', sa.String(length=100), nullable=True),
        sa.Column('utm_term', sa.String(length=100), nullable=True),
        sa.Column('utm_content', sa.String(length=100), nullable=True),
        sa.Column('query_params', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    ]


def _click_columns() -> list:
    return _event_columns() + [
        sa.Column('status_code', sa.Integer(), nullable=True),
        sa.Column('conversion_type', sa.String(length=50), nullable=True),
        sa.Column('conversion_value', sa.Numeric(10, 2), nullable=True),
    ]


def _create_event_indexes(table: str, extra: Sequence[str] = ()) -> None:
    for column in (*EVENT_INDEXED_COLUMNS, *extra):
        op.create_index(f'ix_{table}_{column}', table, [column])


def upgrade() -> None:
    """
    Create the tracking schema:
    - users / links / dynamic_links / webhook_endpoints (if missing)
    - user_devices: fingerprinted devices, unique per (device, user, client id)
    - tracking_sessions: at most one open session per device
    - click_events / dynamic_link_click_events / visits: append-only events
    """
    bind = op.get_bind()
    inspector = inspect(bind)
    existing_tables = inspector.get_table_names()

    if 'users' not in existing_tables:
        op.create_table(
            'users',
            sa.Column('id', sa.String(length=36), nullable=False),
            sa.Column('email', sa.String(length=255), nullable=False),
            sa.Column('first_name', sa.String(length=100), nullable=True),
            sa.Column('last_name', sa.String(length=100), nullable=True),
            sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint('id'),
            sa.UniqueConstraint('email')
        )

    if 'links' not in existing_tables:
        op.create_table(
            'links',
            sa.Column('id', sa.String(length=36), nullable=False),
            sa.Column('alias', sa.String(length=64), nullable=False),
            sa.Column('original_url', sa.Text(), nullable=False),
            sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column('redirect_type', sa.Integer(), nullable=False, server_default='302'),
            sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('click_count', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('user_id', sa.String(length=36), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
            sa.Column('deleted_at', sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='SET NULL'),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_links_alias', 'links', ['alias'], unique=True)
        op.create_index('ix_links_is_active', 'links', ['is_active'])
        op.create_index('ix_links_expires_at', 'links', ['expires_at'])
        op.create_index('ix_links_user_id', 'links', ['user_id'])

    if 'dynamic_links' not in existing_tables:
        op.create_table(
            'dynamic_links',
            sa.Column('id', sa.String(length=36), nullable=False),
            sa.Column('name', sa.String(length=255), nullable=False),
            sa.Column('alias', sa.String(length=64), nullable=False),
            sa.Column('default_url', sa.Text(), nullable=False),
            sa.Column('rules', sa.JSON(), nullable=False),
            sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('click_count', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('user_id', sa.String(length=36), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
            sa.Column('deleted_at', sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='SET NULL'),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_dynamic_links_alias', 'dynamic_links', ['alias'], unique=True)
        op.create_index('ix_dynamic_links_user_id', 'dynamic_links', ['user_id'])

    if 'webhook_endpoints' not in existing_tables:
        op.create_table(
            'webhook_endpoints',
            sa.Column('id', sa.String(length=36), nullable=False),
            sa.Column('user_id', sa.String(length=36), nullable=False),
            sa.Column('url', sa.Text(), nullable=False),
            sa.Column('events', sa.JSON(), nullable=False),
            sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column('secret', sa.String(length=255), nullable=False),
            sa.Column('failed_attempts', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('last_failed_at', sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
            sa.PrimaryKeyConstraint('id'),
            sa.UniqueConstraint('secret')
        )
        op.create_index('ix_webhook_endpoints_user_id', 'webhook_endpoints', ['user_id'])

    op.create_table(
        'user_devices',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('device_id', sa.String(length=64), nullable=False),
        sa.Column('x_device_id', sa.String(length=255), nullable=True),
        sa.Column('user_id', sa.String(length=36), nullable=True),
        sa.Column('user_key', sa.String(length=36), nullable=False),
        sa.Column('client_device_key', sa.String(length=255), nullable=False),
        sa.Column('x_device_memory', sa.Float(), nullable=True),
        sa.Column('x_hardware_concurrency', sa.Integer(), nullable=True),
        sa.Column('x_platform', sa.String(length=100), nullable=True),
        sa.Column('x_screen_width', sa.Integer(), nullable=True),
        sa.Column('x_screen_height', sa.Integer(), nullable=True),
        sa.Column('x_color_depth', sa.Integer(), nullable=True),
        sa.Column('x_time_zone', sa.String(length=100), nullable=True),
        sa.Column('fingerprint_hash', sa.String(length=64), nullable=True),
        sa.Column('browser', sa.String(length=100), nullable=True),
        sa.Column('device_type', sa.String(length=20), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('device_id', 'user_key', 'client_device_key', name='uq_user_devices_identity')
    )
    op.create_index('ix_user_devices_device_id', 'user_devices', ['device_id'])
    op.create_index('ix_user_devices_x_device_id', 'user_devices', ['x_device_id'])
    op.create_index('ix_user_devices_user_id', 'user_devices', ['user_id'])

    op.create_table(
        'tracking_sessions',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('user_device_id', sa.String(length=36), nullable=False),
        sa.Column('user_id', sa.String(length=36), nullable=True),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('last_event_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('ended_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('duration_seconds', sa.Integer(), nullable=True),
        sa.Column('event_count', sa.Integer(), nullable=False, server_default='1'),
        sa.ForeignKeyConstraint(['user_device_id'], ['user_devices.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_tracking_sessions_user_device_id', 'tracking_sessions', ['user_device_id'])
    op.create_index('ix_tracking_sessions_user_id', 'tracking_sessions', ['user_id'])
    op.create_index('ix_tracking_sessions_last_event_at', 'tracking_sessions', ['last_event_at'])
    # Partial unique index: one open session per device
    op.create_index(
        'uq_tracking_sessions_open_per_device',
        'tracking_sessions',
        ['user_device_id'],
        unique=True,
        sqlite_where=sa.text('ended_at IS NULL'),
        postgresql_where=sa.text('ended_at IS NULL'),
    )

    op.create_table(
        'click_events',
        *_click_columns(),
        sa.Column('link_id', sa.String(length=36), nullable=False),
        sa.ForeignKeyConstraint(['link_id'], ['links.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    _create_event_indexes('click_events', extra=('link_id',))

    op.create_table(
        'dynamic_link_click_events',
        *_click_columns(),
        sa.Column('dynamic_link_id', sa.String(length=36), nullable=False),
        sa.ForeignKeyConstraint(['dynamic_link_id'], ['dynamic_links.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    _create_event_indexes('dynamic_link_click_events', extra=('dynamic_link_id',))

    op.create_table(
        'visits',
        *_event_columns(),
        sa.Column('path', sa.String(length=2048), nullable=True),
        sa.Column('method', sa.String(length=10), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    _create_event_indexes('visits')


def downgrade() -> None:
    """
    Drop the tables this service owns. Shared tables are left in place.
    """
    for table in EVENT_TABLES:
        op.drop_table(table)
    op.drop_table('tracking_sessions')
    op.drop_table('user_devices')
