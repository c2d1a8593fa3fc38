"""calendar sync schema

Revision ID: 20261019_0001
Revises:
Create Date: 2026-10-19
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '20261019_0001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    bind = op.get_bind()
    inspector = sa.inspect(bind)
    if 'integration_accounts' in inspector.get_table_names():
        return  # already exists (e.g. created by metadata.create_all in dev)

    op.create_table(
        'users',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('email', sa.String(), nullable=False, unique=True),
        sa.Column('timezone', sa.String(), nullable=False, server_default='UTC'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        'integration_accounts',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('user_id', sa.String(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('provider', sa.String(), nullable=False),
        sa.Column('scopes', sa.JSON(), nullable=True),
        sa.Column('access_token', sa.String(), nullable=True),
        sa.Column('refresh_token', sa.String(), nullable=True),
        sa.Column('access_token_encrypted', sa.String(), nullable=True),
        sa.Column('refresh_token_encrypted', sa.String(), nullable=True),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('sync_status', sa.String(), nullable=False, server_default='idle'),
        sa.Column('sync_error', sa.Text(), nullable=True),
        sa.Column('sync_started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_sync_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('needs_reconnect', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint('user_id', 'provider', name='uq_integration_accounts_user_provider'),
    )
    op.create_index('ix_integration_accounts_user_id', 'integration_accounts', ['user_id'])
    op.create_index('ix_integration_accounts_provider', 'integration_accounts', ['provider'])
    op.create_index('ix_integration_accounts_sync_status', 'integration_accounts', ['sync_status'])

    op.create_table(
        'external_calendar_maps',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('integration_id', sa.String(), sa.ForeignKey('integration_accounts.id', ondelete='CASCADE'), nullable=False),
        sa.Column('external_calendar_id', sa.String(), nullable=False),
        sa.Column('label', sa.String(), nullable=False, server_default='Calendar'),
        sa.Column('is_primary', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_sync_token', sa.Text(), nullable=True),
        sa.Column('last_delta_link', sa.Text(), nullable=True),
        sa.Column('last_sync_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint('integration_id', 'external_calendar_id', name='uq_external_calendar_maps_integration_calendar'),
    )
    op.create_index('ix_external_calendar_maps_integration_id', 'external_calendar_maps', ['integration_id'])
    op.create_index('ix_external_calendar_maps_is_primary', 'external_calendar_maps', ['is_primary'])

    op.create_table(
        'calendar_events',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('user_id', sa.String(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('title', sa.String(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('location', sa.String(), nullable=True),
        sa.Column('start_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('end_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('all_day', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('timezone', sa.String(), nullable=False, server_default='Europe/Lisbon'),
        sa.Column('category', sa.String(), nullable=False, server_default='other'),
        sa.Column('status', sa.String(), nullable=False, server_default='confirmed'),
        sa.Column('meeting_url', sa.String(), nullable=True),
        sa.Column('deleted_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('external_source', sa.String(), nullable=True),
        sa.Column('external_calendar_id', sa.String(), nullable=True),
        sa.Column('external_event_id', sa.String(), nullable=True),
        sa.Column('external_etag', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('ix_calendar_events_user_id', 'calendar_events', ['user_id'])
    op.create_index('ix_calendar_events_start_at', 'calendar_events', ['start_at'])
    op.create_index('ix_calendar_events_category', 'calendar_events', ['category'])
    op.create_index('ix_calendar_events_deleted_at', 'calendar_events', ['deleted_at'])
    op.create_index('ix_calendar_events_external_event_id', 'calendar_events', ['external_event_id'])
    op.create_index('ix_calendar_events_updated_at', 'calendar_events', ['updated_at'])

    op.create_table(
        'external_event_maps',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('integration_id', sa.String(), sa.ForeignKey('integration_accounts.id', ondelete='CASCADE'), nullable=False),
        sa.Column('event_id', sa.String(), sa.ForeignKey('calendar_events.id', ondelete='CASCADE'), nullable=False),
        sa.Column('external_event_id', sa.String(), nullable=False),
        sa.Column('external_calendar_id', sa.String(), nullable=True),
        sa.Column('etag', sa.String(), nullable=True),
        sa.Column('source_hash', sa.String(), nullable=True),
        sa.Column('last_synced_at', sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint('integration_id', 'event_id', name='uq_external_event_maps_integration_event'),
        sa.UniqueConstraint('integration_id', 'external_event_id', name='uq_external_event_maps_integration_external'),
    )
    op.create_index('ix_external_event_maps_integration_id', 'external_event_maps', ['integration_id'])
    op.create_index('ix_external_event_maps_event_id', 'external_event_maps', ['event_id'])


def downgrade():
    bind = op.get_bind()
    inspector = sa.inspect(bind)
    if 'integration_accounts' not in inspector.get_table_names():
        return
    op.drop_table('external_event_maps')
    op.drop_table('calendar_events')
    op.drop_table('external_calendar_maps')
    op.drop_table('integration_accounts')
    op.drop_table('users')
