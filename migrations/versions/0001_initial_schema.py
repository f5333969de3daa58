"""
initial cost sync schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-02-02

Creates tenants, azure_connections, cost_records, cloud_resources,
cost_sync_jobs and background_jobs.
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers
revision = '0001_initial'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'tenants',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True,
                  server_default=sa.text('gen_random_uuid()')),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('is_enabled', sa.Boolean, server_default=sa.true(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('NOW()'), nullable=False),
    )

    op.create_table(
        'azure_connections',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True,
                  server_default=sa.text('gen_random_uuid()')),
        sa.Column('tenant_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('tenants.id', ondelete='CASCADE'), nullable=False),
        sa.Column('azure_tenant_id', sa.String, nullable=False),
        sa.Column('client_id', sa.String, nullable=False),
        sa.Column('subscription_id', sa.String, nullable=False),
        sa.Column('client_secret', sa.String, nullable=True),  # AES ciphertext
        sa.Column('is_active', sa.Boolean, server_default=sa.true(), nullable=False),
        sa.Column('last_synced_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('error_message', sa.String, nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('NOW()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('NOW()'), nullable=False),
        sa.UniqueConstraint('tenant_id', name='uq_azure_connection_tenant'),
    )
    op.create_index('ix_azure_connections_tenant_id', 'azure_connections', ['tenant_id'])

    op.create_table(
        'cost_records',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True,
                  server_default=sa.text('gen_random_uuid()')),
        sa.Column('tenant_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('tenants.id', ondelete='CASCADE'), nullable=False),
        sa.Column('natural_key', sa.String(64), nullable=False),
        sa.Column('external_resource_id', sa.String, nullable=True),
        sa.Column('resource_group', sa.String, nullable=True),
        sa.Column('category', sa.String, nullable=True),
        sa.Column('sub_category', sa.String, nullable=True),
        sa.Column('meter', sa.String, nullable=True),
        sa.Column('cost_amount', sa.Numeric(18, 8), nullable=False),
        sa.Column('currency', sa.String(3), server_default='USD', nullable=False),
        sa.Column('usage_date', sa.Date, nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('NOW()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('NOW()'), nullable=False),
        sa.UniqueConstraint('tenant_id', 'natural_key', name='uix_cost_record_natural_key'),
    )
    op.create_index('ix_cost_records_tenant_usage_date', 'cost_records', ['tenant_id', 'usage_date'])
    op.create_index('ix_cost_records_external_resource_id', 'cost_records', ['external_resource_id'])

    op.create_table(
        'cloud_resources',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True,
                  server_default=sa.text('gen_random_uuid()')),
        sa.Column('tenant_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('tenants.id', ondelete='CASCADE'), nullable=False),
        sa.Column('azure_resource_id', sa.String, nullable=False),
        sa.Column('name', sa.String, nullable=True),
        sa.Column('resource_type', sa.String, nullable=True),
        sa.Column('location', sa.String, nullable=True),
        sa.Column('resource_group', sa.String, nullable=True),
        sa.Column('is_active', sa.Boolean, server_default=sa.true(), nullable=False),
        sa.Column('last_seen_at', sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint('tenant_id', 'azure_resource_id', name='uix_cloud_resource_tenant_resource'),
    )
    op.create_index('ix_cloud_resources_tenant_id', 'cloud_resources', ['tenant_id'])
    op.create_index('ix_cloud_resources_is_active', 'cloud_resources', ['is_active'])

    op.create_table(
        'cost_sync_jobs',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True,
                  server_default=sa.text('gen_random_uuid()')),
        sa.Column('tenant_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('tenants.id', ondelete='CASCADE'), nullable=False),
        sa.Column('sync_type', sa.String(32), server_default='costs', nullable=False),
        sa.Column('status', sa.String(20), server_default='pending', nullable=False),
        sa.Column('start_date', sa.Date, nullable=False),
        sa.Column('end_date', sa.Date, nullable=False),
        sa.Column('total_chunks', sa.Integer, server_default='0', nullable=False),
        sa.Column('completed_chunks', sa.Integer, server_default='0', nullable=False),
        sa.Column('failed_chunks', sa.Integer, server_default='0', nullable=False),
        sa.Column('records_synced', sa.Integer, server_default='0', nullable=False),
        sa.Column('processing_rate', sa.Float, nullable=True),
        sa.Column('estimated_completion_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('current_operation', sa.String(255), nullable=True),
        sa.Column('current_resource_name', sa.String(255), nullable=True),
        sa.Column('chunk_details', postgresql.JSONB, server_default=sa.text("'[]'::jsonb"), nullable=False),
        sa.Column('error_message', sa.Text, nullable=True),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('NOW()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('NOW()'), nullable=False),
        sa.CheckConstraint('completed_chunks + failed_chunks <= total_chunks', name='ck_cost_sync_jobs_chunk_counts'),
    )
    op.create_index('ix_cost_sync_jobs_tenant_status', 'cost_sync_jobs', ['tenant_id', 'sync_type', 'status'])

    op.create_table(
        'background_jobs',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True,
                  server_default=sa.text('gen_random_uuid()')),
        sa.Column('job_type', sa.String(50), nullable=False),
        sa.Column('tenant_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('tenants.id', ondelete='CASCADE'), nullable=True),
        sa.Column('deduplication_key', sa.String(255), nullable=True),
        sa.Column('status', sa.String(20), server_default='pending', nullable=False),
        sa.Column('payload', postgresql.JSONB, nullable=True),
        sa.Column('result', postgresql.JSONB, nullable=True),
        sa.Column('attempts', sa.Integer, server_default='0', nullable=False),
        sa.Column('max_attempts', sa.Integer, server_default='3', nullable=False),
        sa.Column('scheduled_for', sa.DateTime(timezone=True),
                  server_default=sa.text('NOW()'), nullable=False),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('error_message', sa.Text, nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True),
                  server_default=sa.text('NOW()'), nullable=False),
    )
    op.create_index('ix_background_jobs_deduplication_key', 'background_jobs', ['deduplication_key'], unique=True)
    op.create_index('ix_background_jobs_status', 'background_jobs', ['status'])
    op.create_index('ix_background_jobs_created_at', 'background_jobs', ['created_at'])
    op.create_index(
        'ix_jobs_status_scheduled',
        'background_jobs',
        ['status', 'scheduled_for'],
        postgresql_where=sa.text("status = 'pending'")
    )


def downgrade() -> None:
    op.drop_index('ix_jobs_status_scheduled')
    op.drop_index('ix_background_jobs_created_at')
    op.drop_index('ix_background_jobs_status')
    op.drop_index('ix_background_jobs_deduplication_key')
    op.drop_table('background_jobs')
    op.drop_index('ix_cost_sync_jobs_tenant_status')
    op.drop_table('cost_sync_jobs')
    op.drop_index('ix_cloud_resources_is_active')
    op.drop_index('ix_cloud_resources_tenant_id')
    op.drop_table('cloud_resources')
    op.drop_index('ix_cost_records_external_resource_id')
    op.drop_index('ix_cost_records_tenant_usage_date')
    op.drop_table('cost_records')
    op.drop_index('ix_azure_connections_tenant_id')
    op.drop_table('azure_connections')
    op.drop_table('tenants')
