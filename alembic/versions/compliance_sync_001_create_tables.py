"""Create compliance sync tables

Revision ID: compliance_sync_001
Revises:
Create Date: 2026-10-19 09:00:00.000000

This migration creates all tables required for the regulator compliance
synchronization engine:
- compliance_licenses: Regulator license configuration
- compliance_sync_jobs: Sync runs (one active run per license)
- compliance_queue_items: Outbound mutation queue (outbox)
- compliance_sync_checkpoints: Incremental pull watermarks

Enum columns store the enum member names, matching the ORM models.
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = 'compliance_sync_001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    # ========================================================================
    # Create ENUM types
    # ========================================================================
    op.execute("CREATE TYPE syncdirection AS ENUM ('PUSH', 'PULL', 'BIDIRECTIONAL')")
    op.execute("""
        CREATE TYPE syncjobstatus AS ENUM (
            'PENDING', 'RUNNING', 'COMPLETED', 'FAILED', 'CANCELLED'
        )
    """)
    op.execute("""
        CREATE TYPE queueitemstatus AS ENUM (
            'PENDING', 'PROCESSING', 'COMPLETED', 'FAILED', 'SKIPPED', 'CANCELLED'
        )
    """)
    op.execute("""
        CREATE TYPE entitytype AS ENUM (
            'PLANT', 'PLANT_BATCH', 'HARVEST', 'PACKAGE', 'ITEM', 'STRAIN',
            'LOCATION', 'LAB_TEST', 'PROCESSING_JOB', 'TRANSFER'
        )
    """)
    op.execute("""
        CREATE TYPE operationtype AS ENUM (
            'READ', 'CREATE', 'UPDATE', 'DELETE', 'MOVE', 'ADJUST', 'CHANGE_PHASE',
            'HARVEST', 'PACKAGE', 'FINISH', 'RECORD_WASTE', 'REMEDIATE', 'DESTROY'
        )
    """)

    sync_direction = postgresql.ENUM(name='syncdirection', create_type=False)
    entity_type = postgresql.ENUM(name='entitytype', create_type=False)

    # ========================================================================
    # Create compliance_licenses table
    # ========================================================================
    op.create_table('compliance_licenses',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('site_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('license_number', sa.String(50), nullable=False),
        sa.Column('state_code', sa.String(2), nullable=False),
        sa.Column('facility_name', sa.String(200), nullable=False, server_default=''),
        sa.Column('credential_ref', sa.String(500), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=True, server_default=sa.text('true')),
        sa.Column('use_sandbox', sa.Boolean(), nullable=True, server_default=sa.text('false')),
        sa.Column('auto_sync_enabled', sa.Boolean(), nullable=True, server_default=sa.text('true')),
        sa.Column('sync_interval_minutes', sa.Integer(), nullable=True, server_default='15'),
        sa.Column('last_sync_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_successful_sync_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_sync_error', sa.String(2000), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('license_number', name='uq_compliance_licenses_number')
    )
    op.create_index('ix_compliance_licenses_site_id', 'compliance_licenses', ['site_id'])
    op.create_index('idx_compliance_licenses_auto_sync', 'compliance_licenses', ['is_active', 'auto_sync_enabled'])

    # ========================================================================
    # Create compliance_sync_jobs table
    # ========================================================================
    op.create_table('compliance_sync_jobs',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('site_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('license_number', sa.String(50), nullable=False),
        sa.Column('state_code', sa.String(2), nullable=False),
        sa.Column('active_license_key', sa.String(50), nullable=True),
        sa.Column('direction', sync_direction, nullable=False),
        sa.Column('status', postgresql.ENUM(name='syncjobstatus', create_type=False), nullable=True),
        sa.Column('force_full_sync', sa.Boolean(), nullable=True, server_default=sa.text('false')),
        sa.Column('total_items', sa.Integer(), nullable=True, server_default='0'),
        sa.Column('processed_items', sa.Integer(), nullable=True, server_default='0'),
        sa.Column('successful_items', sa.Integer(), nullable=True, server_default='0'),
        sa.Column('failed_items', sa.Integer(), nullable=True, server_default='0'),
        sa.Column('retry_count', sa.Integer(), nullable=True, server_default='0'),
        sa.Column('error_message', sa.String(2000), nullable=True),
        sa.Column('error_details', sa.JSON(), nullable=True),
        sa.Column('initiated_by', sa.String(50), nullable=True, server_default="system"),
        sa.Column('initiated_by_user_id', sa.String(100), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=True),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_heartbeat_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('changes_collected_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        # NULL once the job is terminal, so only active jobs collide
        sa.UniqueConstraint('active_license_key', name='uq_compliance_sync_jobs_active_license')
    )
    op.create_index('ix_compliance_sync_jobs_site_id', 'compliance_sync_jobs', ['site_id'])
    op.create_index('ix_compliance_sync_jobs_license_number', 'compliance_sync_jobs', ['license_number'])
    op.create_index('ix_compliance_sync_jobs_status', 'compliance_sync_jobs', ['status'])
    op.create_index('ix_compliance_sync_jobs_created_at', 'compliance_sync_jobs', ['created_at'])
    op.create_index('idx_compliance_sync_jobs_site_created', 'compliance_sync_jobs', ['site_id', 'created_at'])

    # ========================================================================
    # Create compliance_queue_items table
    # ========================================================================
    op.create_table('compliance_queue_items',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('sync_job_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('site_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('license_number', sa.String(50), nullable=False),
        sa.Column('entity_type', entity_type, nullable=False),
        sa.Column('operation_type', postgresql.ENUM(name='operationtype', create_type=False), nullable=False),
        sa.Column('local_entity_id', sa.String(100), nullable=False),
        sa.Column('remote_id', sa.BigInteger(), nullable=True),
        sa.Column('remote_label', sa.String(100), nullable=True),
        sa.Column('payload_json', sa.Text(), nullable=False),
        sa.Column('status', postgresql.ENUM(name='queueitemstatus', create_type=False), nullable=True),
        sa.Column('priority', sa.Integer(), nullable=True, server_default='100'),
        sa.Column('retry_count', sa.Integer(), nullable=True, server_default='0'),
        sa.Column('max_retries', sa.Integer(), nullable=True, server_default='3'),
        sa.Column('idempotency_key', sa.String(200), nullable=False),
        sa.Column('active_idempotency_key', sa.String(200), nullable=True),
        sa.Column('depends_on_item_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('superseded_by_item_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('claimed_by', sa.String(100), nullable=True),
        sa.Column('claimed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('error_message', sa.String(2000), nullable=True),
        sa.Column('error_code', sa.String(50), nullable=True),
        sa.Column('response_json', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('scheduled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        # NULL once the item is terminal, so only in-flight work is deduplicated
        sa.UniqueConstraint('active_idempotency_key', name='uq_compliance_queue_items_active_key')
    )
    op.create_index('ix_compliance_queue_items_sync_job_id', 'compliance_queue_items', ['sync_job_id'])
    op.create_index('ix_compliance_queue_items_license_number', 'compliance_queue_items', ['license_number'])
    op.create_index('ix_compliance_queue_items_status', 'compliance_queue_items', ['status'])
    op.create_index('ix_compliance_queue_items_idempotency_key', 'compliance_queue_items', ['idempotency_key'])
    op.create_index('ix_compliance_queue_items_depends_on_item_id', 'compliance_queue_items', ['depends_on_item_id'])
    op.create_index(
        'idx_compliance_queue_items_ready', 'compliance_queue_items',
        ['license_number', 'status', 'priority', 'scheduled_at']
    )
    op.create_index(
        'idx_compliance_queue_items_entity', 'compliance_queue_items',
        ['license_number', 'entity_type', 'local_entity_id']
    )

    # ========================================================================
    # Create compliance_sync_checkpoints table
    # ========================================================================
    op.create_table('compliance_sync_checkpoints',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('license_number', sa.String(50), nullable=False),
        sa.Column('entity_type', entity_type, nullable=False),
        sa.Column('direction', sync_direction, nullable=False),
        sa.Column('watermark', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_successful_sync_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_failed_sync_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_sync_item_count', sa.Integer(), nullable=True, server_default='0'),
        sa.Column('consecutive_failures', sa.Integer(), nullable=True, server_default='0'),
        sa.Column('last_error', sa.String(2000), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint(
            'license_number', 'entity_type', 'direction',
            name='uq_compliance_sync_checkpoints_scope'
        )
    )


def downgrade():
    op.drop_table('compliance_sync_checkpoints')

    op.drop_index('idx_compliance_queue_items_entity', table_name='compliance_queue_items')
    op.drop_index('idx_compliance_queue_items_ready', table_name='compliance_queue_items')
    op.drop_index('ix_compliance_queue_items_depends_on_item_id', table_name='compliance_queue_items')
    op.drop_index('ix_compliance_queue_items_idempotency_key', table_name='compliance_queue_items')
    op.drop_index('ix_compliance_queue_items_status', table_name='compliance_queue_items')
    op.drop_index('ix_compliance_queue_items_license_number', table_name='compliance_queue_items')
    op.drop_index('ix_compliance_queue_items_sync_job_id', table_name='compliance_queue_items')
    op.drop_table('compliance_queue_items')

    op.drop_index('idx_compliance_sync_jobs_site_created', table_name='compliance_sync_jobs')
    op.drop_index('ix_compliance_sync_jobs_created_at', table_name='compliance_sync_jobs')
    op.drop_index('ix_compliance_sync_jobs_status', table_name='compliance_sync_jobs')
    op.drop_index('ix_compliance_sync_jobs_license_number', table_name='compliance_sync_jobs')
    op.drop_index('ix_compliance_sync_jobs_site_id', table_name='compliance_sync_jobs')
    op.drop_table('compliance_sync_jobs')

    op.drop_index('idx_compliance_licenses_auto_sync', table_name='compliance_licenses')
    op.drop_index('ix_compliance_licenses_site_id', table_name='compliance_licenses')
    op.drop_table('compliance_licenses')

    # Drop ENUM types
    op.execute('DROP TYPE IF EXISTS operationtype')
    op.execute('DROP TYPE IF EXISTS entitytype')
    op.execute('DROP TYPE IF EXISTS queueitemstatus')
    op.execute('DROP TYPE IF EXISTS syncjobstatus')
    op.execute('DROP TYPE IF EXISTS syncdirection')
