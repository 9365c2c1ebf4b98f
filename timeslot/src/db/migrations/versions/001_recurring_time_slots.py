"""Recurring time-slot schema

Revision ID: 001_recurring_time_slots
Revises:
Create Date: 2025-01-06

Creates the schedule engine tables:
- time_slot_series_groups: user-facing recurring schedules
- time_slot_series: rule versions of a group
- time_slot_instances: one row per occurrence date of a series
- jobs: durable background job queue
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = '001_recurring_time_slots'
down_revision = None
branch_labels = None
depends_on = None


def _json_type():
    return postgresql.JSONB(astext_type=sa.Text()).with_variant(sa.Text(), 'sqlite')


def upgrade() -> None:
    """
    Create the schedule engine tables.

    Status and exception type columns are stored as strings; the allowed
    shapes of an instance row are enforced with check constraints.
    """

    # Create series groups table
    op.create_table(
        'time_slot_series_groups',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('display_name', sa.String(length=255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('color', sa.String(length=7), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint('color IS NULL OR length(color) = 7', name='ck_series_groups_color'),
    )

    # Create series table
    op.create_table(
        'time_slot_series',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('group_id', sa.Integer(), nullable=False),
        sa.Column('version_number', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('effective_from', sa.Date(), nullable=False),
        sa.Column('effective_until', sa.Date(), nullable=True),
        sa.Column('entity_table', sa.String(length=63), nullable=False),
        sa.Column('entity_template_json', _json_type(), nullable=False),
        sa.Column('rrule', sa.String(length=500), nullable=False),
        sa.Column('dtstart', sa.DateTime(), nullable=False),
        sa.Column('duration', sa.Interval(), nullable=False),
        sa.Column('timezone', sa.String(length=64), nullable=False, server_default='UTC'),
        sa.Column('time_slot_field', sa.String(length=63), nullable=False, server_default='time_slot'),
        sa.Column('skip_conflicts', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='active'),
        sa.Column('status_reason', sa.Text(), nullable=True),
        sa.Column('expanded_until', sa.Date(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('template_updated_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['group_id'], ['time_slot_series_groups.id'], ondelete='CASCADE'),
        sa.UniqueConstraint('group_id', 'version_number', name='uq_series_group_version'),
        sa.CheckConstraint(
            'effective_until IS NULL OR effective_until >= effective_from',
            name='ck_series_effective_range',
        ),
    )
    op.create_index('ix_time_slot_series_group_id', 'time_slot_series', ['group_id'], unique=False)
    op.create_index('ix_time_slot_series_status', 'time_slot_series', ['status'], unique=False)

    # Create instances table
    op.create_table(
        'time_slot_instances',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('series_id', sa.Integer(), nullable=False),
        sa.Column('occurrence_date', sa.Date(), nullable=False),
        sa.Column('entity_table', sa.String(length=63), nullable=False),
        sa.Column('entity_id', sa.Integer(), nullable=True),
        sa.Column('is_exception', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('exception_type', sa.String(length=20), nullable=True),
        sa.Column('exception_reason', sa.Text(), nullable=True),
        sa.Column('exception_at', sa.DateTime(), nullable=True),
        sa.Column('original_time_slot', sa.String(length=64), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['series_id'], ['time_slot_series.id'], ondelete='CASCADE'),
        sa.UniqueConstraint('series_id', 'occurrence_date', name='uq_instances_series_date'),
        sa.UniqueConstraint('entity_table', 'entity_id', name='uq_instances_entity'),
        sa.CheckConstraint(
            "(is_exception AND exception_type IS NOT NULL) "
            "OR (NOT is_exception AND exception_type IS NULL)",
            name='ck_instances_exception_flag',
        ),
        sa.CheckConstraint(
            "(COALESCE(exception_type, '') IN ('cancelled', 'conflict_skipped') AND entity_id IS NULL) "
            "OR (COALESCE(exception_type, '') IN ('', 'modified', 'rescheduled') "
            "AND entity_id IS NOT NULL)",
            name='ck_instances_entity_presence',
        ),
        sa.CheckConstraint(
            "exception_type IS NULL OR exception_type != 'rescheduled' "
            "OR original_time_slot IS NOT NULL",
            name='ck_instances_rescheduled_slot',
        ),
    )
    op.create_index('ix_time_slot_instances_series_id', 'time_slot_instances', ['series_id'], unique=False)
    op.create_index('ix_instances_entity', 'time_slot_instances', ['entity_table', 'entity_id'], unique=False)

    # Create jobs table
    op.create_table(
        'jobs',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('kind', sa.String(length=100), nullable=False),
        sa.Column('queue', sa.String(length=50), nullable=False, server_default='default'),
        sa.Column('args_json', _json_type(), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='available'),
        sa.Column('priority', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('attempt', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_attempts', sa.Integer(), nullable=False, server_default='3'),
        sa.Column('scheduled_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('attempted_at', sa.DateTime(), nullable=True),
        sa.Column('finalized_at', sa.DateTime(), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('errors_json', _json_type(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_jobs_status', 'jobs', ['status'], unique=False)
    op.create_index('ix_jobs_claimable', 'jobs', ['queue', 'status', 'scheduled_at', 'priority'], unique=False)


def downgrade() -> None:
    """
    Drop the schedule engine tables.

    Note: Entity rows written by the engine are left in place; only the
    series bookkeeping and queued jobs are removed.
    """
    op.drop_index('ix_jobs_claimable', table_name='jobs')
    op.drop_index('ix_jobs_status', table_name='jobs')
    op.drop_table('jobs')

    op.drop_index('ix_instances_entity', table_name='time_slot_instances')
    op.drop_index('ix_time_slot_instances_series_id', table_name='time_slot_instances')
    op.drop_table('time_slot_instances')

    op.drop_index('ix_time_slot_series_status', table_name='time_slot_series')
    op.drop_index('ix_time_slot_series_group_id', table_name='time_slot_series')
    op.drop_table('time_slot_series')

    op.drop_table('time_slot_series_groups')
