"""Ingestion schema - table_mappings, ingestion_jobs, ingestion_job_logs

Revision ID: 001_ingestion_schema
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = '001_ingestion_schema'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Saved source-to-target mappings; descriptors and config are JSON documents
    op.create_table(
        'table_mappings',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('source', sa.JSON(), nullable=False),
        sa.Column('target', sa.JSON(), nullable=False),
        sa.Column('column_mappings', sa.JSON(), nullable=False),
        sa.Column('config', sa.JSON(), nullable=False),
        sa.Column('adhoc', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now()),
    )

    # One row per job execution, kept after completion for status and stats
    op.create_table(
        'ingestion_jobs',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('mapping_id', sa.Uuid(), sa.ForeignKey('table_mappings.id', ondelete='CASCADE'), nullable=False),
        sa.Column('state', sa.String(20), nullable=False, server_default='PENDING'),
        sa.Column('config', sa.JSON(), nullable=False),
        sa.Column('processed', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('total', sa.BigInteger(), nullable=True),
        sa.Column('errors', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('records_written', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('duplicates_skipped', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('retries', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('output_path', sa.Text(), nullable=True),
        sa.Column('start_time', sa.DateTime(), nullable=True),
        sa.Column('end_time', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index('idx_ingestion_jobs_mapping_state', 'ingestion_jobs', ['mapping_id', 'state'])

    # Append-only job log; mapping_id is denormalized for mapping-scoped log queries
    op.create_table(
        'ingestion_job_logs',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('job_id', sa.Uuid(), sa.ForeignKey('ingestion_jobs.id', ondelete='CASCADE'), nullable=False),
        sa.Column('mapping_id', sa.Uuid(), nullable=False),
        sa.Column('timestamp', sa.DateTime(), nullable=False),
        sa.Column('level', sa.String(10), nullable=False),
        sa.Column('message', sa.Text(), nullable=False),
    )
    op.create_index('idx_ingestion_job_logs_mapping', 'ingestion_job_logs', ['mapping_id', 'timestamp'])


def downgrade() -> None:
    op.drop_index('idx_ingestion_job_logs_mapping', table_name='ingestion_job_logs')
    op.drop_table('ingestion_job_logs')

    op.drop_index('idx_ingestion_jobs_mapping_state', table_name='ingestion_jobs')
    op.drop_table('ingestion_jobs')

    op.drop_table('table_mappings')
