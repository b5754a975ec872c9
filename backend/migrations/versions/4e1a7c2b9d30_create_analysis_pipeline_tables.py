"""Create analysis pipeline tables

Revision ID: 4e1a7c2b9d30
Revises:
Create Date: 2026-10-18 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '4e1a7c2b9d30'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'analysis_cache',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('subject', sa.String(32), nullable=False),
        sa.Column('analysis_type', sa.String(64), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('quality_score', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('subject', 'analysis_type', name='uq_analysis_cache_subject_type'),
    )
    op.create_index('ix_analysis_cache_expires_at', 'analysis_cache', ['expires_at'], unique=False)

    op.create_table(
        'phase_data',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('session_id', sa.String(255), nullable=False),
        sa.Column('subject', sa.String(32), nullable=False),
        sa.Column('phase', sa.Integer(), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('session_id', 'subject', 'phase', name='uq_phase_data_session_subject_phase'),
    )
    op.create_index('ix_phase_data_expires_at', 'phase_data', ['expires_at'], unique=False)

    op.create_table(
        'analysis_jobs',
        sa.Column('id', sa.String(36), nullable=False),
        sa.Column('subject', sa.String(32), nullable=False),
        sa.Column('request', sa.JSON(), nullable=False),
        sa.Column('status', sa.String(10), nullable=False),
        sa.Column('result', sa.JSON(), nullable=True),
        sa.Column('error_message', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_analysis_jobs_subject'), 'analysis_jobs', ['subject'], unique=False)
    op.create_index('ix_analysis_jobs_status_created_at', 'analysis_jobs', ['status', 'created_at'], unique=False)

    op.create_table(
        'job_trace_events',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('job_id', sa.String(36), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('phase', sa.String(), nullable=False),
        sa.Column('step', sa.String(), nullable=True),
        sa.Column('label', sa.String(), nullable=False),
        sa.Column('detail', sa.String(), nullable=True),
        sa.Column('meta', sa.JSON(), nullable=True),
        sa.ForeignKeyConstraint(['job_id'], ['analysis_jobs.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_job_trace_events_job_id'), 'job_trace_events', ['job_id'], unique=False)


def downgrade() -> None:
    op.drop_index(op.f('ix_job_trace_events_job_id'), table_name='job_trace_events')
    op.drop_table('job_trace_events')
    op.drop_index('ix_analysis_jobs_status_created_at', table_name='analysis_jobs')
    op.drop_index(op.f('ix_analysis_jobs_subject'), table_name='analysis_jobs')
    op.drop_table('analysis_jobs')
    op.drop_index('ix_phase_data_expires_at', table_name='phase_data')
    op.drop_table('phase_data')
    op.drop_index('ix_analysis_cache_expires_at', table_name='analysis_cache')
    op.drop_table('analysis_cache')
