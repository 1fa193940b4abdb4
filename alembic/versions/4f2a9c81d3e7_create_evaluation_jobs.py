"""create_evaluation_jobs

Revision ID: 4f2a9c81d3e7
Revises:
Create Date: 2026-10-19 09:12:31.402118

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '4f2a9c81d3e7'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

job_status = sa.Enum('PENDING', 'PROCESSING', 'COMPLETE', 'FAILED', name='evaluation_job_status')


def upgrade() -> None:
    """
    Create the evaluation_jobs table (job store for the evaluation pipeline).
    """
    conn = op.get_bind()
    inspector = sa.inspect(conn)

    if 'evaluation_jobs' not in inspector.get_table_names():
        op.create_table(
            'evaluation_jobs',
            sa.Column('id', sa.String(length=36), nullable=False),
            sa.Column('status', job_status, nullable=False),
            sa.Column('source_ref', sa.String(length=1024), nullable=False),
            sa.Column('procedure_id', sa.String(length=100), nullable=False),
            sa.Column('subject_name', sa.String(length=255), nullable=True),
            sa.Column('additional_context', sa.Text(), nullable=True),
            sa.Column('result', sa.JSON().with_variant(postgresql.JSONB(), 'postgresql'), nullable=True),
            sa.Column('error_message', sa.Text(), nullable=True),
            sa.Column('attempts', sa.Integer(), server_default='0', nullable=False),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_evaluation_jobs_status', 'evaluation_jobs', ['status'])
        op.create_index('ix_evaluation_jobs_procedure_id', 'evaluation_jobs', ['procedure_id'])
        op.create_index('ix_evaluation_jobs_created_at', 'evaluation_jobs', ['created_at'])


def downgrade() -> None:
    """
    Drop the evaluation_jobs table.
    """
    op.drop_index('ix_evaluation_jobs_created_at', table_name='evaluation_jobs')
    op.drop_index('ix_evaluation_jobs_procedure_id', table_name='evaluation_jobs')
    op.drop_index('ix_evaluation_jobs_status', table_name='evaluation_jobs')
    op.drop_table('evaluation_jobs')
    job_status.drop(op.get_bind(), checkfirst=True)
