"""Create prescreen tables: programs, batches, leads, results, audit log

Revision ID: 3f9a1c7d2e64
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '3f9a1c7d2e64'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table('prescreen_programs',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('altair_program_id', sa.Integer(), nullable=True),
        sa.Column('name', sa.Text(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('min_score', sa.Integer(), nullable=True),
        sa.Column('max_score', sa.Integer(), nullable=True),
        sa.Column('eq_enabled', sa.Boolean(), nullable=True),
        sa.Column('tu_enabled', sa.Boolean(), nullable=True),
        sa.Column('ex_enabled', sa.Boolean(), nullable=True),
        sa.Column('config', sa.JSON(), nullable=True),
        sa.Column('status', sa.Text(), nullable=False),
        sa.Column('created_by', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_prescreen_programs_name', 'prescreen_programs', ['name'])

    op.create_table('prescreen_batches',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('program_id', sa.Integer(), nullable=False),
        sa.Column('name', sa.Text(), nullable=False),
        sa.Column('status', sa.Text(), nullable=False),
        sa.Column('total_records', sa.Integer(), nullable=True),
        sa.Column('qualified_count', sa.Integer(), nullable=True),
        sa.Column('failed_count', sa.Integer(), nullable=True),
        sa.Column('lead_ids', sa.JSON(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('submitted_by', sa.Text(), nullable=True),
        sa.Column('submitted_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.ForeignKeyConstraint(['program_id'], ['prescreen_programs.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_prescreen_batches_program_id', 'prescreen_batches', ['program_id'])

    op.create_table('prescreen_leads',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('batch_id', sa.Integer(), nullable=True),
        sa.Column('program_id', sa.Integer(), nullable=False),
        sa.Column('input_id', sa.Integer(), nullable=True),
        sa.Column('first_name', sa.Text(), nullable=False),
        sa.Column('last_name', sa.Text(), nullable=False),
        sa.Column('middle_initial', sa.Text(), nullable=True),
        sa.Column('address', sa.Text(), nullable=True),
        sa.Column('address_2', sa.Text(), nullable=True),
        sa.Column('city', sa.Text(), nullable=True),
        sa.Column('state', sa.Text(), nullable=True),
        sa.Column('zip', sa.Text(), nullable=True),
        sa.Column('ssn_encrypted', sa.Text(), nullable=True),
        sa.Column('ssn_last_four', sa.Text(), nullable=True),
        sa.Column('dob_encrypted', sa.Text(), nullable=True),
        sa.Column('middle_score', sa.Integer(), nullable=True),
        sa.Column('tier', sa.Text(), nullable=False),
        sa.Column('is_qualified', sa.Boolean(), nullable=True),
        sa.Column('match_status', sa.Text(), nullable=False),
        sa.Column('segment_name', sa.Text(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.ForeignKeyConstraint(['batch_id'], ['prescreen_batches.id']),
        sa.ForeignKeyConstraint(['program_id'], ['prescreen_programs.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_prescreen_leads_batch_id', 'prescreen_leads', ['batch_id'])
    op.create_index('ix_prescreen_leads_program_id', 'prescreen_leads', ['program_id'])
    op.create_index('ix_prescreen_leads_match_status', 'prescreen_leads', ['match_status'])

    op.create_table('prescreen_results',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('lead_id', sa.Integer(), nullable=False),
        sa.Column('bureau', sa.Text(), nullable=False),
        sa.Column('credit_score', sa.Integer(), nullable=True),
        sa.Column('is_hit', sa.Boolean(), nullable=True),
        sa.Column('raw_output', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.ForeignKeyConstraint(['lead_id'], ['prescreen_leads.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('lead_id', 'bureau', name='uq_result_lead_bureau'),
    )
    op.create_index('ix_prescreen_results_lead_id', 'prescreen_results', ['lead_id'])

    op.create_table('prescreen_audit_log',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('action', sa.Text(), nullable=False),
        sa.Column('performed_by', sa.Text(), nullable=True),
        sa.Column('lead_id', sa.Integer(), nullable=True),
        sa.Column('batch_id', sa.Integer(), nullable=True),
        sa.Column('ip_address', sa.Text(), nullable=True),
        sa.Column('user_agent', sa.Text(), nullable=True),
        sa.Column('details', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.ForeignKeyConstraint(['lead_id'], ['prescreen_leads.id'], ondelete='SET NULL'),
        sa.ForeignKeyConstraint(['batch_id'], ['prescreen_batches.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_prescreen_audit_log_action', 'prescreen_audit_log', ['action'])


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_index('ix_prescreen_audit_log_action', table_name='prescreen_audit_log')
    op.drop_table('prescreen_audit_log')
    op.drop_index('ix_prescreen_results_lead_id', table_name='prescreen_results')
    op.drop_table('prescreen_results')
    op.drop_index('ix_prescreen_leads_match_status', table_name='prescreen_leads')
    op.drop_index('ix_prescreen_leads_program_id', table_name='prescreen_leads')
    op.drop_index('ix_prescreen_leads_batch_id', table_name='prescreen_leads')
    op.drop_table('prescreen_leads')
    op.drop_index('ix_prescreen_batches_program_id', table_name='prescreen_batches')
    op.drop_table('prescreen_batches')
    op.drop_index('ix_prescreen_programs_name', table_name='prescreen_programs')
    op.drop_table('prescreen_programs')
