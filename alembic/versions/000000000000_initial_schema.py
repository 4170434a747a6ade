"""initial_schema

Revision ID: 000000000000
Revises: 
Create Date: 2026-10-19 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '000000000000'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Create procurement_records table
    op.create_table(
        'procurement_records',
        sa.Column('external_id', sa.String(length=64), nullable=False, comment='PNCP control number (numeroControlePNCP)'),
        sa.Column('title', sa.Text(), nullable=True, comment='Object of the purchase'),
        sa.Column('organization', sa.Text(), nullable=True, comment='Contracting body'),
        sa.Column('modality_code', sa.String(length=8), nullable=True, comment='Partition key the record was fetched under'),
        sa.Column('modality_label', sa.Text(), nullable=True),
        sa.Column('status', sa.Text(), nullable=True),
        sa.Column('municipality', sa.Text(), nullable=True),
        sa.Column('municipality_code', sa.String(length=16), nullable=True, comment='IBGE code'),
        sa.Column('state_code', sa.String(length=2), nullable=True, comment='UF sigla'),
        sa.Column('publication_date', sa.Date(), nullable=True),
        sa.Column('proposal_open_date', sa.Date(), nullable=True),
        sa.Column('proposal_close_date', sa.Date(), nullable=True),
        sa.Column('expiration_date', sa.Date(), nullable=True, comment='Derived advisory expiry, never a deletion trigger'),
        sa.Column('estimated_value', sa.Numeric(precision=18, scale=2), nullable=True),
        sa.Column('official_link', sa.Text(), nullable=True),
        sa.Column('source', sa.String(length=50), nullable=True),
        sa.Column('mapping_version', sa.String(length=20), nullable=True),
        sa.Column('raw_payload', sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), 'postgresql'), nullable=True, comment='Original upstream record'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.PrimaryKeyConstraint('external_id')
    )
    op.create_index('idx_procurement_records_state_code', 'procurement_records', ['state_code'], unique=False)
    op.create_index('idx_procurement_records_municipality_code', 'procurement_records', ['municipality_code'], unique=False)
    op.create_index('idx_procurement_records_modality_code', 'procurement_records', ['modality_code'], unique=False)
    op.create_index('idx_procurement_records_publication_date', 'procurement_records', ['publication_date'], unique=False)

    # Create query_freshness table
    op.create_table(
        'query_freshness',
        sa.Column('cache_key', sa.String(length=80), nullable=False, comment='Hash of normalized geography + keyword'),
        sa.Column('signature', sa.Text(), nullable=True, comment='Normalized signature JSON'),
        sa.Column('last_refreshed_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('last_result_count', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.PrimaryKeyConstraint('cache_key')
    )


def downgrade() -> None:
    op.drop_table('query_freshness')
    op.drop_index('idx_procurement_records_publication_date', table_name='procurement_records')
    op.drop_index('idx_procurement_records_modality_code', table_name='procurement_records')
    op.drop_index('idx_procurement_records_municipality_code', table_name='procurement_records')
    op.drop_index('idx_procurement_records_state_code', table_name='procurement_records')
    op.drop_table('procurement_records')
