"""Create stix_objects table for the versioned object store

Revision ID: 001_create_stix_objects_table
Revises: None
Create Date: 2026-10-19
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '001_create_stix_objects_table'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create the stix_objects table keyed by (stix_id, modified)."""

    op.execute("CREATE SCHEMA IF NOT EXISTS vault")

    op.create_table(
        'stix_objects',
        sa.Column('row_id', sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column('stix_id', sa.Text(), nullable=False),
        sa.Column('modified', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column('stix_type', sa.String(100), nullable=False),
        sa.Column('stix', postgresql.JSONB(), nullable=False),
        sa.Column('workspace', postgresql.JSONB(), nullable=False, server_default='{}'),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.func.current_timestamp()),
        sa.UniqueConstraint('stix_id', 'modified', name='unique_stix_version'),
        schema='vault'
    )

    op.create_index(
        'idx_stix_objects_stix_id',
        'stix_objects',
        ['stix_id', sa.text('modified DESC')],
        schema='vault'
    )
    op.create_index(
        'idx_stix_objects_type',
        'stix_objects',
        ['stix_type'],
        schema='vault'
    )


def downgrade() -> None:
    """Drop the stix_objects table."""
    op.drop_index('idx_stix_objects_type', table_name='stix_objects', schema='vault')
    op.drop_index('idx_stix_objects_stix_id', table_name='stix_objects', schema='vault')
    op.drop_table('stix_objects', schema='vault')
