"""Create citation_references table for references imported with bundles

Revision ID: 002_create_citation_references_table
Revises: 001_create_stix_objects_table
Create Date: 2026-10-19
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '002_create_citation_references_table'
down_revision: Union[str, None] = '001_create_stix_objects_table'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """One row per citation, keyed by source_name."""
    op.create_table(
        'citation_references',
        sa.Column('source_name', sa.Text(), primary_key=True),
        sa.Column('reference', postgresql.JSONB(), nullable=False),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), server_default=sa.func.current_timestamp()),
        schema='vault'
    )


def downgrade() -> None:
    op.drop_table('citation_references', schema='vault')
