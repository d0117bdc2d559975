"""
Alembic migration: Create the JSON document table.

Every collection of the stock transfer core (orders, remit audits,
reconciliation documents, backorder queues) is stored in a single table keyed
by (collection, id). PostgreSQL stores the body as JSONB.

Revision ID: 001
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# Revision identifiers, used by Alembic
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create the documents table and its collection/updated_at index."""
    op.create_table(
        'documents',
        sa.Column(
            'collection',
            sa.String(length=64),
            nullable=False,
            comment='Logical collection name',
        ),
        sa.Column(
            'id',
            sa.String(length=128),
            nullable=False,
            comment='Document identifier, unique within the collection',
        ),
        sa.Column(
            'data',
            sa.JSON().with_variant(postgresql.JSONB(), 'postgresql'),
            nullable=False,
            comment='Document body',
        ),
        sa.Column(
            'version',
            sa.Integer(),
            nullable=False,
            server_default='1',
            comment='Number of committed writes',
        ),
        sa.Column(
            'created_at',
            sa.DateTime(timezone=True),
            server_default=sa.text('now()'),
            nullable=False,
            comment='Timestamp when record was created',
        ),
        sa.Column(
            'updated_at',
            sa.DateTime(timezone=True),
            server_default=sa.text('now()'),
            nullable=False,
            comment='Timestamp when record was last updated',
        ),
        sa.PrimaryKeyConstraint('collection', 'id', name='pk_documents'),
        comment='JSON documents of the stock transfer collections',
    )

    op.create_index(
        'ix_documents_collection_updated_at',
        'documents',
        ['collection', 'updated_at'],
        unique=False,
    )


def downgrade() -> None:
    """Drop the documents table."""
    op.drop_index('ix_documents_collection_updated_at', table_name='documents')
    op.drop_table('documents')
