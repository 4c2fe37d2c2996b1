"""Greeting pool

Revision ID: 0002_greetings
Revises: 0001_baseline
Create Date: 2026-10-19

Adds the per-user and shared default greetings used for {{greeting}}.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '0002_greetings'
down_revision: Union[str, Sequence[str], None] = '0001_baseline'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create greetings table."""
    op.create_table(
        'greetings',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(36)),
        sa.Column('content', sa.String(200), nullable=False),
        sa.Column('is_default', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('idx_greetings_user_active', 'greetings', ['user_id', 'is_active'])


def downgrade() -> None:
    """Drop greetings table."""
    op.drop_index('idx_greetings_user_active', table_name='greetings')
    op.drop_table('greetings')
