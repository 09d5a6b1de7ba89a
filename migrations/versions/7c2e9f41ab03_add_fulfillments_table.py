"""Add fulfillments table

Revision ID: 7c2e9f41ab03
Revises:
Create Date: 2026-10-18 12:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '7c2e9f41ab03'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table('fulfillments',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('checkout_session_id', sa.String(length=255), nullable=True),
        sa.Column('verification_session_id', sa.String(length=255), nullable=True),
        sa.Column('customer_email', sa.String(length=255), nullable=True),
        sa.Column('product_id', sa.String(length=255), nullable=False),
        sa.Column('promo_code', sa.String(length=255), nullable=True),
        sa.Column('status', sa.String(length=50), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('checkout_session_id'),
        sa.UniqueConstraint('verification_session_id')
    )
    op.create_index('ix_fulfillments_status', 'fulfillments', ['status'])
    op.create_index('ix_fulfillments_updated_at', 'fulfillments', ['updated_at'])


def downgrade():
    op.drop_index('ix_fulfillments_updated_at', table_name='fulfillments')
    op.drop_index('ix_fulfillments_status', table_name='fulfillments')
    op.drop_table('fulfillments')
