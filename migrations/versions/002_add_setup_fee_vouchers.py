"""Add setup fee vouchers

Revision ID: 002
Revises: 001
Create Date: 2025-09-15 09:30:00.000000

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '002'
down_revision = '001'
branch_labels = None
depends_on = None


def upgrade():
    """Create the setup_fee_vouchers table."""

    op.create_table('setup_fee_vouchers',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('code', sa.String(length=64), nullable=False),
        sa.Column('amount_eur', sa.Numeric(12, 2), nullable=False),
        sa.Column('is_one_time', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('used_by_client_id', sa.String(length=36), nullable=True),
        sa.Column('used_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['used_by_client_id'], ['clients.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('code', name='uq_setup_fee_vouchers_code'),
        sa.CheckConstraint('amount_eur > 0', name='ck_setup_fee_vouchers_amount')
    )


def downgrade():
    """Drop the setup_fee_vouchers table."""

    op.drop_table('setup_fee_vouchers')
