"""Initial numbering and billing schema

Revision ID: 001
Revises:
Create Date: 2025-09-01 08:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '001'
down_revision = None
branch_labels = None
depends_on = None


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def upgrade() -> None:
    # Create plans table
    op.create_table('plans',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('name', sa.String(length=64), nullable=False),
        sa.Column('deliveries_per_month', sa.Integer(), nullable=False),
        sa.Column('space_limit_cbm', sa.Numeric(10, 3), nullable=False),
        sa.Column('over_space_rate_eur', sa.Numeric(12, 2), nullable=False),
        sa.Column('operations_rate_eur', sa.Numeric(12, 2), nullable=False),
        sa.Column('promotional_price_eur', sa.Numeric(12, 2), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('name')
    )

    # Create setup_fees table
    op.create_table('setup_fees',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('suggested_amount_eur', sa.Numeric(12, 2), nullable=False),
        sa.Column('current_amount_eur', sa.Numeric(12, 2), nullable=True),
        sa.Column('valid_until', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_setup_fees_created_at', 'setup_fees', ['created_at'])

    # Create clients table
    op.create_table('clients',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('name', sa.String(length=128), nullable=False),
        sa.Column('country', sa.String(length=64), nullable=True),
        sa.Column('plan_id', sa.String(length=36), nullable=True),
        sa.Column('used_cbm', sa.Numeric(10, 3), nullable=False, server_default='0'),
        sa.Column('limit_cbm', sa.Numeric(10, 3), nullable=True),
        sa.Column('individual_over_space_rate_eur', sa.Numeric(12, 2), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['plan_id'], ['plans.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_clients_plan_id', 'clients', ['plan_id'])

    # Create warehouse_capacities table
    op.create_table('warehouse_capacities',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('client_id', sa.String(length=36), nullable=False),
        sa.Column('used_cbm', sa.Numeric(10, 3), nullable=False, server_default='0'),
        sa.Column('limit_cbm', sa.Numeric(10, 3), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['client_id'], ['clients.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('client_id')
    )

    # Create monthly_additional_charges table
    op.create_table('monthly_additional_charges',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('client_id', sa.String(length=36), nullable=False),
        sa.Column('month', sa.Integer(), nullable=False),
        sa.Column('year', sa.Integer(), nullable=False),
        sa.Column('over_space_amount_eur', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('additional_services_amount_eur', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('total_amount_eur', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('over_space_paid_cbm', sa.Numeric(10, 3), nullable=False, server_default='0'),
        sa.Column('over_space_charged_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('applied_charge_refs', sa.JSON(), nullable=False, server_default='[]'),
        sa.Column('closed_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['client_id'], ['clients.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('client_id', 'month', 'year', name='uq_monthly_charges_period'),
        sa.CheckConstraint('month BETWEEN 1 AND 12', name='ck_monthly_charges_month'),
        sa.CheckConstraint(
            'total_amount_eur = over_space_amount_eur + additional_services_amount_eur',
            name='ck_monthly_charges_total'
        )
    )
    op.create_index('ix_monthly_charges_period', 'monthly_additional_charges', ['year', 'month'])

    # Create sequence_counters table
    op.create_table('sequence_counters',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('series_tag', sa.String(length=16), nullable=False),
        sa.Column('period_key', sa.String(length=8), nullable=False),
        sa.Column('last_value', sa.Integer(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('series_tag', 'period_key', name='uq_sequence_series_period')
    )

    # Create numbering owner tables
    op.create_table('delivery_expected',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('client_id', sa.String(length=36), nullable=False),
        sa.Column('delivery_number', sa.String(length=32), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['client_id'], ['clients.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('delivery_number')
    )
    op.create_index('ix_delivery_expected_client_id', 'delivery_expected', ['client_id'])

    op.create_table('warehouse_orders',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('client_id', sa.String(length=36), nullable=False),
        sa.Column('internal_tracking_number', sa.String(length=32), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['client_id'], ['clients.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('internal_tracking_number')
    )
    op.create_index('ix_warehouse_orders_client_id', 'warehouse_orders', ['client_id'])

    op.create_table('shipment_orders',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('client_id', sa.String(length=36), nullable=False),
        sa.Column('country', sa.String(length=64), nullable=True),
        sa.Column('packing_order_number', sa.String(length=32), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['client_id'], ['clients.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('packing_order_number')
    )
    op.create_index('ix_shipment_orders_client_id', 'shipment_orders', ['client_id'])

    # Create proforma_invoices table
    op.create_table('proforma_invoices',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('client_id', sa.String(length=36), nullable=False),
        sa.Column('month', sa.Integer(), nullable=False),
        sa.Column('year', sa.Integer(), nullable=False),
        sa.Column('amount_eur', sa.Numeric(12, 2), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='PENDING'),
        sa.Column('due_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('invoice_number', sa.String(length=32), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['client_id'], ['clients.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('client_id', 'month', 'year', name='uq_proforma_period'),
        sa.UniqueConstraint('invoice_number')
    )


def downgrade() -> None:
    op.drop_table('proforma_invoices')
    op.drop_index('ix_shipment_orders_client_id', table_name='shipment_orders')
    op.drop_table('shipment_orders')
    op.drop_index('ix_warehouse_orders_client_id', table_name='warehouse_orders')
    op.drop_table('warehouse_orders')
    op.drop_index('ix_delivery_expected_client_id', table_name='delivery_expected')
    op.drop_table('delivery_expected')
    op.drop_table('sequence_counters')
    op.drop_index('ix_monthly_charges_period', table_name='monthly_additional_charges')
    op.drop_table('monthly_additional_charges')
    op.drop_table('warehouse_capacities')
    op.drop_index('ix_clients_plan_id', table_name='clients')
    op.drop_table('clients')
    op.drop_index('ix_setup_fees_created_at', table_name='setup_fees')
    op.drop_table('setup_fees')
    op.drop_table('plans')
