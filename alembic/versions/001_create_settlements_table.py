"""Create settlements table for stablecoin-to-fiat payouts.

Revision ID: 001_create_settlements_table
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '001_create_settlements_table'
down_revision = None
branch_labels = None
depends_on = None

settlement_status_enum = sa.Enum(
    'pending', 'processing', 'completed', 'failed',
    name='settlement_status_enum'
)
settlement_provider_enum = sa.Enum(
    'bank_api', 'stripe', 'wise', 'paypal', 'other',
    name='settlement_provider_enum'
)


def upgrade() -> None:
    op.create_table(
        'settlements',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('payment_request_id', sa.String(length=36), nullable=False, comment='One settlement per payment'),
        sa.Column('merchant_id', sa.String(length=36), nullable=False),
        sa.Column('amount', sa.Numeric(precision=19, scale=4), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('source_currency', sa.String(length=10), nullable=True),
        sa.Column('exchange_rate', sa.Numeric(precision=19, scale=8), nullable=True),
        sa.Column('fee_amount', sa.Numeric(precision=19, scale=8), nullable=False, server_default='0'),
        sa.Column('fee_percentage', sa.Numeric(precision=5, scale=4), nullable=True),
        sa.Column('net_amount', sa.Numeric(precision=19, scale=8), nullable=False),
        sa.Column('bank_account_number', sa.String(length=50), nullable=True),
        sa.Column('bank_routing_number', sa.String(length=50), nullable=True),
        sa.Column('bank_swift_code', sa.String(length=11), nullable=True),
        sa.Column('bank_iban', sa.String(length=34), nullable=True),
        sa.Column('bank_account_holder_name', sa.String(length=255), nullable=True),
        sa.Column('bank_name', sa.String(length=255), nullable=True),
        sa.Column('batch_id', sa.String(length=36), nullable=True),
        sa.Column('batch_sequence', sa.Integer(), nullable=True),
        sa.Column('provider', settlement_provider_enum, nullable=True, server_default='bank_api'),
        sa.Column('provider_reference', sa.String(length=255), nullable=True),
        sa.Column('settlement_reference', sa.String(length=255), nullable=True),
        sa.Column('settlement_receipt', sa.String(length=255), nullable=True),
        sa.Column('status', settlement_status_enum, nullable=False, server_default='pending'),
        sa.Column('failure_reason', sa.Text(), nullable=True),
        sa.Column('retry_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_retries', sa.Integer(), nullable=False, server_default='3'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
        sa.Column('settled_at', sa.DateTime(), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('payment_request_id'),
        sa.UniqueConstraint('settlement_receipt'),
        sa.Index('ix_settlements_merchant_id', 'merchant_id'),
        sa.Index('ix_settlements_status', 'status'),
        sa.Index('ix_settlements_batch_id', 'batch_id'),
        sa.Index('ix_settlements_settled_at', 'settled_at'),
        sa.Index('ix_settlements_status_created_at', 'status', 'created_at'),
    )


def downgrade() -> None:
    op.drop_table('settlements')
    settlement_status_enum.drop(op.get_bind(), checkfirst=True)
    settlement_provider_enum.drop(op.get_bind(), checkfirst=True)
