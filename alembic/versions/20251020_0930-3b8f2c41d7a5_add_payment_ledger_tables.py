"""add_payment_ledger_tables

Revision ID: 3b8f2c41d7a5
Revises:
Create Date: 2025-10-20 09:30:12.418204

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '3b8f2c41d7a5'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Create payment_transactions table (append-only ledger)
    op.create_table(
        'payment_transactions',
        sa.Column('id', sa.String(length=36), nullable=False, comment='内部交易ID (uuid4)'),
        sa.Column('order_id', sa.String(length=100), nullable=False, comment='订单ID'),
        sa.Column('method', sa.String(length=20), nullable=False, comment='支付方式: card/qr/wallet/cash'),
        sa.Column('provider', sa.String(length=50), nullable=False, comment='支付提供商: stripe/square/mercadopago'),
        sa.Column('amount', sa.Numeric(precision=15, scale=2), nullable=False, comment='扣款金额'),
        sa.Column('tip_amount', sa.Numeric(precision=15, scale=2), nullable=False, server_default='0', comment='小费'),
        sa.Column('currency', sa.String(length=3), nullable=False, comment='货币代码 ISO-4217'),
        sa.Column('status', sa.String(length=30), nullable=False, server_default='pending', comment='交易状态: pending/succeeded/failed/requires_action'),
        sa.Column('provider_transaction_id', sa.String(length=200), nullable=True, comment='渠道交易ID，写入后不可清除'),
        sa.Column('provider_response', postgresql.JSONB(astext_type=sa.Text()), nullable=True, comment='渠道原始响应（最后一次写入）'),
        sa.Column('card_last4', sa.String(length=4), nullable=True),
        sa.Column('card_brand', sa.String(length=30), nullable=True),
        sa.Column('idempotency_key', sa.String(length=255), nullable=True, comment='幂等键'),
        sa.Column('failure_reason', sa.Text(), nullable=True, comment='失败原因'),
        sa.Column('review_required', sa.Boolean(), nullable=False, server_default='false', comment='是否需要人工复核'),
        sa.Column('review_reason', sa.String(length=100), nullable=True, comment='复核原因'),
        sa.Column('metadata', postgresql.JSONB(astext_type=sa.Text()), nullable=True, server_default=sa.text("'{}'::jsonb"), comment='扩展元数据'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='创建时间'),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='更新时间'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('provider', 'provider_transaction_id', name='uq_payment_transactions_provider_tx'),
    )
    op.create_index('ix_payment_transactions_order_id', 'payment_transactions', ['order_id'])
    op.create_index('ix_payment_transactions_provider', 'payment_transactions', ['provider'])
    op.create_index('ix_payment_transactions_status', 'payment_transactions', ['status'])
    op.create_index('ix_payment_transactions_idempotency_key', 'payment_transactions', ['idempotency_key'])
    op.create_index('ix_payment_transactions_created_at', 'payment_transactions', ['created_at'])
    op.create_index('ix_payment_transactions_order_created', 'payment_transactions', ['order_id', 'created_at'])

    # Create refunds table
    op.create_table(
        'refunds',
        sa.Column('id', sa.String(length=36), nullable=False, comment='内部退款ID，同时作为渠道幂等键'),
        sa.Column('transaction_id', sa.String(length=36), nullable=False, comment='关联交易ID'),
        sa.Column('provider', sa.String(length=50), nullable=False, comment='支付提供商'),
        sa.Column('provider_refund_id', sa.String(length=200), nullable=True, comment='渠道退款ID'),
        sa.Column('amount', sa.Numeric(precision=15, scale=2), nullable=False, comment='退款金额'),
        sa.Column('currency', sa.String(length=3), nullable=False, comment='货币代码'),
        sa.Column('status', sa.String(length=30), nullable=False, server_default='pending', comment='退款状态: pending/succeeded/failed'),
        sa.Column('reason', sa.String(length=255), nullable=True, comment='退款原因'),
        sa.Column('provider_response', postgresql.JSONB(astext_type=sa.Text()), nullable=True, comment='渠道原始响应'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='创建时间'),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='更新时间'),
        sa.ForeignKeyConstraint(['transaction_id'], ['payment_transactions.id'], ondelete='RESTRICT'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('provider', 'provider_refund_id', name='uq_refunds_provider_refund'),
    )
    op.create_index('ix_refunds_transaction_id', 'refunds', ['transaction_id'])
    op.create_index('ix_refunds_status', 'refunds', ['status'])


def downgrade() -> None:
    op.drop_index('ix_refunds_status', table_name='refunds')
    op.drop_index('ix_refunds_transaction_id', table_name='refunds')
    op.drop_table('refunds')

    op.drop_index('ix_payment_transactions_order_created', table_name='payment_transactions')
    op.drop_index('ix_payment_transactions_created_at', table_name='payment_transactions')
    op.drop_index('ix_payment_transactions_idempotency_key', table_name='payment_transactions')
    op.drop_index('ix_payment_transactions_status', table_name='payment_transactions')
    op.drop_index('ix_payment_transactions_provider', table_name='payment_transactions')
    op.drop_index('ix_payment_transactions_order_id', table_name='payment_transactions')
    op.drop_table('payment_transactions')
