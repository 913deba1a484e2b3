"""create_payment_ledger_tables

Revision ID: 3b6f1c2a9d41
Revises:
Create Date: 2025-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '3b6f1c2a9d41'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # orders：订单聚合根，version 用于条件更新（乐观锁）
    op.create_table(
        'orders',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('order_number', sa.String(length=64), nullable=False, comment='订单号 ORD_...'),
        sa.Column('customer_id', sa.String(length=100), nullable=False, comment='客户ID'),
        sa.Column('amount', sa.Numeric(precision=15, scale=2), nullable=False, comment='订单金额'),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='USD', comment='货币代码 ISO-4217'),
        sa.Column('authorized_amount', sa.Numeric(precision=15, scale=2), nullable=False, server_default='0', comment='已授权金额'),
        sa.Column('captured_amount', sa.Numeric(precision=15, scale=2), nullable=False, server_default='0', comment='已捕获金额'),
        sa.Column('refunded_amount', sa.Numeric(precision=15, scale=2), nullable=False, server_default='0', comment='已退款金额'),
        sa.Column('status', sa.String(length=32), nullable=False, server_default='created', comment='订单状态'),
        sa.Column('description', sa.String(length=500), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='创建时间'),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='更新时间'),
        sa.PrimaryKeyConstraint('id', name='pk_orders'),
        sa.UniqueConstraint('order_number', name='uq_orders_order_number'),
    )
    op.create_index('ix_orders_customer_id', 'orders', ['customer_id'], unique=False)
    op.create_index('ix_orders_status', 'orders', ['status'], unique=False)
    op.create_index('ix_orders_customer_status', 'orders', ['customer_id', 'status'], unique=False)
    op.create_index('ix_orders_created_at', 'orders', ['created_at'], unique=False)

    # transactions：只追加的交易流水，不级联删除
    op.create_table(
        'transactions',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('reference', sa.String(length=64), nullable=False, comment='对外交易编号 TXN_...'),
        sa.Column('order_id', sa.String(length=36), nullable=False),
        sa.Column('parent_id', sa.String(length=36), nullable=True, comment='被引用的前序交易'),
        sa.Column('type', sa.String(length=16), nullable=False, comment='purchase/authorize/capture/void/refund'),
        sa.Column('amount', sa.Numeric(precision=15, scale=2), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='pending'),
        sa.Column('gateway_reference', sa.String(length=64), nullable=True, comment='网关交易ID'),
        sa.Column('response_code', sa.String(length=16), nullable=True),
        sa.Column('response_message', sa.Text(), nullable=True),
        sa.Column('error_kind', sa.String(length=32), nullable=True),
        sa.Column('requires_reconciliation', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('reason', sa.String(length=500), nullable=True, comment='退款原因'),
        sa.Column('settled_at', sa.DateTime(timezone=True), nullable=True, comment='网关报告的结算时间'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('finalized_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id'], name='fk_transactions_order_id_orders'),
        sa.ForeignKeyConstraint(['parent_id'], ['transactions.id'], name='fk_transactions_parent_id_transactions'),
        sa.PrimaryKeyConstraint('id', name='pk_transactions'),
        sa.UniqueConstraint('reference', name='uq_transactions_reference'),
    )
    op.create_index('ix_transactions_order_id', 'transactions', ['order_id'], unique=False)
    op.create_index('ix_transactions_status', 'transactions', ['status'], unique=False)
    op.create_index('ix_transactions_gateway_reference', 'transactions', ['gateway_reference'], unique=False)
    op.create_index('ix_transactions_order_created', 'transactions', ['order_id', 'created_at'], unique=False)
    op.create_index('ix_transactions_reconciliation', 'transactions', ['requires_reconciliation'], unique=False)

    # payment_methods：仅保存卡号后四位/有效期/持卡人
    op.create_table(
        'payment_methods',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('order_id', sa.String(length=36), nullable=False),
        sa.Column('last_four', sa.String(length=4), nullable=False),
        sa.Column('expiration_month', sa.Integer(), nullable=False),
        sa.Column('expiration_year', sa.Integer(), nullable=False),
        sa.Column('cardholder_name', sa.String(length=100), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id'], name='fk_payment_methods_order_id_orders'),
        sa.PrimaryKeyConstraint('id', name='pk_payment_methods'),
        sa.UniqueConstraint('order_id', name='uq_payment_methods_order_id'),
    )

    # idempotency_records：主键冲突即并发认领失败
    op.create_table(
        'idempotency_records',
        sa.Column('key', sa.String(length=255), nullable=False),
        sa.Column('operation', sa.String(length=16), nullable=False),
        sa.Column('request_hash', sa.String(length=64), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='in_progress'),
        sa.Column('transaction_id', sa.String(length=36), nullable=True),
        sa.Column('response_body', sa.Text(), nullable=True, comment='结果快照 JSON'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('key', name='pk_idempotency_records'),
    )
    op.create_index('ix_idempotency_records_expires_at', 'idempotency_records', ['expires_at'], unique=False)


def downgrade() -> None:
    op.drop_index('ix_idempotency_records_expires_at', table_name='idempotency_records')
    op.drop_table('idempotency_records')
    op.drop_table('payment_methods')
    op.drop_index('ix_transactions_reconciliation', table_name='transactions')
    op.drop_index('ix_transactions_order_created', table_name='transactions')
    op.drop_index('ix_transactions_gateway_reference', table_name='transactions')
    op.drop_index('ix_transactions_status', table_name='transactions')
    op.drop_index('ix_transactions_order_id', table_name='transactions')
    op.drop_table('transactions')
    op.drop_index('ix_orders_created_at', table_name='orders')
    op.drop_index('ix_orders_status', table_name='orders')
    op.drop_index('ix_orders_customer_status', table_name='orders')
    op.drop_index('ix_orders_customer_id', table_name='orders')
    op.drop_table('orders')
