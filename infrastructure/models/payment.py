"""
支付数据库模型 - SQLAlchemy ORM模型
注意：这是基础设施层的实现细节，不是领域模型
"""
from sqlalchemy import (
    Boolean, Column, String, Numeric, DateTime, Text, JSON,
    Index, ForeignKey, UniqueConstraint
)
from datetime import datetime, timezone

from .base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PaymentTransactionModel(Base):
    """
    交易账本表

    所有状态规则都在 domain.payment.state 中；这里只是表映射
    """
    __tablename__ = "payment_transactions"

    id = Column(String(36), primary_key=True, comment="内部交易ID (uuid4)")

    order_id = Column(String(100), nullable=False, index=True, comment="订单ID")
    method = Column(String(20), nullable=False, comment="支付方式: card/qr/wallet/cash")
    provider = Column(String(50), nullable=False, index=True, comment="支付提供商: stripe/square/mercadopago")

    # 金额信息（amount 为实际扣款金额，包含小费）
    amount = Column(Numeric(precision=15, scale=2), nullable=False, comment="扣款金额")
    tip_amount = Column(Numeric(precision=15, scale=2), nullable=False, default=0, comment="小费")
    currency = Column(String(3), nullable=False, comment="货币代码 ISO-4217")

    status = Column(
        String(30),
        nullable=False,
        default="pending",
        index=True,
        comment="交易状态: pending/succeeded/failed/requires_action"
    )

    provider_transaction_id = Column(String(200), nullable=True, comment="渠道交易ID，写入后不可清除")
    provider_response = Column(JSON, nullable=True, comment="渠道原始响应（最后一次写入）")

    # 卡片展示信息，只存后四位与品牌
    card_last4 = Column(String(4), nullable=True)
    card_brand = Column(String(30), nullable=True)

    idempotency_key = Column(String(255), nullable=True, index=True, comment="幂等键")
    failure_reason = Column(Text, nullable=True, comment="失败原因")

    review_required = Column(Boolean, nullable=False, default=False, comment="是否需要人工复核")
    review_reason = Column(String(100), nullable=True, comment="复核原因")

    extra_metadata = Column("metadata", JSON, nullable=True, comment="扩展元数据")

    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False, index=True, comment="创建时间")
    updated_at = Column(
        DateTime(timezone=True),
        default=_utcnow,
        onupdate=_utcnow,
        nullable=False,
        comment="更新时间"
    )

    __table_args__ = (
        UniqueConstraint("provider", "provider_transaction_id", name="uq_payment_transactions_provider_tx"),
        Index("ix_payment_transactions_order_created", "order_id", "created_at"),
    )

    def __repr__(self):
        return f"<PaymentTransaction(id={self.id}, order_id={self.order_id}, status={self.status})>"


class RefundModel(Base):
    """退款数据库模型"""
    __tablename__ = "refunds"

    id = Column(String(36), primary_key=True, comment="内部退款ID，同时作为渠道幂等键")
    transaction_id = Column(
        String(36),
        ForeignKey("payment_transactions.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
        comment="关联交易ID"
    )
    provider = Column(String(50), nullable=False, comment="支付提供商")
    provider_refund_id = Column(String(200), nullable=True, comment="渠道退款ID")

    amount = Column(Numeric(precision=15, scale=2), nullable=False, comment="退款金额")
    currency = Column(String(3), nullable=False, comment="货币代码")

    status = Column(String(30), nullable=False, default="pending", index=True, comment="退款状态: pending/succeeded/failed")
    reason = Column(String(255), nullable=True, comment="退款原因")
    provider_response = Column(JSON, nullable=True, comment="渠道原始响应")

    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False, comment="创建时间")
    updated_at = Column(
        DateTime(timezone=True),
        default=_utcnow,
        onupdate=_utcnow,
        nullable=False,
        comment="更新时间"
    )

    __table_args__ = (
        UniqueConstraint("provider", "provider_refund_id", name="uq_refunds_provider_refund"),
    )

    def __repr__(self):
        return f"<Refund(id={self.id}, transaction_id={self.transaction_id}, status={self.status})>"
