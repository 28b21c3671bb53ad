"""
支付领域实体 - 交易账本行与退款
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from domain.common.exceptions import DomainValidationException
from domain.payment.money import fits_minor_units


class TransactionStatus(str, Enum):
    """交易状态枚举"""
    PENDING = "pending"                   # 已落账，等待渠道结果
    SUCCEEDED = "succeeded"               # 支付成功（终态）
    FAILED = "failed"                     # 支付失败（终态）
    REQUIRES_ACTION = "requires_action"   # 需要顾客额外操作（3DS、扫码）


class RefundStatus(str, Enum):
    """退款状态枚举"""
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class PaymentMethod(str, Enum):
    CARD = "card"
    QR = "qr"
    WALLET = "wallet"
    CASH = "cash"


TERMINAL_STATUSES = frozenset({TransactionStatus.SUCCEEDED, TransactionStatus.FAILED})


def _ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """确保时间为 UTC 时区"""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class CardDetails:
    """卡片展示信息，只保存后四位与品牌，绝不保存卡号或 CVV"""
    last4: Optional[str] = None
    brand: Optional[str] = None

    def __post_init__(self):
        if self.last4 is not None and (len(self.last4) != 4 or not self.last4.isdigit()):
            raise DomainValidationException("card last4 must be 4 digits", field="card_last4")


@dataclass
class Transaction:
    """
    交易账本行 - 每一次支付尝试一条记录

    业务规则：
    1. amount 为实际扣款金额（含小费），创建后不可变
    2. provider_transaction_id 一旦写入不再清除或替换
    3. 状态变化只能经由状态转换表（见 state.py）
    """

    id: str
    order_id: str
    method: PaymentMethod
    provider: str
    amount: Decimal
    currency: str
    status: TransactionStatus = TransactionStatus.PENDING
    tip_amount: Decimal = field(default_factory=lambda: Decimal("0"))
    idempotency_key: Optional[str] = None
    provider_transaction_id: Optional[str] = None
    provider_response: Optional[dict[str, Any]] = None
    card_last4: Optional[str] = None
    card_brand: Optional[str] = None
    failure_reason: Optional[str] = None
    review_required: bool = False
    review_reason: Optional[str] = None
    metadata: dict = field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        if self.amount <= 0:
            raise DomainValidationException(
                f"Transaction amount must be positive: {self.amount}",
                field="amount",
            )
        if not self.currency or len(self.currency) != 3 or not self.currency.isalpha():
            raise DomainValidationException(f"Invalid currency code: {self.currency}", field="currency")
        self.currency = self.currency.upper()
        for name in ("amount", "tip_amount"):
            if not fits_minor_units(getattr(self, name), self.currency):
                raise DomainValidationException(
                    f"{name} has more decimal places than {self.currency} allows",
                    field=name,
                )
        if self.metadata is None:
            self.metadata = {}
        self.created_at = _ensure_utc(self.created_at)
        self.updated_at = _ensure_utc(self.updated_at)

    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


@dataclass
class Refund:
    """退款实体 - 创建时为 pending，由渠道退款调用或退款回调推进到终态"""

    id: str
    transaction_id: str
    provider: str
    amount: Decimal
    currency: str
    status: RefundStatus = RefundStatus.PENDING
    provider_refund_id: Optional[str] = None
    reason: Optional[str] = None
    provider_response: Optional[dict[str, Any]] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        if self.amount <= 0:
            raise DomainValidationException(
                f"Refund amount must be positive: {self.amount}",
                field="amount",
            )
        if not fits_minor_units(self.amount, self.currency):
            raise DomainValidationException(
                f"Refund amount has more decimal places than {self.currency} allows",
                field="amount",
            )
        self.created_at = _ensure_utc(self.created_at)
        self.updated_at = _ensure_utc(self.updated_at)
