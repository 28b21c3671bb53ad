"""
支付领域异常 - 每个异常对应 PaymentCode 中的一个业务码
"""
from __future__ import annotations

from typing import Any, Optional

from domain.common.exceptions import BusinessException
from shared.codes.payment_codes import PaymentCode


class InvalidRequest(BusinessException):
    """请求参数不合法（在任何账本写入之前抛出）"""

    def __init__(self, message: str, *, field: Optional[str] = None, details: Optional[dict] = None):
        super().__init__(
            code=PaymentCode.INVALID_REQUEST,
            message=message,
            error_type="InvalidRequest",
            details=details,
            field=field,
        )


class UnknownProvider(BusinessException):
    def __init__(self, provider: str):
        super().__init__(
            code=PaymentCode.UNKNOWN_PROVIDER,
            message=f"Unknown payment provider: {provider}",
            error_type="UnknownProvider",
            details={"provider": provider},
            field="provider",
        )
        self.provider = provider


class TransportError(BusinessException):
    """网络/超时/5xx 等可重试错误，仅在重试循环内部使用"""

    def __init__(self, message: str, *, provider: str, provider_code: Optional[str] = None):
        super().__init__(
            code=PaymentCode.TRANSPORT_ERROR,
            message=message,
            error_type="TransportError",
            details={"provider": provider, "provider_code": provider_code},
        )


class ProviderDeclined(BusinessException):
    """渠道明确拒绝（作为数据返回给调用方，不由编排器抛出）"""

    def __init__(self, message: str, *, provider: str, provider_code: Optional[str] = None):
        super().__init__(
            code=PaymentCode.PROVIDER_DECLINED,
            message=message,
            error_type="ProviderDeclined",
            details={"provider": provider, "provider_code": provider_code},
        )


class SignatureInvalid(BusinessException):
    def __init__(self, message: str = "Invalid webhook signature", *, provider: str):
        super().__init__(
            code=PaymentCode.SIGNATURE_INVALID,
            message=message,
            error_type="SignatureInvalid",
            details={"provider": provider},
        )


class ReconciliationConflict(BusinessException):
    """账本已成功但渠道通知失败：保留成功状态，标记人工复核"""

    def __init__(self, transaction_id: str, *, ledger_status: str, event_status: str):
        super().__init__(
            code=PaymentCode.RECONCILIATION_CONFLICT,
            message="Webhook outcome conflicts with ledger",
            error_type="ReconciliationConflict",
            details={
                "transaction_id": transaction_id,
                "ledger_status": ledger_status,
                "event_status": event_status,
            },
        )


class LedgerWriteFailure(BusinessException):
    """渠道可能已扣款但账本写入失败 - 需要人工介入"""

    def __init__(
        self,
        transaction_id: str,
        *,
        provider_transaction_id: Optional[str] = None,
        reason: Optional[str] = None,
    ):
        super().__init__(
            code=PaymentCode.LEDGER_WRITE_FAILURE,
            message="Failed to persist payment outcome",
            error_type="LedgerWriteFailure",
            details={
                "transaction_id": transaction_id,
                "provider_transaction_id": provider_transaction_id,
                "reason": reason,
            },
        )
        self.transaction_id = transaction_id
        self.provider_transaction_id = provider_transaction_id


class DuplicateTransaction(BusinessException):
    def __init__(self, transaction_id: str):
        super().__init__(
            code=PaymentCode.DUPLICATE_TRANSACTION,
            message=f"Transaction {transaction_id} already exists",
            error_type="DuplicateTransaction",
            details={"transaction_id": transaction_id},
        )


class IdempotencyUnavailable(BusinessException):
    """幂等存储不可用时拒绝扣款（fail-closed）"""

    def __init__(self, message: str = "Idempotency store unavailable", *, key: Optional[str] = None):
        super().__init__(
            code=PaymentCode.IDEMPOTENCY_UNAVAILABLE,
            message=message,
            error_type="IdempotencyUnavailable",
            details={"idempotency_key": key} if key else None,
        )


class PaymentInProgress(BusinessException):
    def __init__(self, key: str, *, transaction_id: Optional[str] = None):
        super().__init__(
            code=PaymentCode.PAYMENT_IN_PROGRESS,
            message="A payment with this idempotency key is still in progress",
            error_type="PaymentInProgress",
            details={"idempotency_key": key, "transaction_id": transaction_id},
        )


class OrderStatusSyncFailure(BusinessException):
    """扣款成功但订单状态未能更新，携带成功的响应"""

    def __init__(self, response: Any, *, order_id: str, reason: Optional[str] = None):
        super().__init__(
            code=PaymentCode.ORDER_STATUS_SYNC_FAILURE,
            message="Payment succeeded but order status could not be updated",
            error_type="OrderStatusSyncFailure",
            details={"order_id": order_id, "reason": reason},
        )
        self.response = response


class TransactionNotFound(BusinessException):
    def __init__(self, transaction_id: str):
        super().__init__(
            code=PaymentCode.TRANSACTION_NOT_FOUND,
            message=f"Transaction not found: {transaction_id}",
            error_type="TransactionNotFound",
            details={"transaction_id": transaction_id},
        )


class TransactionNotRefundable(BusinessException):
    def __init__(self, transaction_id: str, *, status: str):
        super().__init__(
            code=PaymentCode.TRANSACTION_NOT_REFUNDABLE,
            message=f"Transaction in status {status} cannot be refunded",
            error_type="TransactionNotRefundable",
            details={"transaction_id": transaction_id, "status": status},
        )


class TransactionNotCancellable(BusinessException):
    """只有 pending / requires_action 的交易可以取消"""

    def __init__(self, transaction_id: str, *, status: str):
        super().__init__(
            code=PaymentCode.TRANSACTION_NOT_CANCELLABLE,
            message=f"Transaction in status {status} cannot be cancelled",
            error_type="TransactionNotCancellable",
            details={"transaction_id": transaction_id, "status": status},
        )


class RefundNotFound(BusinessException):
    def __init__(self, refund_id: str):
        super().__init__(
            code=PaymentCode.REFUND_NOT_FOUND,
            message=f"Refund not found: {refund_id}",
            error_type="RefundNotFound",
            details={"refund_id": refund_id},
        )
