"""
Payment specific codes and provider status mapping.
"""
from __future__ import annotations

from enum import IntEnum


class PaymentCode(IntEnum):
    # Generic success
    SUCCESS = 0

    # Orchestration errors (61xxx)
    INVALID_REQUEST = 61000
    UNKNOWN_PROVIDER = 61001
    TRANSPORT_ERROR = 61002
    PROVIDER_DECLINED = 61003
    SIGNATURE_INVALID = 61004
    RECONCILIATION_CONFLICT = 61005
    LEDGER_WRITE_FAILURE = 61006
    DUPLICATE_TRANSACTION = 61007
    IDEMPOTENCY_UNAVAILABLE = 61008
    PAYMENT_IN_PROGRESS = 61009
    ORDER_STATUS_SYNC_FAILURE = 61010
    TRANSACTION_NOT_FOUND = 61011
    TRANSACTION_NOT_REFUNDABLE = 61012
    TRANSACTION_NOT_CANCELLABLE = 61013
    REFUND_NOT_FOUND = 61014


# Provider -> internal status. Values are outcome kinds understood by
# ProviderOutcome: succeeded / pending / requires_action / declined.
PROVIDER_STATUS_TO_INTERNAL = {
    "stripe": {
        "succeeded": "succeeded",
        "processing": "pending",
        "requires_capture": "pending",
        "requires_confirmation": "pending",
        "requires_action": "requires_action",
        "requires_payment_method": "declined",
        "canceled": "declined",
    },
    "square": {
        "COMPLETED": "succeeded",
        "APPROVED": "pending",
        "PENDING": "pending",
        "FAILED": "declined",
        "CANCELED": "declined",
    },
    "mercadopago": {
        "approved": "succeeded",
        "authorized": "pending",
        "in_process": "pending",
        "in_mediation": "pending",
        "pending": "requires_action",
        "rejected": "declined",
        "cancelled": "declined",
    },
}

# Provider refund status -> internal refund status.
PROVIDER_REFUND_STATUS_TO_INTERNAL = {
    "stripe": {
        "succeeded": "succeeded",
        "pending": "pending",
        "requires_action": "pending",
        "failed": "failed",
        "canceled": "failed",
    },
    "square": {
        "COMPLETED": "succeeded",
        "PENDING": "pending",
        "REJECTED": "failed",
        "FAILED": "failed",
    },
    "mercadopago": {
        "approved": "succeeded",
        "in_process": "pending",
        "rejected": "failed",
        "cancelled": "failed",
    },
}
