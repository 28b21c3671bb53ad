"""Infrastructure models package exports."""
from .base import Base, metadata
from .payment import PaymentTransactionModel, RefundModel

__all__ = [
    "Base",
    "metadata",
    "PaymentTransactionModel",
    "RefundModel",
]
