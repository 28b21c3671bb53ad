"""
Operator-initiated refunds.

The refund row is written pending before the provider call and its id is
sent as the provider idempotency key, so a retried request never refunds
twice. Transport errors leave the row pending for the refund webhook.
"""
from __future__ import annotations

import uuid
from decimal import Decimal
from typing import Optional

from application.dtos.payments import RefundRequest
from application.services.provider_registry import ProviderRegistry
from core.logging_config import get_logger
from domain.payment.entity import Refund, RefundStatus, TransactionStatus
from domain.payment.exceptions import (
    InvalidRequest,
    RefundNotFound,
    TransactionNotFound,
    TransactionNotRefundable,
)
from domain.payment.money import fits_minor_units
from domain.payment.repository import RefundRepository, TransactionLedger


logger = get_logger(__name__)


class RefundService:
    def __init__(
        self,
        *,
        registry: ProviderRegistry,
        ledger: TransactionLedger,
        refunds: RefundRepository,
    ) -> None:
        self.registry = registry
        self.ledger = ledger
        self.refunds = refunds

    async def create_refund(
        self,
        transaction_id: str,
        amount: Optional[Decimal] = None,
        reason: Optional[str] = None,
    ) -> Refund:
        tx = await self.ledger.find_by_id(transaction_id)
        if tx is None:
            raise TransactionNotFound(transaction_id)
        if tx.status is not TransactionStatus.SUCCEEDED or not tx.provider_transaction_id:
            raise TransactionNotRefundable(transaction_id, status=tx.status.value)

        existing = await self.refunds.list_by_transaction(tx.id)
        refunded = sum((r.amount for r in existing if r.status is not RefundStatus.FAILED), Decimal("0"))
        remaining = tx.amount - refunded
        refund_amount = remaining if amount is None else amount
        if not fits_minor_units(refund_amount, tx.currency):
            raise InvalidRequest(
                f"Refund amount has more decimal places than {tx.currency} allows",
                field="amount",
                details={"amount": str(refund_amount), "currency": tx.currency},
            )
        if refund_amount <= 0 or refund_amount > remaining:
            raise InvalidRequest(
                f"Refund amount must be in (0, {remaining}]",
                field="amount",
                details={"amount": str(refund_amount), "remaining": str(remaining)},
            )

        adapter = self.registry.get(tx.provider)
        refund = await self.refunds.create_pending(
            Refund(
                id=str(uuid.uuid4()),
                transaction_id=tx.id,
                provider=tx.provider,
                amount=refund_amount,
                currency=tx.currency,
                reason=reason,
            )
        )
        logger.info(
            "payment_refund_request",
            refund_id=refund.id,
            transaction_id=tx.id,
            provider=tx.provider,
            amount=str(refund_amount),
        )

        result = await adapter.refund(
            RefundRequest(
                refund_id=refund.id,
                transaction_id=tx.id,
                provider_transaction_id=tx.provider_transaction_id,
                amount=refund_amount,
                currency=tx.currency,
                reason=reason,
            )
        )
        logger.info(
            "payment_refund_response",
            refund_id=refund.id,
            status=result.status,
            provider_refund_id=result.provider_refund_id,
            error=result.error_message,
        )

        outcome = await self.refunds.update_status(
            refund.id,
            RefundStatus(result.status),
            provider_refund_id=result.provider_refund_id,
            raw_response=result.raw_response,
        )
        return outcome.entity or refund

    async def list_refunds(self, transaction_id: str) -> list[Refund]:
        if await self.ledger.find_by_id(transaction_id) is None:
            raise TransactionNotFound(transaction_id)
        return await self.refunds.list_by_transaction(transaction_id)

    async def get_refund(self, refund_id: str) -> Refund:
        refund = await self.refunds.find_by_id(refund_id)
        if refund is None:
            raise RefundNotFound(refund_id)
        return refund
