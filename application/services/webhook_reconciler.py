"""
Webhook reconciler: verified provider notifications -> ledger state merges.

Both the synchronous processing path and this path write through the same
compare-and-set transition table, so deliveries may arrive in any order and
any number of times.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from application.dtos.payments import ReconciliationResult, WebhookEvent
from application.ports.order_status import OrderStatusPort
from application.services.provider_registry import ProviderRegistry
from core.logging_config import get_logger
from domain.payment.entity import Refund, RefundStatus, Transaction, TransactionStatus
from domain.payment.exceptions import ReconciliationConflict, SignatureInvalid
from domain.payment.repository import RefundRepository, TransactionLedger
from domain.payment.state import TransitionOutcome


logger = get_logger(__name__)

CONFLICT_REVIEW_REASON = "webhook_failed_after_success"
REFUND_CONFLICT_REVIEW_REASON = "refund_webhook_conflict"
ORDER_SYNC_REVIEW_REASON = "order_status_sync_failed"


class WebhookReconciler:
    def __init__(
        self,
        *,
        registry: ProviderRegistry,
        ledger: TransactionLedger,
        refunds: RefundRepository,
        order_status: OrderStatusPort,
    ) -> None:
        self.registry = registry
        self.ledger = ledger
        self.refunds = refunds
        self.order_status = order_status

    async def handle(self, provider: str, headers: dict[str, Any], body: bytes) -> ReconciliationResult:
        adapter = self.registry.get(provider)
        try:
            event = adapter.parse_webhook(headers, body)
        except SignatureInvalid as exc:
            logger.warning("webhook_signature_invalid", provider=adapter.provider, reason=exc.message)
            raise
        logger.info(
            "payment_webhook_parsed",
            provider=event.provider,
            event_type=event.type,
            event_id=event.id,
            category=event.category,
        )
        return await self.apply(event)

    async def apply(self, event: WebhookEvent) -> ReconciliationResult:
        if event.category == "payment" and event.status:
            return await self._apply_payment(event)
        if event.category == "refund" and event.status:
            return await self._apply_refund(event)
        logger.info("webhook_event_ignored", provider=event.provider, event_type=event.type, event_id=event.id)
        return self._result(event, "ignored")

    # ------------------------------------------------------------ payments

    async def _locate_transaction(self, event: WebhookEvent) -> Optional[Transaction]:
        if event.provider_transaction_id:
            tx = await self.ledger.find_by_provider_transaction_id(event.provider, event.provider_transaction_id)
            if tx is not None:
                return tx
        # Fallbacks: ids we embedded in provider metadata
        if event.transaction_id:
            tx = await self.ledger.find_by_id(event.transaction_id)
            if tx is not None and tx.provider == event.provider:
                return tx
        if event.order_id:
            tx = await self.ledger.find_by_order_id(event.order_id)
            if tx is not None and tx.provider == event.provider:
                return tx
        return None

    async def _apply_payment(self, event: WebhookEvent) -> ReconciliationResult:
        tx = await self._locate_transaction(event)
        if tx is None:
            logger.warning(
                "webhook_transaction_not_found",
                provider=event.provider,
                event_id=event.id,
                provider_transaction_id=event.provider_transaction_id,
                order_id=event.order_id,
            )
            return self._result(event, "ignored")

        target = TransactionStatus(event.status)
        result = await self.ledger.update_status(
            tx.id,
            target,
            provider_transaction_id=event.provider_transaction_id,
            raw_response=event.data,
            failure_reason=event.failure_reason if target is TransactionStatus.FAILED else None,
        )

        if result.outcome is TransitionOutcome.CONFLICT:
            conflict = ReconciliationConflict(
                tx.id,
                ledger_status=result.previous_status or tx.status.value,
                event_status=target.value,
            )
            logger.warning(
                "reconciliation_conflict",
                provider=event.provider,
                event_id=event.id,
                error_code=int(conflict.code),
                **conflict.details,
            )
            await self._flag_for_review(tx.id, CONFLICT_REVIEW_REASON)
            return self._result(event, "conflict", transaction_id=tx.id, status=result.previous_status)

        if result.applied:
            logger.info(
                "webhook_transition_applied",
                transaction_id=tx.id,
                previous_status=result.previous_status,
                status=target.value,
                event_id=event.id,
            )
            if target is TransactionStatus.SUCCEEDED:
                await self._mark_order_paid(tx)
            return self._result(event, "applied", transaction_id=tx.id, status=target.value)

        logger.info("webhook_transition_noop", transaction_id=tx.id, status=result.previous_status, event_id=event.id)
        return self._result(event, "noop", transaction_id=tx.id, status=result.previous_status)

    async def _mark_order_paid(self, tx: Transaction) -> None:
        try:
            await self.order_status.mark_order_paid(tx.order_id, tx.id, datetime.now(timezone.utc))
        except Exception as exc:
            # The event is still acknowledged; replays would be no-ops and never retry this
            logger.error(
                "reconciliation_required",
                transaction_id=tx.id,
                order_id=tx.order_id,
                error=str(exc),
                exc_info=True,
            )
            await self._flag_for_review(tx.id, ORDER_SYNC_REVIEW_REASON)
            return
        logger.info("order_marked_paid", transaction_id=tx.id, order_id=tx.order_id, source="webhook")

    async def _flag_for_review(self, transaction_id: str, reason: str) -> None:
        # The event is acknowledged either way; the log line is what an operator sees
        try:
            await self.ledger.flag_for_review(transaction_id, reason)
        except Exception:
            logger.critical("ledger_review_flag_failed", transaction_id=transaction_id, reason=reason, exc_info=True)

    # ------------------------------------------------------------- refunds

    async def _locate_refund(self, event: WebhookEvent) -> Optional[Refund]:
        if event.provider_refund_id:
            refund = await self.refunds.find_by_provider_refund_id(event.provider, event.provider_refund_id)
            if refund is not None:
                return refund
        if event.refund_id:
            refund = await self.refunds.find_by_id(event.refund_id)
            if refund is not None and refund.provider == event.provider:
                return refund
        if event.provider_transaction_id:
            return await self._match_unacknowledged_refund(event)
        return None

    async def _match_unacknowledged_refund(self, event: WebhookEvent) -> Optional[Refund]:
        """Pending refund whose provider call never returned an id (transport error)."""
        tx = await self.ledger.find_by_provider_transaction_id(event.provider, event.provider_transaction_id)
        if tx is None:
            return None
        candidates = [
            r for r in await self.refunds.list_by_transaction(tx.id)
            if r.status is RefundStatus.PENDING
            and r.provider_refund_id is None
            and (event.amount is None or r.amount == event.amount)
        ]
        if not candidates:
            return None
        if event.amount is None and len(candidates) > 1:
            logger.warning(
                "webhook_refund_ambiguous",
                provider=event.provider,
                event_id=event.id,
                transaction_id=tx.id,
                candidates=len(candidates),
            )
            return None
        # Equal amounts are interchangeable; settle the oldest first
        refund = candidates[0]
        logger.info(
            "webhook_refund_matched_by_payment",
            refund_id=refund.id,
            transaction_id=tx.id,
            provider_refund_id=event.provider_refund_id,
        )
        return refund

    async def _apply_refund(self, event: WebhookEvent) -> ReconciliationResult:
        refund = await self._locate_refund(event)
        if refund is None:
            logger.warning(
                "webhook_refund_not_found",
                provider=event.provider,
                event_id=event.id,
                provider_refund_id=event.provider_refund_id,
            )
            return self._result(event, "ignored")

        target = RefundStatus(event.status)
        result = await self.refunds.update_status(
            refund.id,
            target,
            provider_refund_id=event.provider_refund_id,
            raw_response=event.data,
        )
        if result.outcome is TransitionOutcome.CONFLICT:
            logger.warning(
                "reconciliation_conflict",
                provider=event.provider,
                event_id=event.id,
                refund_id=refund.id,
                transaction_id=refund.transaction_id,
                ledger_status=result.previous_status,
                event_status=target.value,
            )
            await self._flag_for_review(refund.transaction_id, REFUND_CONFLICT_REVIEW_REASON)
            return self._result(event, "conflict", refund_id=refund.id, status=result.previous_status)

        outcome = "applied" if result.applied else "noop"
        logger.info(
            "webhook_refund_" + outcome,
            refund_id=refund.id,
            previous_status=result.previous_status,
            status=target.value,
        )
        status = target.value if result.applied else result.previous_status
        return self._result(event, outcome, refund_id=refund.id, transaction_id=refund.transaction_id, status=status)

    @staticmethod
    def _result(
        event: WebhookEvent,
        outcome: str,
        *,
        transaction_id: Optional[str] = None,
        refund_id: Optional[str] = None,
        status: Optional[str] = None,
    ) -> ReconciliationResult:
        return ReconciliationResult(
            outcome=outcome,
            provider=event.provider,
            event_id=event.id,
            event_type=event.type,
            transaction_id=transaction_id,
            refund_id=refund_id,
            status=status,
        )
