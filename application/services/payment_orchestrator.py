"""
Payment orchestrator: at-most-once charge execution.

Flow for one logical payment:
validate -> idempotency lookup -> in-flight reservation -> pending ledger row
-> bounded retry loop against the provider adapter -> final ledger write
-> idempotent cache -> "mark order paid".

Depends only on application ports; adapters, the ledger and the idempotency
store are injected from the composition root (api/dependencies.py).
"""
from __future__ import annotations

import asyncio
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

from pydantic import ValidationError
from structlog.contextvars import bound_contextvars
from tenacity import AsyncRetrying, RetryCallState, retry_if_result, stop_after_attempt, wait_incrementing

from application.dtos.payments import (
    ChargeRequest,
    OutcomeKind,
    PaymentRequest,
    PaymentResponse,
    ProviderOutcome,
)
from application.ports.idempotency import IdempotencyStore
from application.ports.order_status import OrderStatusPort
from application.ports.payment_gateway import PaymentGateway
from application.services.provider_registry import ProviderRegistry
from core.logging_config import get_logger
from core.settings import PaymentSettings, payment_settings
from core.timing import Stopwatch
from domain.common.exceptions import BusinessException
from domain.payment.entity import TERMINAL_STATUSES, CardDetails, Transaction, TransactionStatus
from domain.payment.exceptions import (
    IdempotencyUnavailable,
    InvalidRequest,
    LedgerWriteFailure,
    OrderStatusSyncFailure,
    PaymentInProgress,
    ProviderDeclined,
    TransactionNotCancellable,
    TransactionNotFound,
    TransportError,
)
from domain.payment.repository import TransactionLedger
from domain.payment.state import TransitionResult


logger = get_logger(__name__)

SleepFn = Callable[[float], Awaitable[Any]]

ORDER_SYNC_REVIEW_REASON = "order_status_sync_failed"
SYNC_CONFLICT_REVIEW_REASON = "sync_result_conflict"
CANCELLED_REASON = "cancelled"

_OUTCOME_TO_STATUS = {
    OutcomeKind.SUCCEEDED: TransactionStatus.SUCCEEDED,
    OutcomeKind.PENDING: TransactionStatus.PENDING,
    OutcomeKind.REQUIRES_ACTION: TransactionStatus.REQUIRES_ACTION,
    OutcomeKind.DECLINED: TransactionStatus.FAILED,
    OutcomeKind.TRANSPORT_ERROR: TransactionStatus.FAILED,
}


def response_from_transaction(tx: Transaction) -> PaymentResponse:
    requires_action = None
    if tx.status is TransactionStatus.REQUIRES_ACTION:
        # Stored with the provider response when the charge settled
        requires_action = (tx.provider_response or {}).get("requires_action") or (tx.metadata or {}).get(
            "requires_action"
        )
    return PaymentResponse(
        transaction_id=tx.id,
        status=tx.status,
        amount=tx.amount,
        provider_transaction_id=tx.provider_transaction_id,
        error=tx.failure_reason if tx.status is TransactionStatus.FAILED else None,
        requires_action=requires_action,
    )


class PaymentOrchestrator:
    def __init__(
        self,
        *,
        registry: ProviderRegistry,
        ledger: TransactionLedger,
        idempotency: IdempotencyStore,
        order_status: OrderStatusPort,
        settings: Optional[PaymentSettings] = None,
        sleep: Optional[SleepFn] = None,
        poll_sleep: Optional[SleepFn] = None,
    ) -> None:
        cfg = settings or payment_settings
        self.registry = registry
        self.ledger = ledger
        self.idempotency = idempotency
        self.order_status = order_status

        self.max_attempts = max(1, int(cfg.retry.max_attempts))
        self.base_delay = float(cfg.retry.base_delay)
        self.attempt_timeout = float(cfg.timeouts.attempt)
        self.cache_ttl = int(cfg.idempotency.ttl_seconds)
        self.in_flight_ttl = int(cfg.idempotency.in_flight_ttl_seconds)
        self.wait_timeout = float(cfg.idempotency.wait_timeout)
        self.poll_interval = float(cfg.idempotency.poll_interval)

        # Backoff sleep is injectable so the schedule can be observed in tests
        self._sleep: SleepFn = sleep or asyncio.sleep
        self._poll_sleep: SleepFn = poll_sleep or asyncio.sleep

    # ------------------------------------------------------------------ public

    async def process_payment(self, request: PaymentRequest | dict[str, Any]) -> PaymentResponse:
        req = self._validate(request)
        adapter = self.registry.get(req.provider)
        key = req.idempotency_key or str(uuid.uuid4())

        with bound_contextvars(idempotency_key=key, provider=adapter.provider, order_id=req.order_id):
            with Stopwatch() as sw:
                response = await self._process(req, adapter, key)
            logger.info(
                "payment_processed",
                transaction_id=response.transaction_id,
                status=response.status.value,
                duration_ms=sw.elapsed_ms,
            )
            return response

    async def get_transaction(self, transaction_id: str) -> Transaction:
        tx = await self.ledger.find_by_id(transaction_id)
        if tx is None:
            raise TransactionNotFound(transaction_id)
        return tx

    async def list_transactions(
        self,
        *,
        order_id: Optional[str] = None,
        status: Optional[TransactionStatus] = None,
        provider: Optional[str] = None,
        skip: int = 0,
        limit: int = 50,
    ) -> tuple[list[Transaction], int]:
        """Newest first, with the total matching the same filters."""
        filters = {"order_id": order_id, "status": status, "provider": provider}
        items = await self.ledger.list_transactions(**filters, skip=skip, limit=limit)
        total = await self.ledger.count_transactions(**filters)
        return items, total

    async def cancel_payment(self, transaction_id: str) -> Transaction:
        """Abandon a payment that never settled (pending or awaiting customer action)."""
        tx = await self.get_transaction(transaction_id)
        if tx.is_terminal():
            raise TransactionNotCancellable(transaction_id, status=tx.status.value)

        result = await self.ledger.update_status(
            tx.id,
            TransactionStatus.FAILED,
            failure_reason=CANCELLED_REASON,
        )
        if not result.applied:
            # A webhook settled the row first
            status = result.previous_status or tx.status.value
            raise TransactionNotCancellable(transaction_id, status=status)
        logger.info("payment_cancelled", transaction_id=tx.id, previous_status=result.previous_status)
        return result.entity or tx

    # --------------------------------------------------------------- pipeline

    async def _current(self, cached: PaymentResponse) -> PaymentResponse:
        """Cached answer, refreshed from the ledger while the payment is unsettled."""
        if cached.status in TERMINAL_STATUSES:
            return cached
        try:
            tx = await self.ledger.find_by_id(cached.transaction_id)
        except Exception as exc:
            logger.warning("payment_cache_refresh_failed", transaction_id=cached.transaction_id, error=str(exc))
            return cached
        if tx is None or tx.status is cached.status:
            return cached
        logger.info(
            "payment_cache_refreshed_from_ledger",
            transaction_id=tx.id,
            cached_status=cached.status.value,
            status=tx.status.value,
        )
        return response_from_transaction(tx)

    async def _process(self, req: PaymentRequest, adapter: PaymentGateway, key: str) -> PaymentResponse:
        deadline = time.monotonic() + self.wait_timeout
        while True:
            cached = await self.idempotency.lookup(key)
            if cached is not None:
                logger.info("payment_idempotency_hit", transaction_id=cached.transaction_id)
                return await self._current(cached)

            transaction_id = str(uuid.uuid4())
            reservation = await self.idempotency.reserve(key, transaction_id, self.in_flight_ttl)
            if reservation.acquired:
                return await self._execute(req, adapter, key, transaction_id)

            logger.info("payment_in_flight_wait", holder_transaction_id=reservation.holder_transaction_id)
            waited = await self._await_holder(key, reservation.holder_transaction_id, deadline)
            if waited is not None:
                return waited
            # Holder vanished without a cached response or a ledger row: it never charged

    async def _await_holder(
        self,
        key: str,
        holder_transaction_id: Optional[str],
        deadline: float,
    ) -> Optional[PaymentResponse]:
        """Poll until the holder finishes; never charges on behalf of the caller."""
        while True:
            cached = await self.idempotency.lookup(key)
            if cached is not None:
                logger.info("payment_idempotency_hit", transaction_id=cached.transaction_id, waited=True)
                return await self._current(cached)

            current = await self.idempotency.holder(key)
            if current is None:
                # Released without caching (failed attempt) or cache write lost
                cached = await self.idempotency.lookup(key)
                if cached is not None:
                    return await self._current(cached)
                if holder_transaction_id:
                    tx = await self.ledger.find_by_id(holder_transaction_id)
                    if tx is not None:
                        logger.info(
                            "payment_in_flight_resolved_from_ledger",
                            transaction_id=tx.id,
                            status=tx.status.value,
                        )
                        return response_from_transaction(tx)
                return None
            holder_transaction_id = current

            if time.monotonic() >= deadline:
                logger.warning("payment_in_flight_timeout", holder_transaction_id=holder_transaction_id)
                raise PaymentInProgress(key, transaction_id=holder_transaction_id)
            await self._poll_sleep(self.poll_interval)

    async def _execute(
        self,
        req: PaymentRequest,
        adapter: PaymentGateway,
        key: str,
        transaction_id: str,
    ) -> PaymentResponse:
        """Run the charge while holding the reservation for key."""
        order_sync: Optional[Transaction] = None
        with bound_contextvars(transaction_id=transaction_id):
            try:
                # A holder may have cached and released between lookup and reserve
                cached = await self.idempotency.lookup(key)
                if cached is not None:
                    logger.info("payment_idempotency_hit", transaction_id=cached.transaction_id)
                    return await self._current(cached)

                tx = await self._create_pending(req, key, transaction_id)
                charge = ChargeRequest(
                    transaction_id=tx.id,
                    order_id=tx.order_id,
                    amount=tx.amount,
                    tip_amount=tx.tip_amount,
                    currency=tx.currency,
                    method=tx.method,
                    payment_method_token=req.payment_method_token,
                    metadata=dict(req.metadata),
                )
                outcome, attempts = await self._charge_with_retry(adapter, charge, key)
                response, result = await self._settle(tx, outcome, attempts, key)
                if outcome.kind is OutcomeKind.SUCCEEDED and result.applied:
                    order_sync = result.entity or tx
            finally:
                await self._release(key, transaction_id)

            if order_sync is not None:
                await self._mark_order_paid(order_sync, response)
            return response

    async def _create_pending(self, req: PaymentRequest, key: str, transaction_id: str) -> Transaction:
        try:
            tx = Transaction(
                id=transaction_id,
                order_id=req.order_id,
                method=req.method,
                provider=req.provider,
                amount=req.charge_amount,
                tip_amount=req.tip_amount,
                currency=req.currency,
                status=TransactionStatus.PENDING,
                idempotency_key=key,
                metadata=dict(req.metadata),
            )
        except BusinessException as exc:
            raise InvalidRequest(exc.message, field=exc.field) from exc
        try:
            return await self.ledger.create_pending(tx)
        except BusinessException:
            raise
        except Exception:
            logger.error("ledger_pending_write_failed", exc_info=True)
            raise

    # -------------------------------------------------------------- retrying

    async def _charge_with_retry(
        self,
        adapter: PaymentGateway,
        charge: ChargeRequest,
        key: str,
    ) -> tuple[ProviderOutcome, int]:
        attempts = 0

        async def one_attempt() -> ProviderOutcome:
            nonlocal attempts
            attempts += 1
            return await self._invoke_adapter(adapter, charge, key, attempts)

        retrying = AsyncRetrying(
            sleep=self._sleep,
            stop=stop_after_attempt(self.max_attempts),
            # attempt_index * base_delay: base, 2*base, ...
            wait=wait_incrementing(start=self.base_delay, increment=self.base_delay),
            retry=retry_if_result(lambda o: o.is_transport_error),
            before_sleep=self._log_retry,
            retry_error_callback=lambda state: state.outcome.result(),
        )
        outcome = await retrying(one_attempt)
        if outcome.is_transport_error:
            logger.warning(
                "payment_retries_exhausted",
                attempts=attempts,
                error_code=outcome.error_code,
                error=outcome.error_message,
            )
        return outcome, attempts

    async def _invoke_adapter(
        self,
        adapter: PaymentGateway,
        charge: ChargeRequest,
        key: str,
        attempt: int,
    ) -> ProviderOutcome:
        with Stopwatch() as sw:
            try:
                outcome = await asyncio.wait_for(adapter.charge(charge, key), timeout=self.attempt_timeout)
            except asyncio.TimeoutError:
                outcome = ProviderOutcome.transport(
                    f"provider call exceeded {self.attempt_timeout}s",
                    code="timeout",
                )
            except TransportError as exc:
                outcome = ProviderOutcome.transport(exc.message, code=exc.details.get("provider_code") or "transport_error")
            except ProviderDeclined as exc:
                outcome = ProviderOutcome.declined(exc.message, code=exc.details.get("provider_code"))
            except Exception as exc:
                logger.warning("payment_attempt_exception", attempt=attempt, error=str(exc), exc_info=True)
                outcome = ProviderOutcome.transport(str(exc) or exc.__class__.__name__, code="adapter_exception")
        logger.info(
            "payment_attempt_finished",
            attempt=attempt,
            kind=outcome.kind.value,
            provider_transaction_id=outcome.provider_transaction_id,
            duration_ms=sw.elapsed_ms,
        )
        return outcome

    @staticmethod
    def _log_retry(state: RetryCallState) -> None:
        outcome: Optional[ProviderOutcome] = None
        if state.outcome is not None and not state.outcome.failed:
            outcome = state.outcome.result()
        logger.warning(
            "payment_attempt_failed",
            attempt=state.attempt_number,
            next_delay=state.next_action.sleep if state.next_action else None,
            error_code=outcome.error_code if outcome else None,
            error=outcome.error_message if outcome else None,
        )

    # -------------------------------------------------------------- settling

    async def _settle(
        self,
        tx: Transaction,
        outcome: ProviderOutcome,
        attempts: int,
        key: str,
    ) -> tuple[PaymentResponse, TransitionResult[Transaction]]:
        status = _OUTCOME_TO_STATUS[outcome.kind]
        response = PaymentResponse(
            transaction_id=tx.id,
            status=status,
            amount=tx.amount,
            provider_transaction_id=outcome.provider_transaction_id,
            requires_action=outcome.requires_action if outcome.kind is OutcomeKind.REQUIRES_ACTION else None,
        )
        card = None
        if outcome.card_last4 or outcome.card_brand:
            card = CardDetails(last4=outcome.card_last4, brand=outcome.card_brand)

        if status is TransactionStatus.FAILED:
            response.error = outcome.error_message or "payment failed"
            response.error_code = outcome.error_code
            logger.info(
                "payment_failed",
                kind=outcome.kind.value,
                attempts=attempts,
                error_code=outcome.error_code,
            )
            result = await self._record(
                tx,
                status,
                outcome,
                failure_reason=response.error,
                money_moved=False,
            )
            if result.conflict:
                # A success webhook won the race; the ledger keeps succeeded
                await self._flag_conflict(tx, status)
                if result.entity is not None:
                    response = response_from_transaction(result.entity)
            return response, result

        # Money moved or may move: cache first so duplicates never re-charge
        await self._cache(key, response)
        raw = dict(outcome.raw_response or {})
        if outcome.requires_action:
            raw.setdefault("requires_action", outcome.requires_action)
        result = await self._record(tx, status, outcome, card=card, raw_response=raw, money_moved=True)
        return response, result

    async def _flag_conflict(self, tx: Transaction, status: TransactionStatus) -> None:
        logger.warning(
            "reconciliation_conflict",
            transaction_id=tx.id,
            ledger_status=TransactionStatus.SUCCEEDED.value,
            event_status=status.value,
            source="sync",
        )
        try:
            await self.ledger.flag_for_review(tx.id, SYNC_CONFLICT_REVIEW_REASON)
        except Exception:
            logger.critical(
                "ledger_review_flag_failed",
                transaction_id=tx.id,
                reason=SYNC_CONFLICT_REVIEW_REASON,
                exc_info=True,
            )

    async def _record(
        self,
        tx: Transaction,
        status: TransactionStatus,
        outcome: ProviderOutcome,
        *,
        failure_reason: Optional[str] = None,
        card: Optional[CardDetails] = None,
        raw_response: Optional[dict[str, Any]] = None,
        money_moved: bool,
    ) -> TransitionResult[Transaction]:
        try:
            result = await self.ledger.update_status(
                tx.id,
                status,
                provider_transaction_id=outcome.provider_transaction_id,
                raw_response=raw_response if raw_response is not None else outcome.raw_response,
                failure_reason=failure_reason,
                card=card,
            )
        except Exception as exc:
            log = logger.critical if money_moved else logger.error
            log(
                "ledger_write_failed",
                transaction_id=tx.id,
                provider_transaction_id=outcome.provider_transaction_id,
                target_status=status.value,
                error=str(exc),
                exc_info=True,
            )
            raise LedgerWriteFailure(
                tx.id,
                provider_transaction_id=outcome.provider_transaction_id,
                reason=str(exc),
            ) from exc
        logger.info(
            "ledger_status_recorded",
            status=status.value,
            outcome=result.outcome.value,
            previous_status=result.previous_status,
        )
        return result

    async def _cache(self, key: str, response: PaymentResponse) -> None:
        try:
            stored = await self.idempotency.store(key, response, self.cache_ttl)
        except IdempotencyUnavailable as exc:
            # Provider already has the charge; the reservation and ledger row still guard the key
            logger.error("idempotency_store_failed", transaction_id=response.transaction_id, error=exc.message)
            return
        if not stored:
            logger.warning("idempotency_response_already_cached", transaction_id=response.transaction_id)

    async def _release(self, key: str, transaction_id: str) -> None:
        try:
            await self.idempotency.release(key, transaction_id)
        except IdempotencyUnavailable as exc:
            # Reservation expires on its own after in_flight_ttl
            logger.warning("idempotency_release_failed", transaction_id=transaction_id, error=exc.message)

    async def _mark_order_paid(self, tx: Transaction, response: PaymentResponse) -> None:
        try:
            await self.order_status.mark_order_paid(tx.order_id, tx.id, datetime.now(timezone.utc))
        except Exception as exc:
            logger.error(
                "reconciliation_required",
                transaction_id=tx.id,
                order_id=tx.order_id,
                provider_transaction_id=response.provider_transaction_id,
                error=str(exc),
                exc_info=True,
            )
            try:
                await self.ledger.flag_for_review(tx.id, ORDER_SYNC_REVIEW_REASON)
            except Exception:
                logger.critical("ledger_review_flag_failed", transaction_id=tx.id, exc_info=True)
            raise OrderStatusSyncFailure(response, order_id=tx.order_id, reason=str(exc)) from exc
        logger.info("order_marked_paid", transaction_id=tx.id, order_id=tx.order_id)

    # ------------------------------------------------------------ validation

    @staticmethod
    def _validate(request: PaymentRequest | dict[str, Any]) -> PaymentRequest:
        if isinstance(request, PaymentRequest):
            return request
        try:
            return PaymentRequest.model_validate(request)
        except ValidationError as exc:
            errors = exc.errors()
            first = errors[0] if errors else {}
            field = ".".join(str(p) for p in first.get("loc", ()))
            raise InvalidRequest(
                f"Invalid payment request: {first.get('msg', 'invalid')}",
                field=field or None,
                details={"errors": [{"loc": list(e.get("loc", ())), "msg": e.get("msg")} for e in errors]},
            ) from exc
