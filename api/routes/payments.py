"""
Payments API routes.

Keep this thin: HTTP validation only. Orchestration, reconciliation and
refund logic live in application services; no SDK details here.
"""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Request

from api.dependencies import get_orchestrator, get_reconciler, get_refund_service
from application.dtos.payments import PaymentRequest, RefundCreate, RefundView, TransactionView
from application.services.payment_orchestrator import PaymentOrchestrator
from application.services.refund_service import RefundService
from application.services.webhook_reconciler import WebhookReconciler
from core.config import settings
from core.response import paginated_response, success_response
from core.logging_config import get_logger
from domain.payment.entity import TransactionStatus


router = APIRouter(prefix="/payments", tags=["Payments"])
logger = get_logger(__name__)


@router.post("/process", summary="Process payment")
async def process_payment(
    payload: PaymentRequest,
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key", max_length=255),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    # Body key wins over the header
    if not payload.idempotency_key and idempotency_key:
        payload = payload.model_copy(update={"idempotency_key": idempotency_key})
    result = await orchestrator.process_payment(payload)
    return success_response(data=result.model_dump(mode="json"), message="Payment processed")


@router.get("", summary="List payments")
async def list_payments(
    order_id: Optional[str] = Query(default=None),
    status: Optional[TransactionStatus] = Query(default=None),
    provider: Optional[str] = Query(default=None),
    limit: int = Query(default=settings.DEFAULT_PAGE_SIZE, ge=1, le=settings.MAX_PAGE_SIZE),
    offset: int = Query(default=0, ge=0),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    items, total = await orchestrator.list_transactions(
        order_id=order_id,
        status=status,
        provider=provider.strip().lower() if provider else None,
        skip=offset,
        limit=limit,
    )
    return paginated_response(
        items=[TransactionView.from_entity(tx).model_dump(mode="json") for tx in items],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/orders/{order_id}", summary="List payments for an order")
async def list_order_payments(
    order_id: str,
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    items, _ = await orchestrator.list_transactions(order_id=order_id, limit=settings.MAX_PAGE_SIZE)
    return success_response(data=[TransactionView.from_entity(tx).model_dump(mode="json") for tx in items])


@router.get("/transactions/{transaction_id}", summary="Get transaction")
async def get_transaction(
    transaction_id: str,
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    tx = await orchestrator.get_transaction(transaction_id)
    return success_response(data=TransactionView.from_entity(tx).model_dump(mode="json"))


@router.post("/transactions/{transaction_id}/cancel", summary="Cancel payment")
async def cancel_payment(
    transaction_id: str,
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    tx = await orchestrator.cancel_payment(transaction_id)
    return success_response(data=TransactionView.from_entity(tx).model_dump(mode="json"), message="Payment cancelled")


@router.post("/transactions/{transaction_id}/refunds", summary="Refund transaction")
async def create_refund(
    transaction_id: str,
    payload: RefundCreate,
    service: RefundService = Depends(get_refund_service),
):
    refund = await service.create_refund(transaction_id, amount=payload.amount, reason=payload.reason)
    return success_response(data=RefundView.from_entity(refund).model_dump(mode="json"), message="Refund requested")


@router.get("/transactions/{transaction_id}/refunds", summary="List refunds")
async def list_refunds(
    transaction_id: str,
    service: RefundService = Depends(get_refund_service),
):
    refunds = await service.list_refunds(transaction_id)
    return success_response(data=[RefundView.from_entity(r).model_dump(mode="json") for r in refunds])


@router.get("/refunds/{refund_id}", summary="Get refund")
async def get_refund(
    refund_id: str,
    service: RefundService = Depends(get_refund_service),
):
    refund = await service.get_refund(refund_id)
    return success_response(data=RefundView.from_entity(refund).model_dump(mode="json"))


@router.post("/webhooks/{provider}", summary="Provider webhook")
async def payments_webhook(
    provider: str,
    request: Request,
    reconciler: WebhookReconciler = Depends(get_reconciler),
):
    # Signatures cover the exact bytes; never re-serialize the body
    raw_body = await request.body()
    headers = {k: v for k, v in request.headers.items()}
    result = await reconciler.handle(provider, headers, raw_body)
    # Conflicts and unknown rows are still acknowledged so the provider stops retrying
    return success_response(data=result.model_dump(mode="json"), message="Webhook received")
