"""
API dependencies: payment services assembled from components built at startup.

The application lifespan (main.py) puts the long-lived collaborators on
``app.state``; each request gets a thin service object wired from them.
Tests replace the leaf providers through ``app.dependency_overrides``.
"""
from fastapi import Depends, Request

from application.ports.idempotency import IdempotencyStore
from application.ports.order_status import OrderStatusPort
from application.services.payment_orchestrator import PaymentOrchestrator
from application.services.provider_registry import ProviderRegistry
from application.services.refund_service import RefundService
from application.services.webhook_reconciler import WebhookReconciler
from domain.payment.repository import RefundRepository, TransactionLedger


def get_provider_registry(request: Request) -> ProviderRegistry:
    return request.app.state.provider_registry


def get_transaction_ledger(request: Request) -> TransactionLedger:
    return request.app.state.transaction_ledger


def get_refund_repository(request: Request) -> RefundRepository:
    return request.app.state.refund_repository


def get_idempotency_store(request: Request) -> IdempotencyStore:
    return request.app.state.idempotency_store


def get_order_status_port(request: Request) -> OrderStatusPort:
    return request.app.state.order_status


async def get_orchestrator(
    registry: ProviderRegistry = Depends(get_provider_registry),
    ledger: TransactionLedger = Depends(get_transaction_ledger),
    idempotency: IdempotencyStore = Depends(get_idempotency_store),
    order_status: OrderStatusPort = Depends(get_order_status_port),
) -> PaymentOrchestrator:
    return PaymentOrchestrator(
        registry=registry,
        ledger=ledger,
        idempotency=idempotency,
        order_status=order_status,
    )


async def get_reconciler(
    registry: ProviderRegistry = Depends(get_provider_registry),
    ledger: TransactionLedger = Depends(get_transaction_ledger),
    refunds: RefundRepository = Depends(get_refund_repository),
    order_status: OrderStatusPort = Depends(get_order_status_port),
) -> WebhookReconciler:
    return WebhookReconciler(registry=registry, ledger=ledger, refunds=refunds, order_status=order_status)


async def get_refund_service(
    registry: ProviderRegistry = Depends(get_provider_registry),
    ledger: TransactionLedger = Depends(get_transaction_ledger),
    refunds: RefundRepository = Depends(get_refund_repository),
) -> RefundService:
    return RefundService(registry=registry, ledger=ledger, refunds=refunds)
