"""Test doubles shared by the payment tests."""
from __future__ import annotations

import asyncio
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional, Union

from application.dtos.payments import (
    ChargeRequest,
    OutcomeKind,
    ProviderOutcome,
    RefundRequest,
    RefundResult,
    WebhookEvent,
)
from domain.payment.entity import PaymentMethod, Transaction, TransactionStatus
from domain.payment.exceptions import IdempotencyUnavailable, SignatureInvalid
from infrastructure.idempotency import InMemoryIdempotencyStore


def succeeded(ptx: str = "pi_1", **kwargs) -> ProviderOutcome:
    return ProviderOutcome(kind=OutcomeKind.SUCCEEDED, provider_transaction_id=ptx, **kwargs)


def transport(message: str = "connection reset") -> ProviderOutcome:
    return ProviderOutcome.transport(message)


class ScriptedGateway:
    """Returns scripted outcomes in order; the last one repeats."""

    def __init__(
        self,
        outcomes: Optional[list[Union[ProviderOutcome, Exception]]] = None,
        *,
        provider: str = "stripe",
        delay: float = 0.0,
    ) -> None:
        self.provider = provider
        self.outcomes = list(outcomes or [succeeded()])
        self.delay = delay
        self.calls: list[tuple[ChargeRequest, str]] = []
        self.refund_calls: list[RefundRequest] = []
        # None: succeed with a fresh provider refund id per call
        self.refund_result: Optional[RefundResult] = None
        self.closed = False

    async def charge(self, req: ChargeRequest, idempotency_key: str) -> ProviderOutcome:
        self.calls.append((req, idempotency_key))
        if self.delay:
            await asyncio.sleep(self.delay)
        outcome = self.outcomes[min(len(self.calls), len(self.outcomes)) - 1]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def refund(self, req: RefundRequest) -> RefundResult:
        self.refund_calls.append(req)
        if self.refund_result is None:
            return RefundResult(
                status="succeeded", provider=self.provider, provider_refund_id=f"re_{len(self.refund_calls)}"
            )
        return self.refund_result

    def verify_signature(self, headers: dict[str, Any], body: bytes) -> bool:
        return headers.get("x-test-signature") == "valid"

    def parse_webhook(self, headers: dict[str, Any], body: bytes) -> WebhookEvent:
        if not self.verify_signature(headers, body):
            raise SignatureInvalid(provider=self.provider)
        return WebhookEvent.model_validate_json(body)

    async def aclose(self) -> None:
        self.closed = True


class RecordingOrderStatus:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.calls: list[tuple[str, str, datetime]] = []

    async def mark_order_paid(self, order_id: str, transaction_id: str, paid_at: datetime) -> None:
        self.calls.append((order_id, transaction_id, paid_at))
        if self.fail:
            raise RuntimeError("orders table unavailable")


class UnavailableIdempotencyStore(InMemoryIdempotencyStore):
    async def lookup(self, key):  # type: ignore[override]
        raise IdempotencyUnavailable(key=key)


class FailingStatusLedger:
    """Delegates to a real ledger but fails every status write."""

    def __init__(self, inner) -> None:
        self.inner = inner

    def __getattr__(self, name):
        return getattr(self.inner, name)

    async def update_status(self, *args, **kwargs):
        raise RuntimeError("database connection lost")


class FailingReviewLedger(FailingStatusLedger):
    """Status writes go through; only the review flag fails."""

    async def update_status(self, *args, **kwargs):
        return await self.inner.update_status(*args, **kwargs)

    async def flag_for_review(self, *args, **kwargs):
        raise RuntimeError("database connection lost")


def make_transaction(
    tx_id: str = "tx-1",
    *,
    order_id: str = "O1",
    provider: str = "stripe",
    amount: str = "19.99",
    status: TransactionStatus = TransactionStatus.PENDING,
    provider_transaction_id: Optional[str] = None,
) -> Transaction:
    return Transaction(
        id=tx_id,
        order_id=order_id,
        method=PaymentMethod.CARD,
        provider=provider,
        amount=Decimal(amount),
        currency="USD",
        status=status,
        provider_transaction_id=provider_transaction_id,
    )
