"""
Payment gateway port (application/ports) exposing a replaceable protocol.

Application depends on this Protocol; infrastructure implements adapters.
"""
from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from application.dtos.payments import (
    ChargeRequest,
    ProviderOutcome,
    RefundRequest,
    RefundResult,
    WebhookEvent,
)


@runtime_checkable
class PaymentGateway(Protocol):
    """Gateway protocol for third-party payment providers.

    ``charge`` and ``refund`` never raise for declines or transport faults;
    those are returned as data. ``parse_webhook`` verifies the signature first
    and raises ``SignatureInvalid`` when it does not match.
    """

    provider: str

    async def charge(self, req: ChargeRequest, idempotency_key: str) -> ProviderOutcome: ...

    async def refund(self, req: RefundRequest) -> RefundResult: ...

    def verify_signature(self, headers: dict[str, Any], body: bytes) -> bool: ...

    def parse_webhook(self, headers: dict[str, Any], body: bytes) -> WebhookEvent: ...

    async def aclose(self) -> None: ...
