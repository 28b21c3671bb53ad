"""
Base payment client implementing shared concerns: http, retry, logging, mapping.

Concrete providers should subclass and implement provider-specific logic.
``charge`` never raises for provider declines or transport faults; both are
normalized into ProviderOutcome so the orchestrator owns the retry policy.
"""
from __future__ import annotations

import base64
import hashlib
import hmac
from decimal import Decimal
from typing import Any, Callable, Optional
from contextlib import asynccontextmanager

import httpx
from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential, retry_if_exception_type

from core.logging_config import get_logger
from application.dtos.payments import (
    ChargeRequest,
    OutcomeKind,
    ProviderOutcome,
    RefundRequest,
    RefundResult,
    WebhookEvent,
)
from application.ports.payment_gateway import PaymentGateway
from domain.payment.exceptions import SignatureInvalid
from domain.payment.money import from_minor_units, to_minor_units
from shared.codes.payment_codes import PROVIDER_REFUND_STATUS_TO_INTERNAL, PROVIDER_STATUS_TO_INTERNAL


logger = get_logger(__name__)


class BasePaymentClient(PaymentGateway):
    provider: str = "base"

    def __init__(
        self,
        *,
        timeouts: Optional[dict[str, float]] = None,
        retry: Optional[dict[str, Any]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._timeouts_cfg = timeouts or {"connect": 2.0, "read": 8.0, "write": 8.0, "total": 9.0}
        # Only used for refund calls; charges are retried by the orchestrator
        self._retry_cfg = retry or {"max": 2, "base": 0.2}
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def timeouts(self) -> httpx.Timeout:
        return httpx.Timeout(
            connect=self._timeouts_cfg["connect"],
            read=self._timeouts_cfg["read"],
            write=self._timeouts_cfg["write"],
            timeout=self._timeouts_cfg["total"],
        )

    def _client_kwargs(self) -> dict[str, Any]:
        return {}

    @asynccontextmanager
    async def client(self):
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeouts, transport=self._transport, **self._client_kwargs())
        try:
            yield self._client
        finally:
            # Keep open for reuse; explicit aclose() will close.
            ...

    async def aclose(self) -> None:
        """Close underlying HTTP client if created."""
        if self._client is not None:
            try:
                await self._client.aclose()
            finally:
                self._client = None

    async def _retry(self, fn: Callable[[], Any]):
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(int(self._retry_cfg["max"]) + 1),
            wait=wait_exponential(multiplier=self._retry_cfg["base"], min=0.1, max=2.0),
            retry=retry_if_exception_type((httpx.TimeoutException, httpx.TransportError)),
            reraise=True,
        ):
            with attempt:
                return await fn()

    # Default implementations raise to force override where needed
    async def charge(self, req: ChargeRequest, idempotency_key: str) -> ProviderOutcome:  # type: ignore[override]
        raise NotImplementedError

    async def refund(self, req: RefundRequest) -> RefundResult:  # type: ignore[override]
        raise NotImplementedError

    def verify_signature(self, headers: dict[str, Any], body: bytes) -> bool:  # type: ignore[override]
        raise NotImplementedError

    def _parse_verified(self, headers: dict[str, Any], body: bytes) -> WebhookEvent:
        raise NotImplementedError

    def parse_webhook(self, headers: dict[str, Any], body: bytes) -> WebhookEvent:  # type: ignore[override]
        if not self.verify_signature(headers, body):
            raise SignatureInvalid(provider=self.provider)
        return self._parse_verified(headers, body)

    # Helpers
    def _map_status(self, provider_status: str) -> Optional[OutcomeKind]:
        mapping = PROVIDER_STATUS_TO_INTERNAL.get(self.provider, {})
        kind = mapping.get(provider_status)
        return OutcomeKind(kind) if kind else None

    def _map_refund_status(self, provider_status: str) -> str:
        mapping = PROVIDER_REFUND_STATUS_TO_INTERNAL.get(self.provider, {})
        return mapping.get(provider_status, "pending")

    @staticmethod
    def _event_status(kind: Optional[OutcomeKind]) -> Optional[str]:
        """Ledger status implied by a provider status seen in a webhook."""
        if kind is None or kind is OutcomeKind.TRANSPORT_ERROR:
            return None
        if kind is OutcomeKind.DECLINED:
            return "failed"
        return kind.value

    @staticmethod
    def _to_minor(amount, currency: str) -> int:
        # Raises instead of rounding; amounts are validated to fit before a charge
        return to_minor_units(amount, currency)

    @staticmethod
    def _from_minor(minor, currency: str) -> Optional[Decimal]:
        if minor is None:
            return None
        return from_minor_units(minor, currency)

    @staticmethod
    def _json(resp: httpx.Response) -> dict[str, Any]:
        try:
            data = resp.json()
        except ValueError:
            return {"body": resp.text}
        return data if isinstance(data, dict) else {"body": data}

    @staticmethod
    def _header(headers: dict[str, Any], name: str) -> Optional[str]:
        lowered = name.lower()
        for k, v in headers.items():
            if k.lower() == lowered:
                return v
        return None

    @staticmethod
    def _hmac_sha256(secret: str, message: bytes) -> bytes:
        return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).digest()

    @classmethod
    def _hmac_hex(cls, secret: str, message: bytes) -> str:
        return cls._hmac_sha256(secret, message).hex()

    @classmethod
    def _hmac_b64(cls, secret: str, message: bytes) -> str:
        return base64.b64encode(cls._hmac_sha256(secret, message)).decode("ascii")

    @staticmethod
    def _compare(expected: str, received: Optional[str]) -> bool:
        if not received:
            return False
        return hmac.compare_digest(expected.encode("utf-8"), received.strip().encode("utf-8"))

    def _log(self, event: str, **kwargs) -> None:
        logger.info(
            event,
            provider=self.provider,
            **kwargs,
        )
