"""
Square Payments adapter over the REST API (httpx).

- ``POST /v2/payments`` with ``idempotency_key`` in the body (max 45 chars)
- ``POST /v2/refunds`` keyed by the internal refund id
- Webhooks are signed with base64 HMAC-SHA256 over ``notification_url + body``
  in the ``x-square-hmacsha256-signature`` header
"""
from __future__ import annotations

import hashlib
import json
from decimal import Decimal
from typing import Any, Optional

import httpx

from application.dtos.payments import (
    ChargeRequest,
    OutcomeKind,
    ProviderOutcome,
    RefundRequest,
    RefundResult,
    WebhookEvent,
)
from infrastructure.external.payments.base import BasePaymentClient
from core.settings import SquareSettings, payment_settings


SIGNATURE_HEADER = "x-square-hmacsha256-signature"
MAX_IDEMPOTENCY_KEY = 45
ORDER_NOTE_PREFIX = "order_id:"


class SquareClient(BasePaymentClient):
    provider = "square"

    def __init__(
        self,
        *,
        settings: Optional[SquareSettings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(timeouts=payment_settings.timeouts.model_dump(), transport=transport)
        self.cfg = settings or payment_settings.square
        if not self.cfg.access_token:
            raise RuntimeError("SQUARE__ACCESS_TOKEN not configured")

    def _client_kwargs(self) -> dict[str, Any]:
        return {
            "base_url": self.cfg.base_url,
            "headers": {
                "Authorization": f"Bearer {self.cfg.access_token}",
                "Square-Version": self.cfg.api_version,
                "Content-Type": "application/json",
            },
        }

    @staticmethod
    def _idempotency_key(key: str) -> str:
        # Deterministic so retries of one payment still share a key
        if len(key) <= MAX_IDEMPOTENCY_KEY:
            return key
        return hashlib.sha256(key.encode("utf-8")).hexdigest()[:MAX_IDEMPOTENCY_KEY]

    def _money(self, amount: Decimal, currency: str) -> dict[str, Any]:
        return {"amount": self._to_minor(amount, currency), "currency": currency.upper()}

    async def charge(self, req: ChargeRequest, idempotency_key: str) -> ProviderOutcome:  # type: ignore[override]
        body: dict[str, Any] = {
            "source_id": req.payment_method_token,
            "idempotency_key": self._idempotency_key(idempotency_key),
            # amount_money + tip_money is the total charged
            "amount_money": self._money(req.amount - req.tip_amount, req.currency),
            "autocomplete": True,
            "reference_id": req.transaction_id,
            "note": f"{ORDER_NOTE_PREFIX}{req.order_id}",
        }
        if req.tip_amount:
            body["tip_money"] = self._money(req.tip_amount, req.currency)
        if self.cfg.location_id:
            body["location_id"] = self.cfg.location_id

        try:
            async with self.client() as c:
                resp = await c.post("/v2/payments", json=body)
        except (httpx.TimeoutException, httpx.TransportError) as exc:
            self._log("square_transport_error", error=str(exc))
            return ProviderOutcome.transport(str(exc) or type(exc).__name__, code=type(exc).__name__)

        data = self._json(resp)
        if resp.status_code >= 500 or resp.status_code == 429:
            self._log("square_transport_error", http_status=resp.status_code)
            return ProviderOutcome.transport(self._error_detail(data) or f"HTTP {resp.status_code}",
                                             code=f"http_{resp.status_code}", raw=data)

        payment = data.get("payment") or {}
        if resp.status_code >= 400 and not payment:
            errors = data.get("errors") or [{}]
            return ProviderOutcome.declined(
                self._error_detail(data) or f"HTTP {resp.status_code}",
                code=errors[0].get("code"),
                raw=data,
            )
        return self._outcome_from_payment(payment, data)

    def _outcome_from_payment(self, payment: dict[str, Any], raw: dict[str, Any]) -> ProviderOutcome:
        status = str(payment.get("status") or "")
        kind = self._map_status(status)
        payment_id = payment.get("id")
        if kind is None or kind is OutcomeKind.DECLINED:
            errors = raw.get("errors") or [{}]
            return ProviderOutcome.declined(
                self._error_detail(raw) or f"payment {status or 'unknown'}",
                code=errors[0].get("code") or status or "unexpected_status",
                provider_transaction_id=payment_id,
                raw=raw,
            )
        card = (payment.get("card_details") or {}).get("card") or {}
        return ProviderOutcome(
            kind=kind,
            provider_transaction_id=payment_id,
            card_last4=card.get("last_4"),
            card_brand=(card.get("card_brand") or "").lower() or None,
            raw_response=raw,
        )

    async def refund(self, req: RefundRequest) -> RefundResult:  # type: ignore[override]
        body = {
            "idempotency_key": self._idempotency_key(req.refund_id),
            "payment_id": req.provider_transaction_id,
            "amount_money": self._money(req.amount, req.currency),
            "reason": req.reason or "",
        }

        async def _call():
            async with self.client() as c:
                return await c.post("/v2/refunds", json=body)

        try:
            resp = await self._retry(_call)
        except (httpx.TimeoutException, httpx.TransportError) as exc:
            self._log("square_refund_transport_error", refund_id=req.refund_id, error=str(exc))
            return RefundResult(status="pending", provider=self.provider, error_message=str(exc))

        data = self._json(resp)
        if resp.status_code >= 500 or resp.status_code == 429:
            return RefundResult(status="pending", provider=self.provider,
                                error_message=f"HTTP {resp.status_code}", raw_response=data)
        refund = data.get("refund") or {}
        if resp.status_code >= 400 or not refund:
            return RefundResult(status="failed", provider=self.provider,
                                error_message=self._error_detail(data), raw_response=data)
        return RefundResult(
            status=self._map_refund_status(str(refund.get("status") or "")),
            provider=self.provider,
            provider_refund_id=refund.get("id"),
            raw_response=data,
        )

    def verify_signature(self, headers: dict[str, Any], body: bytes) -> bool:  # type: ignore[override]
        key = self.cfg.webhook_signature_key
        if not key:
            return False
        expected = self._hmac_b64(key, self.cfg.notification_url.encode("utf-8") + body)
        return self._compare(expected, self._header(headers, SIGNATURE_HEADER))

    def _parse_verified(self, headers: dict[str, Any], body: bytes) -> WebhookEvent:
        event = json.loads(body)
        event_type = str(event.get("type") or "")
        obj = (event.get("data") or {}).get("object") or {}
        base = {
            "id": str(event.get("event_id") or ""),
            "type": event_type,
            "provider": self.provider,
            "data": event,
            "raw_headers": dict(headers),
        }

        if event_type in {"payment.created", "payment.updated"}:
            payment = obj.get("payment") or {}
            note = payment.get("note") or ""
            order_id = note[len(ORDER_NOTE_PREFIX):] if note.startswith(ORDER_NOTE_PREFIX) else None
            return WebhookEvent(
                **base,
                category="payment",
                status=self._event_status(self._map_status(str(payment.get("status") or ""))),
                provider_transaction_id=payment.get("id"),
                transaction_id=payment.get("reference_id"),
                order_id=order_id,
                failure_reason=f"payment {payment.get('status')}" if payment.get("status") in {"FAILED", "CANCELED"} else None,
            )

        if event_type in {"refund.created", "refund.updated"}:
            refund = obj.get("refund") or {}
            money = refund.get("amount_money") or {}
            return WebhookEvent(
                **base,
                category="refund",
                status=self._map_refund_status(str(refund.get("status") or "")),
                provider_refund_id=refund.get("id"),
                provider_transaction_id=refund.get("payment_id"),
                amount=self._from_minor(money.get("amount"), str(money.get("currency") or "")),
            )

        return WebhookEvent(**base)

    @staticmethod
    def _error_detail(data: dict[str, Any]) -> Optional[str]:
        errors = data.get("errors") or []
        if not errors:
            return None
        first = errors[0]
        return first.get("detail") or first.get("code")
