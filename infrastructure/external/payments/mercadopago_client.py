"""
Mercado Pago adapter (wallet / QR) over the REST API (httpx).

- ``POST /v1/payments`` with the ``X-Idempotency-Key`` header
- QR payments come back ``pending`` with ``point_of_interaction`` data, which
  is handed to the caller as the requires-action payload
- ``x-signature: ts=<ts>,v1=<hex>`` over
  ``"id:{data.id};request-id:{x-request-id};ts:{ts};"``
"""
from __future__ import annotations

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
from domain.payment.entity import PaymentMethod
from infrastructure.external.payments.base import BasePaymentClient
from core.settings import MercadoPagoSettings, payment_settings


class MercadoPagoClient(BasePaymentClient):
    provider = "mercadopago"

    def __init__(
        self,
        *,
        settings: Optional[MercadoPagoSettings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(timeouts=payment_settings.timeouts.model_dump(), transport=transport)
        self.cfg = settings or payment_settings.mercadopago
        if not self.cfg.access_token:
            raise RuntimeError("MERCADOPAGO__ACCESS_TOKEN not configured")

    def _client_kwargs(self) -> dict[str, Any]:
        return {
            "base_url": self.cfg.base_url,
            "headers": {"Authorization": f"Bearer {self.cfg.access_token}"},
        }

    def _payment_body(self, req: ChargeRequest) -> dict[str, Any]:
        body: dict[str, Any] = {
            "transaction_amount": float(req.amount),
            "description": f"Order {req.order_id}",
            "external_reference": req.transaction_id,
            "payer": {"email": req.metadata.get("payer_email") or self.cfg.payer_email},
            "metadata": {"order_id": req.order_id, "transaction_id": req.transaction_id},
        }
        if req.method is PaymentMethod.QR:
            body["payment_method_id"] = req.payment_method_token or "pix"
        else:
            body["token"] = req.payment_method_token
            body["installments"] = 1
            if req.metadata.get("payment_method_id"):
                body["payment_method_id"] = req.metadata["payment_method_id"]
        return body

    async def charge(self, req: ChargeRequest, idempotency_key: str) -> ProviderOutcome:  # type: ignore[override]
        try:
            async with self.client() as c:
                resp = await c.post(
                    "/v1/payments",
                    json=self._payment_body(req),
                    headers={"X-Idempotency-Key": idempotency_key},
                )
        except (httpx.TimeoutException, httpx.TransportError) as exc:
            self._log("mercadopago_transport_error", error=str(exc))
            return ProviderOutcome.transport(str(exc) or type(exc).__name__, code=type(exc).__name__)

        data = self._json(resp)
        if resp.status_code >= 500 or resp.status_code == 429:
            self._log("mercadopago_transport_error", http_status=resp.status_code)
            return ProviderOutcome.transport(data.get("message") or f"HTTP {resp.status_code}",
                                             code=f"http_{resp.status_code}", raw=data)
        if resp.status_code >= 400:
            causes = data.get("cause") or [{}]
            return ProviderOutcome.declined(
                data.get("message") or f"HTTP {resp.status_code}",
                code=str(causes[0].get("code") or data.get("error") or resp.status_code),
                raw=data,
            )
        return self._outcome_from_payment(data)

    def _outcome_from_payment(self, payment: dict[str, Any]) -> ProviderOutcome:
        status = str(payment.get("status") or "")
        kind = self._map_status(status)
        payment_id = str(payment["id"]) if payment.get("id") is not None else None
        if kind is None or kind is OutcomeKind.DECLINED:
            return ProviderOutcome.declined(
                f"payment {status or 'unknown'}: {payment.get('status_detail') or ''}".strip(": "),
                code=payment.get("status_detail") or status or "unexpected_status",
                provider_transaction_id=payment_id,
                raw=payment,
            )

        requires_action = None
        if kind is OutcomeKind.REQUIRES_ACTION:
            tx_data = (payment.get("point_of_interaction") or {}).get("transaction_data") or {}
            if tx_data.get("qr_code") or tx_data.get("qr_code_base64"):
                requires_action = {
                    "type": "qr",
                    "qr_code": tx_data.get("qr_code"),
                    "qr_code_base64": tx_data.get("qr_code_base64"),
                    "ticket_url": tx_data.get("ticket_url"),
                }
            else:
                # pending without a QR payload is an ordinary async payment
                kind = OutcomeKind.PENDING

        card = payment.get("card") or {}
        return ProviderOutcome(
            kind=kind,
            provider_transaction_id=payment_id,
            requires_action=requires_action,
            card_last4=card.get("last_four_digits"),
            card_brand=payment.get("payment_method_id") if card else None,
            raw_response=payment,
        )

    async def refund(self, req: RefundRequest) -> RefundResult:  # type: ignore[override]
        async def _call():
            async with self.client() as c:
                return await c.post(
                    f"/v1/payments/{req.provider_transaction_id}/refunds",
                    json={"amount": float(req.amount)},
                    headers={"X-Idempotency-Key": req.refund_id},
                )

        try:
            resp = await self._retry(_call)
        except (httpx.TimeoutException, httpx.TransportError) as exc:
            self._log("mercadopago_refund_transport_error", refund_id=req.refund_id, error=str(exc))
            return RefundResult(status="pending", provider=self.provider, error_message=str(exc))

        data = self._json(resp)
        if resp.status_code >= 500 or resp.status_code == 429:
            return RefundResult(status="pending", provider=self.provider,
                                error_message=f"HTTP {resp.status_code}", raw_response=data)
        if resp.status_code >= 400:
            return RefundResult(status="failed", provider=self.provider,
                                error_message=data.get("message"), raw_response=data)
        return RefundResult(
            status=self._map_refund_status(str(data.get("status") or "")),
            provider=self.provider,
            provider_refund_id=str(data["id"]) if data.get("id") is not None else None,
            raw_response=data,
        )

    @staticmethod
    def _parse_signature(value: Optional[str]) -> dict[str, str]:
        parts: dict[str, str] = {}
        for item in (value or "").split(","):
            k, sep, v = item.strip().partition("=")
            if sep:
                parts[k.strip()] = v.strip()
        return parts

    def verify_signature(self, headers: dict[str, Any], body: bytes) -> bool:  # type: ignore[override]
        secret = self.cfg.webhook_secret
        sig = self._parse_signature(self._header(headers, "x-signature"))
        if not secret or "ts" not in sig or "v1" not in sig:
            return False
        try:
            data_id = str((json.loads(body).get("data") or {}).get("id") or "")
        except (ValueError, AttributeError):
            return False
        request_id = self._header(headers, "x-request-id") or ""
        manifest = f"id:{data_id};request-id:{request_id};ts:{sig['ts']};"
        return self._compare(self._hmac_hex(secret, manifest.encode("utf-8")), sig["v1"])

    def _parse_verified(self, headers: dict[str, Any], body: bytes) -> WebhookEvent:
        event = json.loads(body)
        data = event.get("data") or {}
        event_type = str(event.get("type") or event.get("topic") or "")
        base = {
            "id": str(event.get("id") or data.get("id") or ""),
            "type": event_type,
            "provider": self.provider,
            "data": event,
            "raw_headers": dict(headers),
        }
        if event_type == "refund":
            return self._refund_event(base, data)
        if event_type != "payment":
            return WebhookEvent(**base)

        status = str(data.get("status") or "")
        metadata = data.get("metadata") or {}
        return WebhookEvent(
            **base,
            category="payment",
            status=self._event_status(self._map_status(status)),
            provider_transaction_id=str(data["id"]) if data.get("id") is not None else None,
            transaction_id=data.get("external_reference") or metadata.get("transaction_id"),
            order_id=metadata.get("order_id"),
            failure_reason=data.get("status_detail") if status in {"rejected", "cancelled"} else None,
        )

    def _refund_event(self, base: dict[str, Any], data: dict[str, Any]) -> WebhookEvent:
        # Refund notifications carry the refund id, its payment and the refunded amount
        status = str(data.get("status") or "")
        amount = data.get("amount")
        return WebhookEvent(
            **base,
            category="refund",
            status=self._map_refund_status(status) if status else None,
            provider_refund_id=str(data["id"]) if data.get("id") is not None else None,
            provider_transaction_id=str(data["payment_id"]) if data.get("payment_id") is not None else None,
            amount=Decimal(str(amount)) if amount is not None else None,
        )
