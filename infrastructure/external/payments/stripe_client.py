"""
Stripe PaymentIntents adapter using the official stripe-python SDK.

Notes on SDK usage:
- The module-level helpers are blocking; every call runs in a worker thread
  via ``asyncio.to_thread`` so the event loop is never stalled.
- Idempotency keys are supplied via the ``idempotency_key`` kwarg. The same
  key is reused on every retry of one logical payment.
- Webhook verification uses ``stripe.WebhookSignature.verify_header`` with the
  ``Stripe-Signature`` header (``t=<ts>,v1=<hex>`` over ``"{t}.{body}"``).
"""
from __future__ import annotations

import asyncio
import json
from typing import Any, Optional

import stripe

from application.dtos.payments import (
    ChargeRequest,
    OutcomeKind,
    ProviderOutcome,
    RefundRequest,
    RefundResult,
    WebhookEvent,
)
from infrastructure.external.payments.base import BasePaymentClient
from core.settings import payment_settings
from core.logging_config import get_logger


logger = get_logger(__name__)

_PAYMENT_EVENTS = {
    "payment_intent.succeeded",
    "payment_intent.payment_failed",
    "payment_intent.canceled",
    "payment_intent.requires_action",
    "payment_intent.processing",
}
_REFUND_EVENTS = {"refund.created", "refund.updated", "refund.failed", "charge.refund.updated"}


def _to_plain(obj: Any) -> dict[str, Any]:
    """StripeObject -> plain dict (the SDK renders objects as JSON via str())."""
    if obj is None:
        return {}
    if isinstance(obj, dict) and not isinstance(obj, stripe.StripeObject):
        return obj
    return json.loads(str(obj))


class StripeClient(BasePaymentClient):
    provider = "stripe"

    def __init__(
        self,
        *,
        secret_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        tolerance: Optional[int] = None,
    ):
        super().__init__(timeouts=payment_settings.timeouts.model_dump())
        self.secret_key = secret_key or payment_settings.stripe.secret_key
        if not self.secret_key:
            raise RuntimeError("STRIPE__SECRET_KEY not configured")
        self.webhook_secret = webhook_secret or payment_settings.stripe.webhook_secret
        self.tolerance = tolerance if tolerance is not None else payment_settings.webhook.tolerance_seconds
        # Configure module-level key for compatibility across SDK variants
        stripe.api_key = self.secret_key

    async def charge(self, req: ChargeRequest, idempotency_key: str) -> ProviderOutcome:  # type: ignore[override]
        metadata = {str(k): str(v) for k, v in (req.metadata or {}).items()}
        metadata.update({"order_id": req.order_id, "transaction_id": req.transaction_id})
        if req.tip_amount:
            metadata["tip_amount"] = str(req.tip_amount)

        try:
            pi = await asyncio.to_thread(
                stripe.PaymentIntent.create,
                amount=self._to_minor(req.amount, req.currency),
                currency=req.currency.lower(),
                confirm=True,
                payment_method=req.payment_method_token,
                metadata=metadata,
                automatic_payment_methods={"enabled": True, "allow_redirects": "never"},
                expand=["latest_charge"],
                idempotency_key=idempotency_key,
            )
        except stripe.CardError as exc:
            return self._declined_from_error(exc)
        except (stripe.APIConnectionError, stripe.RateLimitError) as exc:
            self._log("stripe_transport_error", error_type=type(exc).__name__)
            return ProviderOutcome.transport(str(exc.user_message or exc), code=type(exc).__name__)
        except stripe.StripeError as exc:
            if isinstance(exc, stripe.APIError) or (exc.http_status or 0) >= 500:
                self._log("stripe_transport_error", error_type=type(exc).__name__, http_status=exc.http_status)
                return ProviderOutcome.transport(str(exc.user_message or exc), code=type(exc).__name__)
            return self._declined_from_error(exc)

        return self._outcome_from_intent(_to_plain(pi))

    def _outcome_from_intent(self, pi: dict[str, Any]) -> ProviderOutcome:
        status = str(pi.get("status") or "")
        kind = self._map_status(status)
        intent_id = pi.get("id")
        if kind is None:
            return ProviderOutcome.declined(
                f"unexpected payment intent status: {status}",
                code="unexpected_status",
                provider_transaction_id=intent_id,
                raw=pi,
            )
        if kind is OutcomeKind.DECLINED:
            error = pi.get("last_payment_error") or {}
            return ProviderOutcome.declined(
                error.get("message") or f"payment {status}",
                code=error.get("decline_code") or error.get("code") or status,
                provider_transaction_id=intent_id,
                raw=pi,
            )

        card = self._card_from_intent(pi)
        requires_action = None
        if kind is OutcomeKind.REQUIRES_ACTION:
            requires_action = {
                "type": "stripe_next_action",
                "next_action": pi.get("next_action"),
                "client_secret": pi.get("client_secret"),
            }
        return ProviderOutcome(
            kind=kind,
            provider_transaction_id=intent_id,
            requires_action=requires_action,
            card_last4=card.get("last4"),
            card_brand=card.get("brand"),
            raw_response=pi,
        )

    @staticmethod
    def _card_from_intent(pi: dict[str, Any]) -> dict[str, Any]:
        charge = pi.get("latest_charge")
        if not isinstance(charge, dict):
            return {}
        details = charge.get("payment_method_details") or {}
        return details.get("card") or {}

    def _declined_from_error(self, exc: stripe.StripeError) -> ProviderOutcome:
        body = exc.json_body or {}
        error = body.get("error") or {}
        intent = error.get("payment_intent") or {}
        self._log("stripe_charge_declined", code=exc.code, decline_code=error.get("decline_code"))
        return ProviderOutcome.declined(
            str(exc.user_message or error.get("message") or exc),
            code=error.get("decline_code") or exc.code or type(exc).__name__,
            provider_transaction_id=intent.get("id"),
            raw=body or None,
        )

    async def refund(self, req: RefundRequest) -> RefundResult:  # type: ignore[override]
        try:
            refund = await asyncio.to_thread(
                stripe.Refund.create,
                payment_intent=req.provider_transaction_id,
                amount=self._to_minor(req.amount, req.currency),
                metadata={"refund_id": req.refund_id, "transaction_id": req.transaction_id, "reason": req.reason or ""},
                idempotency_key=req.refund_id,
            )
        except (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError) as exc:
            # Left pending; refund.* webhooks settle it
            self._log("stripe_refund_transport_error", refund_id=req.refund_id, error_type=type(exc).__name__)
            return RefundResult(status="pending", provider=self.provider, error_message=str(exc))
        except stripe.StripeError as exc:
            return RefundResult(
                status="failed",
                provider=self.provider,
                error_message=str(exc.user_message or exc),
                raw_response=exc.json_body,
            )

        data = _to_plain(refund)
        return RefundResult(
            status=self._map_refund_status(str(data.get("status") or "")),
            provider=self.provider,
            provider_refund_id=data.get("id"),
            raw_response=data,
        )

    def verify_signature(self, headers: dict[str, Any], body: bytes) -> bool:  # type: ignore[override]
        sig = self._header(headers, "Stripe-Signature")
        if not self.webhook_secret or not sig:
            return False
        try:
            stripe.WebhookSignature.verify_header(body.decode("utf-8"), sig, self.webhook_secret, self.tolerance)
        except (stripe.SignatureVerificationError, UnicodeDecodeError):
            return False
        return True

    def _parse_verified(self, headers: dict[str, Any], body: bytes) -> WebhookEvent:
        event = json.loads(body)
        event_type = str(event.get("type") or "")
        obj = (event.get("data") or {}).get("object") or {}
        base = {
            "id": str(event.get("id") or ""),
            "type": event_type,
            "provider": self.provider,
            "data": event,
            "raw_headers": dict(headers),
        }

        if event_type in _PAYMENT_EVENTS:
            metadata = obj.get("metadata") or {}
            status = str(obj.get("status") or "")
            if event_type in {"payment_intent.payment_failed", "payment_intent.canceled"}:
                status = "canceled"
            error = obj.get("last_payment_error") or {}
            return WebhookEvent(
                **base,
                category="payment",
                status=self._event_status(self._map_status(status)),
                provider_transaction_id=obj.get("id"),
                transaction_id=metadata.get("transaction_id"),
                order_id=metadata.get("order_id"),
                failure_reason=error.get("message") or obj.get("cancellation_reason"),
            )

        if event_type == "charge.refunded":
            refunds = ((obj.get("refunds") or {}).get("data")) or []
            if not refunds:
                return WebhookEvent(**base)
            obj = refunds[0]
        elif event_type not in _REFUND_EVENTS:
            return WebhookEvent(**base)

        metadata = obj.get("metadata") or {}
        return WebhookEvent(
            **base,
            category="refund",
            status=self._map_refund_status(str(obj.get("status") or "")),
            provider_refund_id=obj.get("id"),
            provider_transaction_id=obj.get("payment_intent"),
            refund_id=metadata.get("refund_id"),
            transaction_id=metadata.get("transaction_id"),
        )
