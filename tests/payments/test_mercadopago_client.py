import hashlib
import hmac
import json
from decimal import Decimal

import httpx
import pytest

from application.dtos.payments import ChargeRequest, OutcomeKind, RefundRequest
from core.settings import MercadoPagoSettings
from domain.payment.entity import PaymentMethod
from domain.payment.exceptions import SignatureInvalid
from infrastructure.external.payments.mercadopago_client import MercadoPagoClient

WEBHOOK_SECRET = "mp-secret"


def _client(handler) -> MercadoPagoClient:
    return MercadoPagoClient(
        settings=MercadoPagoSettings(access_token="mp-token", webhook_secret=WEBHOOK_SECRET),
        transport=httpx.MockTransport(handler),
    )


def _charge(**overrides) -> ChargeRequest:
    data = {
        "transaction_id": "tx-1",
        "order_id": "O1",
        "amount": Decimal("150.00"),
        "currency": "BRL",
        "method": PaymentMethod.QR,
        "payment_method_token": "pix",
    }
    data.update(overrides)
    return ChargeRequest(**data)


def _signed_headers(data_id: str, *, request_id: str = "req-1", ts: str = "1700000000") -> dict:
    manifest = f"id:{data_id};request-id:{request_id};ts:{ts};"
    v1 = hmac.new(WEBHOOK_SECRET.encode(), manifest.encode(), hashlib.sha256).hexdigest()
    return {"x-signature": f"ts={ts},v1={v1}", "x-request-id": request_id}


@pytest.mark.asyncio
async def test_qr_charge_returns_requires_action_payload():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["key"] = request.headers["x-idempotency-key"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            201,
            json={
                "id": 123456,
                "status": "pending",
                "status_detail": "pending_waiting_transfer",
                "point_of_interaction": {
                    "transaction_data": {
                        "qr_code": "00020126...",
                        "qr_code_base64": "iVBORw0KGgo=",
                        "ticket_url": "https://mp.example/ticket",
                    }
                },
            },
        )

    client = _client(handler)
    outcome = await client.charge(_charge(), "K1")
    await client.aclose()

    assert outcome.kind is OutcomeKind.REQUIRES_ACTION
    assert outcome.provider_transaction_id == "123456"
    assert outcome.requires_action == {
        "type": "qr",
        "qr_code": "00020126...",
        "qr_code_base64": "iVBORw0KGgo=",
        "ticket_url": "https://mp.example/ticket",
    }
    assert seen["key"] == "K1"
    assert seen["body"]["payment_method_id"] == "pix"
    assert seen["body"]["external_reference"] == "tx-1"
    assert seen["body"]["transaction_amount"] == 150.0


@pytest.mark.asyncio
async def test_pending_without_qr_is_plain_pending():
    client = _client(lambda request: httpx.Response(201, json={"id": 9, "status": "pending"}))
    outcome = await client.charge(_charge(), "K1")
    assert outcome.kind is OutcomeKind.PENDING
    assert outcome.requires_action is None


@pytest.mark.asyncio
async def test_card_charge_approved():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            201,
            json={"id": 77, "status": "approved", "payment_method_id": "master", "card": {"last_four_digits": "4444"}},
        )

    outcome = await _client(handler).charge(
        _charge(method=PaymentMethod.CARD, payment_method_token="card-token"), "K1"
    )

    assert outcome.kind is OutcomeKind.SUCCEEDED
    assert outcome.card_last4 == "4444"
    assert outcome.card_brand == "master"
    assert seen["body"]["token"] == "card-token"
    assert seen["body"]["installments"] == 1


@pytest.mark.asyncio
async def test_rejected_payment_is_declined():
    client = _client(
        lambda request: httpx.Response(201, json={"id": 5, "status": "rejected", "status_detail": "cc_rejected_high_risk"})
    )
    outcome = await client.charge(_charge(), "K1")
    assert outcome.kind is OutcomeKind.DECLINED
    assert outcome.error_code == "cc_rejected_high_risk"
    assert outcome.provider_transaction_id == "5"


@pytest.mark.asyncio
async def test_bad_request_and_server_error():
    bad = _client(
        lambda request: httpx.Response(400, json={"message": "invalid token", "cause": [{"code": 2006}]})
    )
    down = _client(lambda request: httpx.Response(502, json={"message": "bad gateway"}))

    declined = await bad.charge(_charge(), "K1")
    transient = await down.charge(_charge(), "K1")

    assert declined.kind is OutcomeKind.DECLINED
    assert declined.error_code == "2006"
    assert transient.kind is OutcomeKind.TRANSPORT_ERROR


@pytest.mark.asyncio
async def test_refund_posts_to_payment_with_refund_key():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["key"] = request.headers["x-idempotency-key"]
        return httpx.Response(201, json={"id": 999, "status": "approved"})

    result = await _client(handler).refund(
        RefundRequest(
            refund_id="rf-1",
            transaction_id="tx-1",
            provider_transaction_id="123456",
            amount=Decimal("50.00"),
            currency="BRL",
        )
    )

    assert result.status == "succeeded"
    assert result.provider_refund_id == "999"
    assert seen["path"] == "/v1/payments/123456/refunds"
    assert seen["key"] == "rf-1"


def test_webhook_signature_and_payment_event():
    client = _client(lambda request: httpx.Response(200))
    body = json.dumps(
        {
            "id": 555,
            "type": "payment",
            "data": {"id": "123456", "status": "approved", "external_reference": "tx-1", "metadata": {"order_id": "O1"}},
        }
    ).encode()

    event = client.parse_webhook(_signed_headers("123456"), body)

    assert event.id == "555"
    assert event.category == "payment"
    assert event.status == "succeeded"
    assert event.provider_transaction_id == "123456"
    assert event.transaction_id == "tx-1"
    assert event.order_id == "O1"


def test_webhook_without_status_is_not_actionable():
    client = _client(lambda request: httpx.Response(200))
    body = json.dumps({"id": 1, "type": "payment", "data": {"id": "123456"}}).encode()

    event = client.parse_webhook(_signed_headers("123456"), body)

    assert event.category == "payment"
    assert event.status is None


def test_webhook_signature_mismatch():
    client = _client(lambda request: httpx.Response(200))
    body = json.dumps({"id": 1, "type": "payment", "data": {"id": "123456", "status": "approved"}}).encode()

    assert client.verify_signature(_signed_headers("999"), body) is False
    assert client.verify_signature({"x-signature": "garbage"}, body) is False
    with pytest.raises(SignatureInvalid):
        client.parse_webhook(_signed_headers("123456", request_id="other"), body.replace(b"123456", b"654321"))


def test_webhook_refund_event():
    client = _client(lambda request: httpx.Response(200))
    body = json.dumps(
        {
            "id": 777,
            "type": "refund",
            "action": "refund.updated",
            "data": {"id": 999, "payment_id": 123456, "status": "approved", "amount": 25.5},
        }
    ).encode()

    event = client.parse_webhook(_signed_headers("999"), body)

    assert event.category == "refund"
    assert event.status == "succeeded"
    assert event.provider_refund_id == "999"
    assert event.provider_transaction_id == "123456"
    assert event.amount == Decimal("25.5")
