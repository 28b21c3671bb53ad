import json
from decimal import Decimal

import httpx
import pytest
import pytest_asyncio

from api.dependencies import (
    get_idempotency_store,
    get_order_status_port,
    get_provider_registry,
    get_refund_repository,
    get_transaction_ledger,
)
from application.dtos.payments import OutcomeKind, ProviderOutcome, WebhookEvent
from application.services.provider_registry import ProviderRegistry
from main import app
from tests.payments.fakes import RecordingOrderStatus, ScriptedGateway, succeeded

PAYMENT = {
    "order_id": "O1",
    "amount": "19.99",
    "currency": "usd",
    "method": "card",
    "provider": "stripe",
    "payment_method_token": "pm_card_visa",
}


@pytest.fixture
def gateway():
    return ScriptedGateway([succeeded("pi_1", card_last4="4242", card_brand="visa")])


@pytest.fixture
def order_status():
    return RecordingOrderStatus()


@pytest_asyncio.fixture
async def client(ledger, refunds, idempotency_store, gateway, order_status):
    registry = ProviderRegistry([gateway])
    app.dependency_overrides[get_provider_registry] = lambda: registry
    app.dependency_overrides[get_transaction_ledger] = lambda: ledger
    app.dependency_overrides[get_refund_repository] = lambda: refunds
    app.dependency_overrides[get_idempotency_store] = lambda: idempotency_store
    app.dependency_overrides[get_order_status_port] = lambda: order_status
    transport = httpx.ASGITransport(app=app)
    try:
        async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as c:
            yield c
    finally:
        app.dependency_overrides.clear()


@pytest.mark.asyncio
async def test_health(client):
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["data"] == {"status": "healthy"}
    assert "x-request-id" in resp.headers


@pytest.mark.asyncio
async def test_process_payment_and_read_back(client, gateway, order_status):
    resp = await client.post("/api/v1/payments/process", json=PAYMENT, headers={"Idempotency-Key": "K1"})

    assert resp.status_code == 200
    body = resp.json()
    assert body["code"] == 0
    data = body["data"]
    assert data["status"] == "succeeded"
    assert data["provider_transaction_id"] == "pi_1"
    assert gateway.calls[0][1] == "K1"
    assert order_status.calls[0][0] == "O1"

    tx = (await client.get(f"/api/v1/payments/transactions/{data['transaction_id']}")).json()["data"]
    assert tx["status"] == "succeeded"
    assert tx["currency"] == "USD"
    assert tx["card_last4"] == "4242"

    replay = await client.post("/api/v1/payments/process", json=PAYMENT, headers={"Idempotency-Key": "K1"})
    assert replay.json()["data"] == data
    assert len(gateway.calls) == 1


@pytest.mark.asyncio
async def test_body_idempotency_key_wins_over_header(client, gateway):
    await client.post(
        "/api/v1/payments/process",
        json={**PAYMENT, "idempotency_key": "from-body"},
        headers={"Idempotency-Key": "from-header"},
    )
    assert gateway.calls[0][1] == "from-body"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "override",
    [
        {"amount": "-1"},
        {"currency": "XYZ"},
        {"method": "cheque"},
        {"order_id": ""},
        {"amount": "19.999"},
        {"amount": "100.5", "currency": "JPY"},
    ],
)
async def test_invalid_payment_request_is_rejected(client, gateway, override):
    resp = await client.post("/api/v1/payments/process", json={**PAYMENT, **override})

    assert resp.status_code == 422
    assert resp.json()["error"]["type"] == "InvalidRequest"
    assert gateway.calls == []


@pytest.mark.asyncio
async def test_unknown_provider_and_missing_transaction(client):
    unknown = await client.post("/api/v1/payments/process", json={**PAYMENT, "provider": "paypal"})
    missing = await client.get("/api/v1/payments/transactions/nope")

    assert unknown.status_code == 400
    assert unknown.json()["error"]["type"] == "UnknownProvider"
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_refund_endpoints(client):
    paid = (await client.post("/api/v1/payments/process", json=PAYMENT)).json()["data"]
    tx_id = paid["transaction_id"]

    created = await client.post(
        f"/api/v1/payments/transactions/{tx_id}/refunds", json={"amount": "5.00", "reason": "cold food"}
    )
    listed = await client.get(f"/api/v1/payments/transactions/{tx_id}/refunds")
    too_much = await client.post(f"/api/v1/payments/transactions/{tx_id}/refunds", json={"amount": "100"})

    assert created.status_code == 200
    assert created.json()["data"]["status"] == "succeeded"
    assert [r["id"] for r in listed.json()["data"]] == [created.json()["data"]["id"]]
    assert too_much.status_code == 422


@pytest.mark.asyncio
async def test_webhook_is_applied_and_acknowledged(client, ledger, gateway):
    gateway.outcomes = [ProviderOutcome(kind=OutcomeKind.PENDING, provider_transaction_id="pi_1")]
    paid = (await client.post("/api/v1/payments/process", json=PAYMENT)).json()["data"]
    assert paid["status"] == "pending"
    body = WebhookEvent(
        id="evt_1",
        type="payment_intent.succeeded",
        provider="stripe",
        category="payment",
        status="succeeded",
        provider_transaction_id="pi_1",
    ).model_dump_json()

    resp = await client.post(
        "/api/v1/payments/webhooks/stripe",
        content=body,
        headers={"x-test-signature": "valid", "content-type": "application/json"},
    )

    assert resp.status_code == 200
    assert resp.json()["data"]["outcome"] == "applied"
    assert (await ledger.find_by_id(paid["transaction_id"])).status.value == "succeeded"


@pytest.mark.asyncio
async def test_webhook_with_invalid_signature_is_400(client):
    resp = await client.post(
        "/api/v1/payments/webhooks/stripe",
        content=json.dumps({"id": "evt_1", "type": "x", "provider": "stripe"}),
        headers={"x-test-signature": "forged"},
    )

    assert resp.status_code == 400
    assert resp.json()["error"]["type"] == "SignatureInvalid"


@pytest.mark.asyncio
async def test_list_payments_with_filters(client, gateway):
    gateway.outcomes = [succeeded("pi_1"), ProviderOutcome(kind=OutcomeKind.PENDING, provider_transaction_id="pi_2")]
    first = (await client.post("/api/v1/payments/process", json=PAYMENT)).json()["data"]
    second = (await client.post("/api/v1/payments/process", json={**PAYMENT, "order_id": "O2"})).json()["data"]

    everything = (await client.get("/api/v1/payments")).json()["data"]
    pending = (await client.get("/api/v1/payments", params={"status": "pending"})).json()["data"]
    paged = (await client.get("/api/v1/payments", params={"limit": 1, "offset": 1})).json()["data"]
    by_order = (await client.get("/api/v1/payments/orders/O1")).json()["data"]
    bad_status = await client.get("/api/v1/payments", params={"status": "refunded"})

    assert everything["total"] == 2
    assert {tx["id"] for tx in everything["items"]} == {first["transaction_id"], second["transaction_id"]}
    assert [tx["id"] for tx in pending["items"]] == [second["transaction_id"]]
    assert paged["total"] == 2
    assert paged["limit"] == 1
    assert paged["offset"] == 1
    assert len(paged["items"]) == 1
    assert [tx["id"] for tx in by_order] == [first["transaction_id"]]
    assert bad_status.status_code == 422


@pytest.mark.asyncio
async def test_cancel_endpoint(client, gateway):
    gateway.outcomes = [ProviderOutcome(kind=OutcomeKind.PENDING, provider_transaction_id="pi_1"), succeeded("pi_2")]
    pending = (await client.post("/api/v1/payments/process", json=PAYMENT)).json()["data"]
    paid = (await client.post("/api/v1/payments/process", json={**PAYMENT, "order_id": "O2"})).json()["data"]

    cancelled = await client.post(f"/api/v1/payments/transactions/{pending['transaction_id']}/cancel")
    rejected = await client.post(f"/api/v1/payments/transactions/{paid['transaction_id']}/cancel")
    missing = await client.post("/api/v1/payments/transactions/nope/cancel")

    assert cancelled.status_code == 200
    assert cancelled.json()["data"]["status"] == "failed"
    assert cancelled.json()["data"]["failure_reason"] == "cancelled"
    assert rejected.status_code == 409
    assert rejected.json()["error"]["type"] == "TransactionNotCancellable"
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_get_refund_endpoint(client):
    paid = (await client.post("/api/v1/payments/process", json=PAYMENT)).json()["data"]
    created = (
        await client.post(f"/api/v1/payments/transactions/{paid['transaction_id']}/refunds", json={"amount": "5.00"})
    ).json()["data"]

    found = await client.get(f"/api/v1/payments/refunds/{created['id']}")
    missing = await client.get("/api/v1/payments/refunds/nope")

    assert found.status_code == 200
    assert Decimal(found.json()["data"]["amount"]) == Decimal("5.00")
    assert missing.status_code == 404
    assert missing.json()["error"]["type"] == "RefundNotFound"
