import asyncio
from datetime import datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy import text

from domain.common.exceptions import DomainValidationException
from domain.payment.entity import CardDetails, Refund, RefundStatus, TransactionStatus
from domain.payment.exceptions import DuplicateTransaction, TransactionNotFound
from domain.payment.state import TransitionOutcome
from infrastructure.repositories.order_status_repository import (
    OrderNotFoundError,
    SQLAlchemyOrderStatusRepository,
)
from tests.payments.fakes import make_transaction


@pytest.mark.asyncio
async def test_create_pending_and_find(ledger):
    created = await ledger.create_pending(make_transaction("tx-1"))

    assert created.status is TransactionStatus.PENDING
    assert created.amount == Decimal("19.99")
    assert created.created_at is not None and created.created_at.tzinfo is not None
    found = await ledger.find_by_id("tx-1")
    assert found.order_id == "O1"
    assert await ledger.find_by_id("missing") is None


@pytest.mark.asyncio
async def test_create_pending_rejects_duplicate_id(ledger):
    await ledger.create_pending(make_transaction("tx-1"))
    with pytest.raises(DuplicateTransaction):
        await ledger.create_pending(make_transaction("tx-1"))


@pytest.mark.asyncio
async def test_update_status_applies_and_coalesces_provider_id(ledger):
    await ledger.create_pending(make_transaction("tx-1"))

    result = await ledger.update_status(
        "tx-1",
        TransactionStatus.SUCCEEDED,
        provider_transaction_id="pi_1",
        raw_response={"id": "pi_1"},
        card=CardDetails(last4="4242", brand="visa"),
    )
    assert result.outcome is TransitionOutcome.APPLIED
    assert result.previous_status == "pending"
    assert result.entity.provider_transaction_id == "pi_1"
    assert result.entity.card_last4 == "4242"

    again = await ledger.update_status("tx-1", TransactionStatus.SUCCEEDED, provider_transaction_id="pi_other")
    assert again.outcome is TransitionOutcome.NOOP
    assert (await ledger.find_by_id("tx-1")).provider_transaction_id == "pi_1"

    tx = await ledger.find_by_provider_transaction_id("stripe", "pi_1")
    assert tx.id == "tx-1"
    assert await ledger.find_by_provider_transaction_id("square", "pi_1") is None


@pytest.mark.asyncio
async def test_success_then_failed_is_conflict_and_writes_nothing(ledger):
    await ledger.create_pending(make_transaction("tx-1"))
    await ledger.update_status("tx-1", TransactionStatus.SUCCEEDED, provider_transaction_id="pi_1")
    before = await ledger.find_by_id("tx-1")

    result = await ledger.update_status("tx-1", TransactionStatus.FAILED, failure_reason="card_declined")

    assert result.outcome is TransitionOutcome.CONFLICT
    after = await ledger.find_by_id("tx-1")
    assert after.status is TransactionStatus.SUCCEEDED
    assert after.failure_reason is None
    assert after.updated_at == before.updated_at


@pytest.mark.asyncio
async def test_regression_is_noop_but_fills_missing_provider_id(ledger):
    await ledger.create_pending(make_transaction("tx-1"))
    await ledger.update_status("tx-1", TransactionStatus.REQUIRES_ACTION)

    result = await ledger.update_status("tx-1", TransactionStatus.PENDING, provider_transaction_id="mp_1")

    assert result.outcome is TransitionOutcome.NOOP
    tx = await ledger.find_by_id("tx-1")
    assert tx.status is TransactionStatus.REQUIRES_ACTION
    assert tx.provider_transaction_id == "mp_1"


@pytest.mark.asyncio
async def test_late_success_after_failure(ledger):
    await ledger.create_pending(make_transaction("tx-1"))
    await ledger.update_status("tx-1", TransactionStatus.FAILED, failure_reason="timeout")

    result = await ledger.update_status("tx-1", TransactionStatus.SUCCEEDED, provider_transaction_id="pi_1")

    assert result.applied
    tx = await ledger.find_by_id("tx-1")
    assert tx.status is TransactionStatus.SUCCEEDED
    assert tx.failure_reason is None


@pytest.mark.asyncio
async def test_concurrent_writers_converge_on_success(ledger):
    await ledger.create_pending(make_transaction("tx-1"))

    results = await asyncio.gather(
        ledger.update_status("tx-1", TransactionStatus.SUCCEEDED, provider_transaction_id="pi_1"),
        ledger.update_status("tx-1", TransactionStatus.SUCCEEDED, provider_transaction_id="pi_1"),
    )

    assert sorted(r.outcome.value for r in results) == ["applied", "noop"]
    assert (await ledger.find_by_id("tx-1")).status is TransactionStatus.SUCCEEDED


@pytest.mark.asyncio
async def test_update_unknown_transaction(ledger):
    with pytest.raises(TransactionNotFound):
        await ledger.update_status("missing", TransactionStatus.SUCCEEDED)


@pytest.mark.asyncio
async def test_find_by_order_id_returns_newest(ledger):
    first = make_transaction("tx-1")
    first.created_at = datetime(2025, 1, 1, tzinfo=timezone.utc)
    second = make_transaction("tx-2")
    second.created_at = datetime(2025, 1, 2, tzinfo=timezone.utc)
    await ledger.create_pending(first)
    await ledger.create_pending(second)

    assert (await ledger.find_by_order_id("O1")).id == "tx-2"
    assert await ledger.find_by_order_id("O2") is None


@pytest.mark.asyncio
async def test_list_and_count_transactions_with_filters(ledger):
    for i, (order_id, provider) in enumerate([("O1", "stripe"), ("O1", "square"), ("O2", "stripe")]):
        tx = make_transaction(f"tx-{i}", order_id=order_id, provider=provider)
        tx.created_at = datetime(2025, 1, i + 1, tzinfo=timezone.utc)
        await ledger.create_pending(tx)
    await ledger.update_status("tx-2", TransactionStatus.SUCCEEDED, provider_transaction_id="pi_2")

    assert [t.id for t in await ledger.list_transactions()] == ["tx-2", "tx-1", "tx-0"]
    assert [t.id for t in await ledger.list_transactions(order_id="O1")] == ["tx-1", "tx-0"]
    assert [t.id for t in await ledger.list_transactions(provider="stripe", skip=1, limit=1)] == ["tx-0"]
    assert [t.id for t in await ledger.list_transactions(status=TransactionStatus.SUCCEEDED)] == ["tx-2"]
    assert await ledger.count_transactions() == 3
    assert await ledger.count_transactions(order_id="O1", provider="square") == 1
    assert await ledger.count_transactions(status=TransactionStatus.FAILED) == 0


@pytest.mark.asyncio
async def test_flag_for_review(ledger):
    await ledger.create_pending(make_transaction("tx-1"))

    await ledger.flag_for_review("tx-1", "webhook_failed_after_success")

    tx = await ledger.find_by_id("tx-1")
    assert tx.review_required is True
    assert tx.review_reason == "webhook_failed_after_success"
    with pytest.raises(TransactionNotFound):
        await ledger.flag_for_review("missing", "x")


@pytest.mark.asyncio
async def test_refund_repository_lifecycle(ledger, refunds):
    await ledger.create_pending(make_transaction("tx-1"))
    await refunds.create_pending(
        Refund(id="rf-1", transaction_id="tx-1", provider="stripe", amount=Decimal("5.00"), currency="USD")
    )

    pending_noop = await refunds.update_status("rf-1", RefundStatus.PENDING, provider_refund_id="re_1")
    assert pending_noop.outcome is TransitionOutcome.NOOP
    assert (await refunds.find_by_provider_refund_id("stripe", "re_1")).id == "rf-1"

    done = await refunds.update_status("rf-1", RefundStatus.SUCCEEDED, raw_response={"id": "re_1"})
    assert done.applied
    conflict = await refunds.update_status("rf-1", RefundStatus.FAILED)
    assert conflict.conflict
    assert (await refunds.find_by_id("rf-1")).status is RefundStatus.SUCCEEDED
    assert [r.id for r in await refunds.list_by_transaction("tx-1")] == ["rf-1"]


@pytest.mark.asyncio
async def test_order_status_repository_marks_paid(session_factory):
    async with session_factory() as session:
        await session.execute(
            text("CREATE TABLE orders (id VARCHAR(36) PRIMARY KEY, payment_status VARCHAR(20), paid_at TIMESTAMP)")
        )
        await session.execute(text("INSERT INTO orders (id, payment_status) VALUES ('O1', 'unpaid')"))
        await session.commit()
    repo = SQLAlchemyOrderStatusRepository(session_factory)

    await repo.mark_order_paid("O1", "tx-1", datetime.now(timezone.utc))

    async with session_factory() as session:
        status = (await session.execute(text("SELECT payment_status FROM orders WHERE id = 'O1'"))).scalar_one()
    assert status == "paid"
    with pytest.raises(OrderNotFoundError):
        await repo.mark_order_paid("O404", "tx-2", datetime.now(timezone.utc))


def test_order_status_repository_rejects_unsafe_table_name(session_factory):
    with pytest.raises(ValueError):
        SQLAlchemyOrderStatusRepository(session_factory, table_name="orders; DROP TABLE orders")


def test_entities_reject_amounts_finer_than_the_currency_allows():
    with pytest.raises(DomainValidationException):
        make_transaction(amount="19.999")
    with pytest.raises(DomainValidationException):
        Refund(id="rf-1", transaction_id="tx-1", provider="stripe", amount=Decimal("1.5"), currency="JPY")
    assert make_transaction(amount="19.990").amount == Decimal("19.99")
