"""Pytest bootstrap configuration.

Seed environment variables before test collection and before any module
that reads application settings at import time.
"""
import os

os.environ.setdefault("DATABASE__URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("DEBUG", "true")

import pytest
import pytest_asyncio

from infrastructure.database import build_engine, build_session_factory, create_tables
from infrastructure.idempotency import InMemoryIdempotencyStore
from infrastructure.repositories.payment_repository import (
    SQLAlchemyRefundRepository,
    SQLAlchemyTransactionLedger,
)


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    # File-backed so concurrent sessions each get their own connection
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")
    await create_tables(bind=engine)
    try:
        yield build_session_factory(engine)
    finally:
        await engine.dispose()


@pytest.fixture
def ledger(session_factory):
    return SQLAlchemyTransactionLedger(session_factory)


@pytest.fixture
def refunds(session_factory):
    return SQLAlchemyRefundRepository(session_factory)


@pytest.fixture
def idempotency_store():
    return InMemoryIdempotencyStore()
