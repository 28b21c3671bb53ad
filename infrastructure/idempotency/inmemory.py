"""In-memory implementation of IdempotencyStore.

Single-process only. Useful for local dev and tests.
"""
from __future__ import annotations

import asyncio
import time
from typing import Callable, Optional

from application.dtos.payments import PaymentResponse
from application.ports.idempotency import IdempotencyStore, Reservation


class InMemoryIdempotencyStore(IdempotencyStore):
    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._responses: dict[str, tuple[str, float]] = {}
        self._reservations: dict[str, tuple[str, float]] = {}
        self._lock = asyncio.Lock()

    def _alive(self, table: dict[str, tuple[str, float]], key: str) -> Optional[str]:
        entry = table.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= self._clock():
            del table[key]
            return None
        return value

    async def lookup(self, key: str) -> Optional[PaymentResponse]:  # type: ignore[override]
        async with self._lock:
            raw = self._alive(self._responses, key)
        return PaymentResponse.model_validate_json(raw) if raw is not None else None

    async def store(self, key: str, response: PaymentResponse, ttl: int) -> bool:  # type: ignore[override]
        async with self._lock:
            if self._alive(self._responses, key) is not None:
                return False
            self._responses[key] = (response.model_dump_json(), self._clock() + ttl)
            return True

    async def reserve(self, key: str, transaction_id: str, ttl: int) -> Reservation:  # type: ignore[override]
        async with self._lock:
            holder = self._alive(self._reservations, key)
            if holder is not None:
                return Reservation(acquired=False, holder_transaction_id=holder)
            self._reservations[key] = (transaction_id, self._clock() + ttl)
            return Reservation(acquired=True, holder_transaction_id=transaction_id)

    async def holder(self, key: str) -> Optional[str]:  # type: ignore[override]
        async with self._lock:
            return self._alive(self._reservations, key)

    async def release(self, key: str, transaction_id: str) -> bool:  # type: ignore[override]
        async with self._lock:
            if self._alive(self._reservations, key) != transaction_id:
                return False
            del self._reservations[key]
            return True
