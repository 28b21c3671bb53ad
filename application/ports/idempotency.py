"""
Idempotency store port.

Maps an idempotency key to the completed PaymentResponse, plus a short-lived
in-flight reservation so that lookup-then-charge is atomic across callers.
Every backend failure surfaces as IdempotencyUnavailable; callers must not
charge when presence of a key is unknown.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from application.dtos.payments import PaymentResponse


@dataclass(frozen=True)
class Reservation:
    acquired: bool
    holder_transaction_id: Optional[str]


class IdempotencyStore(ABC):
    @abstractmethod
    async def lookup(self, key: str) -> Optional[PaymentResponse]:
        """Return the cached response for key, if any. No side effects."""

    @abstractmethod
    async def store(self, key: str, response: PaymentResponse, ttl: int) -> bool:
        """Store once; returns False when a completed response already exists."""

    @abstractmethod
    async def reserve(self, key: str, transaction_id: str, ttl: int) -> Reservation:
        """Atomically claim the key for transaction_id if nobody holds it."""

    @abstractmethod
    async def holder(self, key: str) -> Optional[str]:
        """Transaction id currently holding the reservation."""

    @abstractmethod
    async def release(self, key: str, transaction_id: str) -> bool:
        """Drop the reservation only if transaction_id still holds it."""
