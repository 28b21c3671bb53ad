"""
Redis-backed IdempotencyStore.

Keys (inside the client namespace):
- ``idempotency:{key}``          completed PaymentResponse JSON, TTL ttl_seconds
- ``idempotency:{key}:inflight``  holder transaction id, TTL in_flight_ttl_seconds

Any RedisError becomes IdempotencyUnavailable so the orchestrator fails closed.
"""
from __future__ import annotations

from typing import Optional

from pydantic import ValidationError
from redis.exceptions import RedisError

from application.dtos.payments import PaymentResponse
from application.ports.idempotency import IdempotencyStore, Reservation
from core.logging_config import get_logger
from domain.payment.exceptions import IdempotencyUnavailable
from infrastructure.external.cache.redis_client import RedisClient


logger = get_logger(__name__)


class RedisIdempotencyStore(IdempotencyStore):
    def __init__(self, cache: RedisClient, prefix: str = "idempotency") -> None:
        self._cache = cache
        self._prefix = prefix

    def _response_key(self, key: str) -> str:
        return f"{self._prefix}:{key}"

    def _inflight_key(self, key: str) -> str:
        return f"{self._prefix}:{key}:inflight"

    def _unavailable(self, op: str, key: str, exc: Exception) -> IdempotencyUnavailable:
        logger.error("idempotency_store_unavailable", op=op, idempotency_key=key, error=str(exc))
        return IdempotencyUnavailable(f"Idempotency store unavailable during {op}", key=key)

    async def lookup(self, key: str) -> Optional[PaymentResponse]:  # type: ignore[override]
        try:
            raw = await self._cache.get_raw(self._response_key(key))
        except RedisError as exc:
            raise self._unavailable("lookup", key, exc) from exc
        if raw is None:
            return None
        try:
            return PaymentResponse.model_validate_json(raw)
        except ValidationError as exc:
            # Presence is known but the payload is unusable; refuse rather than re-charge
            raise self._unavailable("decode", key, exc) from exc

    async def store(self, key: str, response: PaymentResponse, ttl: int) -> bool:  # type: ignore[override]
        try:
            return await self._cache.set(self._response_key(key), response.model_dump_json(), ttl=ttl, nx=True)
        except RedisError as exc:
            raise self._unavailable("store", key, exc) from exc

    async def reserve(self, key: str, transaction_id: str, ttl: int) -> Reservation:  # type: ignore[override]
        try:
            acquired = await self._cache.set(self._inflight_key(key), transaction_id, ttl=ttl, nx=True)
            if acquired:
                return Reservation(acquired=True, holder_transaction_id=transaction_id)
            holder = await self._cache.get_raw(self._inflight_key(key))
        except RedisError as exc:
            raise self._unavailable("reserve", key, exc) from exc
        return Reservation(acquired=False, holder_transaction_id=holder)

    async def holder(self, key: str) -> Optional[str]:  # type: ignore[override]
        try:
            return await self._cache.get_raw(self._inflight_key(key))
        except RedisError as exc:
            raise self._unavailable("holder", key, exc) from exc

    async def release(self, key: str, transaction_id: str) -> bool:  # type: ignore[override]
        try:
            return await self._cache.compare_and_delete(self._inflight_key(key), transaction_id)
        except RedisError as exc:
            raise self._unavailable("release", key, exc) from exc
