"""Idempotency store implementations."""
from .inmemory import InMemoryIdempotencyStore
from .redis_store import RedisIdempotencyStore

__all__ = ["InMemoryIdempotencyStore", "RedisIdempotencyStore"]
