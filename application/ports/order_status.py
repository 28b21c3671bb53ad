"""
Port to the order-management component.
"""
from __future__ import annotations

from datetime import datetime
from typing import Protocol, runtime_checkable


@runtime_checkable
class OrderStatusPort(Protocol):
    async def mark_order_paid(self, order_id: str, transaction_id: str, paid_at: datetime) -> None: ...
