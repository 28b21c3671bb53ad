"""
订单状态适配器 - 实现 OrderStatusPort

订单表属于订单管理组件，这里只执行支付完成后需要的那一条 UPDATE，
不为订单表定义 ORM 模型。
"""
from __future__ import annotations

import re
from datetime import datetime

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from application.ports.order_status import OrderStatusPort
from core.logging_config import get_logger


logger = get_logger(__name__)

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class OrderNotFoundError(LookupError):
    pass


class SQLAlchemyOrderStatusRepository(OrderStatusPort):
    def __init__(self, session_factory: async_sessionmaker[AsyncSession], *, table_name: str = "orders"):
        if not _IDENTIFIER.match(table_name):
            raise ValueError(f"Invalid orders table name: {table_name!r}")
        self.session_factory = session_factory
        self._stmt = text(
            f"UPDATE {table_name} SET payment_status = 'paid', paid_at = :paid_at WHERE id = :order_id"
        )

    async def mark_order_paid(self, order_id: str, transaction_id: str, paid_at: datetime) -> None:
        async with self.session_factory() as session:
            result = await session.execute(self._stmt, {"order_id": order_id, "paid_at": paid_at})
            await session.commit()
        if result.rowcount == 0:
            raise OrderNotFoundError(f"Order {order_id} not found")
        logger.info("order_payment_status_updated", order_id=order_id, transaction_id=transaction_id)
