"""
交易账本仓储接口 - 定义账本数据访问的抽象接口

账本只追加、不删除；每次写入都会刷新 updated_at。
"""
from abc import ABC, abstractmethod
from typing import Any, List, Optional

from .entity import CardDetails, Refund, RefundStatus, Transaction, TransactionStatus
from .state import TransitionResult


class TransactionLedger(ABC):
    """交易账本抽象接口 - 只定义能做什么，不管怎么做"""

    @abstractmethod
    async def create_pending(self, transaction: Transaction) -> Transaction:
        """写入 pending 记录；id 已存在时抛出 DuplicateTransaction"""
        pass

    @abstractmethod
    async def update_status(
        self,
        transaction_id: str,
        status: TransactionStatus,
        *,
        provider_transaction_id: Optional[str] = None,
        raw_response: Optional[dict[str, Any]] = None,
        failure_reason: Optional[str] = None,
        card: Optional[CardDetails] = None,
    ) -> TransitionResult[Transaction]:
        """按状态转换表进行 compare-and-set 写入"""
        pass

    @abstractmethod
    async def find_by_id(self, transaction_id: str) -> Optional[Transaction]:
        """根据内部ID获取交易"""
        pass

    @abstractmethod
    async def find_by_provider_transaction_id(
        self,
        provider: str,
        provider_transaction_id: str,
    ) -> Optional[Transaction]:
        """根据渠道交易ID获取交易"""
        pass

    @abstractmethod
    async def find_by_order_id(self, order_id: str) -> Optional[Transaction]:
        """获取订单最新的一条交易"""
        pass

    @abstractmethod
    async def list_transactions(
        self,
        *,
        order_id: Optional[str] = None,
        status: Optional[TransactionStatus] = None,
        provider: Optional[str] = None,
        skip: int = 0,
        limit: int = 50,
    ) -> List[Transaction]:
        """按条件分页查询交易，按创建时间倒序"""
        pass

    @abstractmethod
    async def count_transactions(
        self,
        *,
        order_id: Optional[str] = None,
        status: Optional[TransactionStatus] = None,
        provider: Optional[str] = None,
    ) -> int:
        pass

    @abstractmethod
    async def flag_for_review(self, transaction_id: str, reason: str) -> None:
        """标记人工复核"""
        pass


class RefundRepository(ABC):
    """退款仓储抽象接口"""

    @abstractmethod
    async def create_pending(self, refund: Refund) -> Refund:
        pass

    @abstractmethod
    async def find_by_id(self, refund_id: str) -> Optional[Refund]:
        pass

    @abstractmethod
    async def find_by_provider_refund_id(self, provider: str, provider_refund_id: str) -> Optional[Refund]:
        """根据渠道退款ID获取退款"""
        pass

    @abstractmethod
    async def update_status(
        self,
        refund_id: str,
        status: RefundStatus,
        *,
        provider_refund_id: Optional[str] = None,
        raw_response: Optional[dict[str, Any]] = None,
    ) -> TransitionResult[Refund]:
        """与交易相同的状态转换语义"""
        pass

    @abstractmethod
    async def list_by_transaction(self, transaction_id: str) -> List[Refund]:
        """获取交易的退款列表"""
        pass
