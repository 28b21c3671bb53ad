"""
交易账本与退款仓储实现 - 使用SQLAlchemy实现数据访问

每个操作都是一个独立的短事务；状态写入使用
UPDATE ... WHERE status IN (允许的源状态)，并发写入者不会互相覆盖。
"""
from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.logging_config import get_logger
from domain.payment.entity import (
    CardDetails,
    PaymentMethod,
    Refund,
    RefundStatus,
    Transaction,
    TransactionStatus,
)
from domain.payment.exceptions import DuplicateTransaction, TransactionNotFound
from domain.payment.repository import RefundRepository, TransactionLedger
from domain.payment.state import TransitionOutcome, TransitionResult, allowed_sources, decide_transition
from infrastructure.models.payment import PaymentTransactionModel, RefundModel


logger = get_logger(__name__)

# Re-read attempts when a concurrent writer changes status between read and CAS
_CAS_ATTEMPTS = 3


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SQLAlchemyTransactionLedger(TransactionLedger):
    """交易账本的SQLAlchemy实现"""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    @staticmethod
    def _to_entity(model: PaymentTransactionModel) -> Transaction:
        """将数据库模型转换为领域实体"""
        return Transaction(
            id=model.id,
            order_id=model.order_id,
            method=PaymentMethod(model.method),
            provider=model.provider,
            amount=Decimal(str(model.amount)),
            tip_amount=Decimal(str(model.tip_amount or 0)),
            currency=model.currency,
            status=TransactionStatus(model.status),
            idempotency_key=model.idempotency_key,
            provider_transaction_id=model.provider_transaction_id,
            provider_response=model.provider_response,
            card_last4=model.card_last4,
            card_brand=model.card_brand,
            failure_reason=model.failure_reason,
            review_required=bool(model.review_required),
            review_reason=model.review_reason,
            metadata=model.extra_metadata or {},
            created_at=model.created_at,
            updated_at=model.updated_at,
        )

    @staticmethod
    def _to_model(entity: Transaction) -> PaymentTransactionModel:
        """将领域实体转换为数据库模型"""
        now = _utcnow()
        return PaymentTransactionModel(
            id=entity.id,
            order_id=entity.order_id,
            method=entity.method.value,
            provider=entity.provider,
            amount=entity.amount,
            tip_amount=entity.tip_amount,
            currency=entity.currency,
            status=entity.status.value,
            idempotency_key=entity.idempotency_key,
            provider_transaction_id=entity.provider_transaction_id,
            provider_response=entity.provider_response,
            card_last4=entity.card_last4,
            card_brand=entity.card_brand,
            failure_reason=entity.failure_reason,
            review_required=entity.review_required,
            review_reason=entity.review_reason,
            extra_metadata=entity.metadata,
            created_at=entity.created_at or now,
            updated_at=entity.updated_at or now,
        )

    async def _get(self, session: AsyncSession, transaction_id: str) -> Optional[PaymentTransactionModel]:
        result = await session.execute(
            select(PaymentTransactionModel)
            .where(PaymentTransactionModel.id == transaction_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def create_pending(self, transaction: Transaction) -> Transaction:
        """写入 pending 交易"""
        async with self.session_factory() as session:
            db_tx = self._to_model(transaction)
            db_tx.status = TransactionStatus.PENDING.value
            session.add(db_tx)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                logger.warning("ledger_duplicate_transaction", transaction_id=transaction.id)
                raise DuplicateTransaction(transaction.id)
            logger.info(
                "ledger_transaction_created",
                transaction_id=db_tx.id,
                order_id=db_tx.order_id,
                provider=db_tx.provider,
            )
            return self._to_entity(db_tx)

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
        model = PaymentTransactionModel
        for _ in range(_CAS_ATTEMPTS):
            async with self.session_factory() as session:
                row = await self._get(session, transaction_id)
                if row is None:
                    raise TransactionNotFound(transaction_id)
                current = row.status
                outcome = decide_transition(current, status)

                if outcome is TransitionOutcome.CONFLICT:
                    return TransitionResult(outcome, current, self._to_entity(row))

                if outcome is TransitionOutcome.NOOP:
                    # provider_transaction_id is still filled if it was never set
                    if provider_transaction_id and row.provider_transaction_id is None:
                        await session.execute(
                            update(model)
                            .where(model.id == transaction_id, model.provider_transaction_id.is_(None))
                            .values(provider_transaction_id=provider_transaction_id, updated_at=_utcnow())
                            .execution_options(synchronize_session=False)
                        )
                        await session.commit()
                        row = await self._get(session, transaction_id)
                    return TransitionResult(outcome, current, self._to_entity(row))

                values: dict[str, Any] = {
                    "status": status.value,
                    "updated_at": _utcnow(),
                    # Coalesce: never cleared, never replaced
                    "provider_transaction_id": func.coalesce(model.provider_transaction_id, provider_transaction_id),
                }
                if raw_response is not None:
                    values["provider_response"] = raw_response
                if status is TransactionStatus.FAILED:
                    values["failure_reason"] = failure_reason
                elif status is TransactionStatus.SUCCEEDED:
                    values["failure_reason"] = None
                if card is not None:
                    values["card_last4"] = func.coalesce(model.card_last4, card.last4)
                    values["card_brand"] = func.coalesce(model.card_brand, card.brand)

                result = await session.execute(
                    update(model)
                    .where(model.id == transaction_id, model.status.in_(sorted(allowed_sources(status))))
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 0:
                    # Another writer moved the row first; decide again on fresh state
                    await session.rollback()
                    continue
                try:
                    await session.commit()
                except IntegrityError:
                    await session.rollback()
                    logger.error(
                        "ledger_provider_transaction_id_taken",
                        transaction_id=transaction_id,
                        provider_transaction_id=provider_transaction_id,
                    )
                    raise DuplicateTransaction(transaction_id)
                row = await self._get(session, transaction_id)
                if current == TransactionStatus.FAILED.value and status is TransactionStatus.SUCCEEDED:
                    logger.warning("ledger_late_success_applied", transaction_id=transaction_id)
                return TransitionResult(outcome, current, self._to_entity(row))

        async with self.session_factory() as session:
            row = await self._get(session, transaction_id)
            current = row.status if row is not None else None
        logger.warning("ledger_cas_contention", transaction_id=transaction_id, target_status=status.value)
        outcome = decide_transition(current, status) if current else TransitionOutcome.NOOP
        return TransitionResult(
            TransitionOutcome.CONFLICT if outcome is TransitionOutcome.CONFLICT else TransitionOutcome.NOOP,
            current,
            self._to_entity(row) if row is not None else None,
        )

    async def find_by_id(self, transaction_id: str) -> Optional[Transaction]:
        async with self.session_factory() as session:
            row = await self._get(session, transaction_id)
            return self._to_entity(row) if row else None

    async def find_by_provider_transaction_id(
        self,
        provider: str,
        provider_transaction_id: str,
    ) -> Optional[Transaction]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(PaymentTransactionModel).where(
                    PaymentTransactionModel.provider == provider,
                    PaymentTransactionModel.provider_transaction_id == provider_transaction_id,
                )
            )
            row = result.scalar_one_or_none()
            return self._to_entity(row) if row else None

    async def find_by_order_id(self, order_id: str) -> Optional[Transaction]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(PaymentTransactionModel)
                .where(PaymentTransactionModel.order_id == order_id)
                .order_by(PaymentTransactionModel.created_at.desc())
                .limit(1)
            )
            row = result.scalar_one_or_none()
            return self._to_entity(row) if row else None

    @staticmethod
    def _apply_filters(
        query,
        *,
        order_id: Optional[str] = None,
        status: Optional[TransactionStatus] = None,
        provider: Optional[str] = None,
    ):
        if order_id:
            query = query.where(PaymentTransactionModel.order_id == order_id)
        if status:
            query = query.where(PaymentTransactionModel.status == TransactionStatus(status).value)
        if provider:
            query = query.where(PaymentTransactionModel.provider == provider)
        return query

    async def list_transactions(
        self,
        *,
        order_id: Optional[str] = None,
        status: Optional[TransactionStatus] = None,
        provider: Optional[str] = None,
        skip: int = 0,
        limit: int = 50,
    ) -> List[Transaction]:
        query = self._apply_filters(
            select(PaymentTransactionModel),
            order_id=order_id,
            status=status,
            provider=provider,
        )
        query = query.order_by(
            PaymentTransactionModel.created_at.desc(),
            PaymentTransactionModel.id.desc(),
        ).offset(skip).limit(limit)
        async with self.session_factory() as session:
            result = await session.execute(query)
            return [self._to_entity(row) for row in result.scalars().all()]

    async def count_transactions(
        self,
        *,
        order_id: Optional[str] = None,
        status: Optional[TransactionStatus] = None,
        provider: Optional[str] = None,
    ) -> int:
        query = self._apply_filters(
            select(func.count()).select_from(PaymentTransactionModel),
            order_id=order_id,
            status=status,
            provider=provider,
        )
        async with self.session_factory() as session:
            result = await session.execute(query)
            return int(result.scalar() or 0)

    async def flag_for_review(self, transaction_id: str, reason: str) -> None:
        async with self.session_factory() as session:
            result = await session.execute(
                update(PaymentTransactionModel)
                .where(PaymentTransactionModel.id == transaction_id)
                .values(review_required=True, review_reason=reason, updated_at=_utcnow())
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        if result.rowcount == 0:
            raise TransactionNotFound(transaction_id)
        logger.warning("ledger_flagged_for_review", transaction_id=transaction_id, reason=reason)


class SQLAlchemyRefundRepository(RefundRepository):
    """退款仓储的SQLAlchemy实现"""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    @staticmethod
    def _to_entity(model: RefundModel) -> Refund:
        return Refund(
            id=model.id,
            transaction_id=model.transaction_id,
            provider=model.provider,
            provider_refund_id=model.provider_refund_id,
            amount=Decimal(str(model.amount)),
            currency=model.currency,
            status=RefundStatus(model.status),
            reason=model.reason,
            provider_response=model.provider_response,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )

    async def _get(self, session: AsyncSession, refund_id: str) -> Optional[RefundModel]:
        result = await session.execute(
            select(RefundModel).where(RefundModel.id == refund_id).execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def create_pending(self, refund: Refund) -> Refund:
        now = _utcnow()
        async with self.session_factory() as session:
            db_refund = RefundModel(
                id=refund.id,
                transaction_id=refund.transaction_id,
                provider=refund.provider,
                provider_refund_id=refund.provider_refund_id,
                amount=refund.amount,
                currency=refund.currency,
                status=RefundStatus.PENDING.value,
                reason=refund.reason,
                provider_response=refund.provider_response,
                created_at=refund.created_at or now,
                updated_at=refund.updated_at or now,
            )
            session.add(db_refund)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                raise DuplicateTransaction(refund.id)
            logger.info("refund_created", refund_id=db_refund.id, transaction_id=db_refund.transaction_id)
            return self._to_entity(db_refund)

    async def find_by_id(self, refund_id: str) -> Optional[Refund]:
        async with self.session_factory() as session:
            row = await self._get(session, refund_id)
            return self._to_entity(row) if row else None

    async def find_by_provider_refund_id(self, provider: str, provider_refund_id: str) -> Optional[Refund]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(RefundModel).where(
                    RefundModel.provider == provider,
                    RefundModel.provider_refund_id == provider_refund_id,
                )
            )
            row = result.scalar_one_or_none()
            return self._to_entity(row) if row else None

    async def update_status(
        self,
        refund_id: str,
        status: RefundStatus,
        *,
        provider_refund_id: Optional[str] = None,
        raw_response: Optional[dict[str, Any]] = None,
    ) -> TransitionResult[Refund]:
        for _ in range(_CAS_ATTEMPTS):
            async with self.session_factory() as session:
                row = await self._get(session, refund_id)
                if row is None:
                    raise TransactionNotFound(refund_id)
                current = row.status
                outcome = decide_transition(current, status)

                if outcome is TransitionOutcome.CONFLICT:
                    return TransitionResult(outcome, current, self._to_entity(row))

                values: dict[str, Any] = {
                    "updated_at": _utcnow(),
                    "provider_refund_id": func.coalesce(RefundModel.provider_refund_id, provider_refund_id),
                }
                stmt = update(RefundModel).where(RefundModel.id == refund_id)
                if outcome is TransitionOutcome.NOOP:
                    if not provider_refund_id or row.provider_refund_id is not None:
                        return TransitionResult(outcome, current, self._to_entity(row))
                    stmt = stmt.where(RefundModel.status == current)
                else:
                    values["status"] = status.value
                    if raw_response is not None:
                        values["provider_response"] = raw_response
                    stmt = stmt.where(RefundModel.status.in_(sorted(allowed_sources(status))))

                result = await session.execute(stmt.values(**values).execution_options(synchronize_session=False))
                if result.rowcount == 0:
                    await session.rollback()
                    continue
                await session.commit()
                row = await self._get(session, refund_id)
                return TransitionResult(outcome, current, self._to_entity(row))

        refund = await self.find_by_id(refund_id)
        logger.warning("refund_cas_contention", refund_id=refund_id, target_status=status.value)
        return TransitionResult(TransitionOutcome.NOOP, refund.status.value if refund else None, refund)

    async def list_by_transaction(self, transaction_id: str) -> List[Refund]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(RefundModel)
                .where(RefundModel.transaction_id == transaction_id)
                .order_by(RefundModel.created_at.asc())
            )
            return [self._to_entity(r) for r in result.scalars().all()]
