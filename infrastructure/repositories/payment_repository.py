"""
支付仓储实现 - 使用SQLAlchemy实现数据访问
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional, List

from sqlalchemy import select, func, update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from domain.payment.entity import (
    Currency,
    FailureInfo,
    Gateway,
    GatewayFee,
    Market,
    Payment,
    PaymentMethod,
    PaymentStatus,
    PerformedBy,
    RefundRecord,
    RefundStatus,
    StatusHistoryEntry,
    ensure_utc,
)
from domain.payment.exceptions import ConcurrentUpdateError, InternalInconsistencyError
from domain.payment.gateway_data import gateway_data_from_dict, gateway_data_to_dict
from domain.payment.repository import PaymentRepository
from infrastructure.models.payment import PaymentModel
from core.logging_config import get_logger


logger = get_logger(__name__)


def _dt(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return ensure_utc(datetime.fromisoformat(value)) if value else None


def _history_to_json(entries: List[StatusHistoryEntry]) -> list[dict[str, Any]]:
    return [
        {
            "status": e.status.value,
            "timestamp": _dt(e.timestamp),
            "reason": e.reason,
            "performed_by": e.performed_by.value,
        }
        for e in entries
    ]


def _history_from_json(raw: Optional[list]) -> List[StatusHistoryEntry]:
    return [
        StatusHistoryEntry(
            status=PaymentStatus(e["status"]),
            timestamp=_parse_dt(e["timestamp"]),
            reason=e.get("reason") or "Status updated",
            performed_by=PerformedBy(e.get("performed_by") or "system"),
        )
        for e in raw or []
    ]


def _refunds_to_json(refunds: List[RefundRecord]) -> list[dict[str, Any]]:
    return [
        {
            "amount": str(r.amount),
            "currency": r.currency,
            "reason": r.reason,
            "status": r.status.value,
            "processed_at": _dt(r.processed_at),
            "gateway_refund_id": r.gateway_refund_id,
            "processed_by": r.processed_by,
            "notes": r.notes,
        }
        for r in refunds
    ]


def _refunds_from_json(raw: Optional[list]) -> List[RefundRecord]:
    return [
        RefundRecord(
            amount=Decimal(r["amount"]),
            currency=r["currency"],
            reason=r.get("reason"),
            status=RefundStatus(r["status"]),
            processed_at=_parse_dt(r.get("processed_at")),
            gateway_refund_id=r.get("gateway_refund_id"),
            processed_by=r.get("processed_by"),
            notes=r.get("notes"),
        )
        for r in raw or []
    ]


def _failure_to_json(failure: Optional[FailureInfo]) -> Optional[dict[str, Any]]:
    if failure is None:
        return None
    return {
        "code": failure.code,
        "message": failure.message,
        "reason": failure.reason,
        "gateway_message": failure.gateway_message,
        "failed_at": _dt(failure.failed_at),
        "retry_count": failure.retry_count,
    }


def _failure_from_json(raw: Optional[dict]) -> Optional[FailureInfo]:
    if not raw:
        return None
    return FailureInfo(
        code=raw.get("code"),
        message=raw.get("message"),
        reason=raw.get("reason"),
        gateway_message=raw.get("gateway_message"),
        failed_at=_parse_dt(raw.get("failed_at")),
        retry_count=int(raw.get("retry_count") or 0),
    )


class SQLAlchemyPaymentRepository(PaymentRepository):
    """支付仓储的SQLAlchemy实现（version 列实现乐观并发控制）"""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: PaymentModel) -> Payment:
        """将数据库模型转换为领域实体"""
        return Payment(
            id=model.id,
            user_id=model.user_id,
            payment_method=PaymentMethod(model.payment_method),
            gateway=Gateway(model.gateway),
            amount=Decimal(str(model.amount)),
            currency=Currency(model.currency),
            market=Market(model.market),
            status=PaymentStatus(model.status),
            order_id=model.order_id,
            gateway_order_id=model.gateway_order_id,
            gateway_transaction_id=model.gateway_transaction_id,
            subtotal=Decimal(str(model.subtotal)) if model.subtotal is not None else None,
            tax_amount=Decimal(str(model.tax_amount)),
            shipping_amount=Decimal(str(model.shipping_amount)),
            discount_amount=Decimal(str(model.discount_amount)),
            gateway_fee=GatewayFee(
                percentage=Decimal(str(model.fee_percentage)),
                fixed=Decimal(str(model.fee_fixed)),
                total=Decimal(str(model.fee_total)),
            ),
            status_history=_history_from_json(model.status_history),
            refunds=_refunds_from_json(model.refunds),
            failure=_failure_from_json(model.failure),
            gateway_data=gateway_data_from_dict(model.gateway_data),
            billing_address=dict(model.billing_address or {}),
            notes=model.notes,
            paid_at=model.paid_at,
            created_at=model.created_at,
            updated_at=model.updated_at,
            version=model.version,
        )

    def _values(self, entity: Payment) -> dict[str, Any]:
        """实体中可变部分对应的列值"""
        return {
            "order_id": entity.order_id,
            "gateway_order_id": entity.gateway_order_id,
            "gateway_transaction_id": entity.gateway_transaction_id,
            "amount": entity.amount,
            "currency": entity.currency.value,
            "market": entity.market.value,
            "payment_method": entity.payment_method.value,
            "subtotal": entity.subtotal,
            "tax_amount": entity.tax_amount,
            "shipping_amount": entity.shipping_amount,
            "discount_amount": entity.discount_amount,
            "fee_percentage": entity.gateway_fee.percentage,
            "fee_fixed": entity.gateway_fee.fixed,
            "fee_total": entity.gateway_fee.total,
            "total_refunded": entity.total_refunded,
            "status": entity.status.value,
            "status_history": _history_to_json(entity.status_history),
            "refunds": _refunds_to_json(entity.refunds),
            "failure": _failure_to_json(entity.failure),
            "gateway_data": gateway_data_to_dict(entity.gateway_data) or None,
            "billing_address": entity.billing_address or None,
            "notes": entity.notes,
            "paid_at": entity.paid_at,
            "updated_at": entity.updated_at,
        }

    async def create(self, payment: Payment) -> Payment:
        """创建支付记录"""
        try:
            db_payment = PaymentModel(
                user_id=payment.user_id,
                gateway=payment.gateway.value,
                created_at=payment.created_at,
                version=1,
                **self._values(payment),
            )
            self.session.add(db_payment)
            await self.session.flush()
            await self.session.refresh(db_payment)
        except IntegrityError as e:
            logger.warning(
                "payment_create_conflict",
                gateway=payment.gateway.value,
                gateway_transaction_id=payment.gateway_transaction_id,
            )
            raise InternalInconsistencyError(
                "Payment conflicts with an existing record",
                details={"gateway_transaction_id": payment.gateway_transaction_id},
            ) from e
        logger.info(
            "payment_persisted",
            payment_id=db_payment.id,
            gateway=db_payment.gateway,
            status=db_payment.status,
        )
        return self._to_entity(db_payment)

    async def get_by_id(self, payment_id: int) -> Optional[Payment]:
        """根据ID获取支付"""
        result = await self.session.execute(
            select(PaymentModel).where(PaymentModel.id == payment_id)
        )
        db_payment = result.scalar_one_or_none()
        return self._to_entity(db_payment) if db_payment else None

    async def get_by_gateway_order(self, gateway_order_id: str, user_id: Optional[int] = None) -> Optional[Payment]:
        query = select(PaymentModel).where(PaymentModel.gateway_order_id == gateway_order_id)
        if user_id is not None:
            query = query.where(PaymentModel.user_id == user_id)
        result = await self.session.execute(query.order_by(PaymentModel.id.desc()).limit(1))
        db_payment = result.scalar_one_or_none()
        return self._to_entity(db_payment) if db_payment else None

    async def get_by_transaction_id(self, gateway_transaction_id: str) -> Optional[Payment]:
        result = await self.session.execute(
            select(PaymentModel).where(PaymentModel.gateway_transaction_id == gateway_transaction_id)
        )
        db_payment = result.scalar_one_or_none()
        return self._to_entity(db_payment) if db_payment else None

    def _user_filters(self, query, user_id, status, payment_method, market):
        query = query.where(PaymentModel.user_id == user_id)
        if status:
            query = query.where(PaymentModel.status == status.value)
        if payment_method:
            query = query.where(PaymentModel.payment_method == payment_method.value)
        if market:
            query = query.where(PaymentModel.market == market.value)
        return query

    async def list_by_user(
        self,
        user_id: int,
        skip: int = 0,
        limit: int = 100,
        status: Optional[PaymentStatus] = None,
        payment_method: Optional[PaymentMethod] = None,
        market: Optional[Market] = None,
    ) -> List[Payment]:
        """获取用户的支付列表"""
        query = self._user_filters(select(PaymentModel), user_id, status, payment_method, market)
        query = query.order_by(PaymentModel.created_at.desc(), PaymentModel.id.desc()).offset(skip).limit(limit)

        result = await self.session.execute(query)
        return [self._to_entity(p) for p in result.scalars().all()]

    async def count_by_user(
        self,
        user_id: int,
        status: Optional[PaymentStatus] = None,
        payment_method: Optional[PaymentMethod] = None,
        market: Optional[Market] = None,
    ) -> int:
        """统计用户的支付数量"""
        query = self._user_filters(
            select(func.count(PaymentModel.id)), user_id, status, payment_method, market
        )
        result = await self.session.execute(query)
        return result.scalar_one()

    async def list_stale_pending(self, created_before: datetime, limit: int = 100) -> List[Payment]:
        result = await self.session.execute(
            select(PaymentModel)
            .where(
                PaymentModel.status == PaymentStatus.PENDING.value,
                PaymentModel.created_at < created_before,
            )
            .order_by(PaymentModel.created_at.asc())
            .limit(limit)
        )
        return [self._to_entity(p) for p in result.scalars().all()]

    async def update(self, payment: Payment) -> Payment:
        """条件更新：WHERE id = :id AND version = :expected"""
        if payment.id is None:
            raise ValueError("Cannot update a payment that has not been persisted")

        stmt = (
            sa_update(PaymentModel)
            .where(PaymentModel.id == payment.id, PaymentModel.version == payment.version)
            .values(version=payment.version + 1, **self._values(payment))
            .execution_options(synchronize_session=False)
        )
        try:
            result = await self.session.execute(stmt)
        except IntegrityError as e:
            logger.warning(
                "payment_update_conflict",
                payment_id=payment.id,
                gateway_transaction_id=payment.gateway_transaction_id,
            )
            raise InternalInconsistencyError(
                "Gateway transaction id already belongs to another payment",
                details={"payment_id": payment.id, "gateway_transaction_id": payment.gateway_transaction_id},
            ) from e

        if result.rowcount != 1:
            logger.info("payment_version_conflict", payment_id=payment.id, expected_version=payment.version)
            raise ConcurrentUpdateError(payment.id, payment.version)

        payment.version += 1
        logger.info(
            "payment_updated",
            payment_id=payment.id,
            status=payment.status.value,
            version=payment.version,
        )
        return payment
