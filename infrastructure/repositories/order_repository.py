"""
订单仓储实现
"""
from decimal import Decimal
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from domain.order.entity import Order, OrderStatus
from domain.order.repository import OrderRepository
from infrastructure.models.order import OrderModel
from core.logging_config import get_logger


logger = get_logger(__name__)


class SQLAlchemyOrderRepository(OrderRepository):
    """订单仓储的SQLAlchemy实现"""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: OrderModel) -> Order:
        return Order(
            id=model.id,
            order_number=model.order_number,
            user_id=model.user_id,
            payment_id=model.payment_id,
            amount=Decimal(str(model.amount)),
            currency=model.currency,
            market=model.market,
            payment_method=model.payment_method,
            status=OrderStatus(model.status),
            subtotal=Decimal(str(model.subtotal)) if model.subtotal is not None else None,
            tax_amount=Decimal(str(model.tax_amount)),
            shipping_amount=Decimal(str(model.shipping_amount)),
            discount_amount=Decimal(str(model.discount_amount)),
            items=list(model.items or []),
            billing_address=dict(model.billing_address or {}),
            created_at=model.created_at,
        )

    def _to_model(self, entity: Order) -> OrderModel:
        return OrderModel(
            order_number=entity.order_number,
            user_id=entity.user_id,
            payment_id=entity.payment_id,
            amount=entity.amount,
            currency=entity.currency,
            market=entity.market,
            payment_method=entity.payment_method,
            status=entity.status.value,
            subtotal=entity.subtotal,
            tax_amount=entity.tax_amount,
            shipping_amount=entity.shipping_amount,
            discount_amount=entity.discount_amount,
            items=entity.items,
            billing_address=entity.billing_address or None,
            created_at=entity.created_at,
        )

    async def create(self, order: Order) -> Order:
        """创建订单；payment_id 唯一约束冲突时返回已存在的订单"""
        db_order = self._to_model(order)
        try:
            # SAVEPOINT：冲突时只回滚这一次插入，不影响外层事务
            async with self.session.begin_nested():
                self.session.add(db_order)
                await self.session.flush()
        except IntegrityError:
            existing = await self.get_by_payment_id(order.payment_id)
            if existing is None:
                raise
            logger.info("order_already_exists", payment_id=order.payment_id, order_id=existing.id)
            return existing
        await self.session.refresh(db_order)
        logger.info("order_created", order_id=db_order.id, payment_id=db_order.payment_id)
        return self._to_entity(db_order)

    async def get_by_id(self, order_id: int) -> Optional[Order]:
        result = await self.session.execute(select(OrderModel).where(OrderModel.id == order_id))
        db_order = result.scalar_one_or_none()
        return self._to_entity(db_order) if db_order else None

    async def get_by_payment_id(self, payment_id: int) -> Optional[Order]:
        result = await self.session.execute(select(OrderModel).where(OrderModel.payment_id == payment_id))
        db_order = result.scalar_one_or_none()
        return self._to_entity(db_order) if db_order else None
