"""
订单数据库模型
"""
from sqlalchemy import Column, Integer, String, Numeric, DateTime, JSON, ForeignKey
from datetime import datetime, timezone

from .base import Base


class OrderModel(Base):
    """订单数据库模型（payment_id 唯一保证一笔支付只生成一个订单）"""
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    order_number = Column(String(40), unique=True, nullable=False, comment="订单号")
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True, comment="用户ID")
    payment_id = Column(
        Integer, ForeignKey("payments.id"), unique=True, nullable=False, comment="来源支付ID"
    )

    # 金额快照
    amount = Column(Numeric(precision=15, scale=2), nullable=False, comment="订单金额")
    currency = Column(String(3), nullable=False, comment="货币代码")
    market = Column(String(10), nullable=False, comment="市场")
    payment_method = Column(String(20), nullable=False, comment="支付方式")
    subtotal = Column(Numeric(precision=15, scale=2), nullable=True)
    tax_amount = Column(Numeric(precision=15, scale=2), nullable=False, default=0)
    shipping_amount = Column(Numeric(precision=15, scale=2), nullable=False, default=0)
    discount_amount = Column(Numeric(precision=15, scale=2), nullable=False, default=0)

    status = Column(String(20), nullable=False, default="confirmed", comment="订单状态")
    items = Column(JSON, nullable=False, default=list, comment="商品明细")
    billing_address = Column(JSON, nullable=True, comment="账单地址")

    created_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
        comment="创建时间"
    )

    def __repr__(self):
        return f"<OrderModel(id={self.id}, order_number='{self.order_number}', payment_id={self.payment_id})>"
